"""
Message Store Backend — Global Middleware Package
===================================================

What:  Cross-cutting concerns applied to every request, before any route logic.

Middleware Chain (execution order, fixed by StoreBackend):
    Request → [Security Headers] → [Access Log] → [CORS] → [Body Parsers]
            → [Caller global middleware…] → Route chain

    1. Security headers: outermost, so every response carries them, errors included
    2. Access log: assigns the request ID, logs one combined-format line per request
    3. CORS: answers preflights and rejects disallowed origins before any parsing
    4. Body parsers: JSON and urlencoded bodies, size-limited, into request.state.body
    5. Caller middleware: ``async (db, request, call_next)`` callables bound to the
       shared database handle, or plain Starlette ``Middleware`` entries

    Responses travel back through the same layers in reverse order.
"""
