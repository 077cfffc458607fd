"""
Message Store Backend — Global Middleware Unit Tests
======================================================

What:  Tests for the body parsers, the combined access-log line and the
       security header defaults.

What we test:
    ✅ JSON and urlencoded bodies land in request.state.body
    ✅ Oversized bodies → 413, malformed JSON → 400, before any route logic
    ✅ Unmatched content types pass through untouched
    ✅ Combined log line fields (remote user, date, request line, UA)
"""

import base64
from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from starlette.requests import Request

from msgstore.backend import StoreBackend
from msgstore.config import ServerConfig
from msgstore.middleware.body_parser import BodyParserMiddleware
from msgstore.middleware.logging import format_combined
from msgstore.middleware.security import DEFAULT_SECURITY_HEADERS, SecurityHeadersMiddleware


async def _echo_body(db, request):
    return {"body": getattr(request.state, "body", None)}


class TestBodyParser:

    def setup_method(self):
        self.handler_calls = 0

    async def _counting_handler(self, db, request):
        self.handler_calls += 1
        return await _echo_body(db, request)

    @pytest.mark.asyncio
    async def test_json_body(self, backend, client):
        backend.route("POST", "/messages", _echo_body)
        response = await client.post("/messages", json={"user_id": "u1", "queued": True})
        assert response.json() == {"body": {"user_id": "u1", "queued": True}}

    @pytest.mark.asyncio
    async def test_vendor_json_media_type(self, backend, client):
        backend.route("POST", "/messages", _echo_body)
        response = await client.post(
            "/messages",
            content=b'{"a": 1}',
            headers={"Content-Type": "application/vnd.api+json"},
        )
        assert response.json() == {"body": {"a": 1}}

    @pytest.mark.asyncio
    async def test_empty_json_body_is_empty_object(self, backend, client):
        backend.route("POST", "/messages", _echo_body)
        response = await client.post("/messages", content=b"", headers={"Content-Type": "application/json"})
        assert response.json() == {"body": {}}

    @pytest.mark.asyncio
    async def test_urlencoded_body(self, backend, client):
        backend.route("POST", "/form", _echo_body)
        response = await client.post(
            "/form",
            content=b"user_id=u1&tag=a&tag=b&note=",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        assert response.json() == {"body": {"user_id": "u1", "tag": ["a", "b"], "note": ""}}

    @pytest.mark.asyncio
    async def test_malformed_json_is_400(self, backend, client):
        backend.route("POST", "/messages", self._counting_handler)
        response = await client.post(
            "/messages",
            content=b'{"user_id": ',
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"
        assert self.handler_calls == 0

    @pytest.mark.asyncio
    async def test_oversized_body_is_413(self, database_url):
        backend = StoreBackend(ServerConfig(database_url=database_url, body_limit=32))
        backend.route("POST", "/messages", self._counting_handler)

        async with AsyncClient(transport=ASGITransport(app=backend.app), base_url="http://test") as client:
            small = await client.post("/messages", json={"a": 1})
            large = await client.post("/messages", json={"message": "x" * 100})

        assert small.status_code == 200
        assert large.status_code == 413
        assert large.json()["error"] == "payload_too_large"
        assert large.json()["details"]["limit"] == 32
        assert self.handler_calls == 1
        await backend.db.dispose()

    @pytest.mark.asyncio
    async def test_chunked_body_stops_reading_at_limit(self, database_url):
        backend = StoreBackend(ServerConfig(database_url=database_url, body_limit=16))
        backend.route("POST", "/messages", self._counting_handler)
        sent = {"chunks": 0}

        async def chunks():
            for _ in range(2000):
                sent["chunks"] += 1
                yield b"x" * 1024

        async with AsyncClient(transport=ASGITransport(app=backend.app), base_url="http://test") as client:
            response = await client.post(
                "/messages",
                content=chunks(),
                headers={"Content-Type": "application/json"},
            )

        assert response.status_code == 413
        assert sent["chunks"] <= 2
        assert self.handler_calls == 0
        await backend.db.dispose()

    @pytest.mark.asyncio
    async def test_chunked_body_within_limit_is_parsed_and_replayed(self, backend, client):
        async def echo_raw(db, request):
            return {"body": request.state.body, "raw": (await request.body()).decode()}

        backend.route("POST", "/messages", echo_raw)

        async def chunks():
            yield b'{"user_id": '
            yield b'"u1"}'

        response = await client.post(
            "/messages",
            content=chunks(),
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == {"body": {"user_id": "u1"}, "raw": '{"user_id": "u1"}'}

    @pytest.mark.asyncio
    async def test_unmatched_content_type_passes_through(self, backend, client):
        backend.route("POST", "/upload", _echo_body)
        response = await client.post(
            "/upload",
            content=b"\x00\x01",
            headers={"Content-Type": "application/octet-stream"},
        )
        assert response.status_code == 200
        assert response.json() == {"body": None}

    def test_rejects_bad_construction(self):
        with pytest.raises(ValueError):
            BodyParserMiddleware(app=None, kinds=("yaml",))
        with pytest.raises(ValueError):
            BodyParserMiddleware(app=None, limit=0)


class TestCombinedFormat:

    def _request(self, headers):
        return Request({
            "type": "http",
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "server": ("test", 80),
            "client": ("10.0.0.1", 52100),
            "path": "/messages/u1",
            "query_string": b"queued=true",
            "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
        })

    def test_full_line(self):
        credentials = base64.b64encode(b"alice:secret").decode()
        request = self._request({
            "User-Agent": "curl/8.4.0",
            "Referer": "http://app.example/inbox",
            "Authorization": f"Basic {credentials}",
        })
        now = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)

        line = format_combined(request, 200, "12", now=now)

        assert line == (
            '10.0.0.1 - alice [19/Oct/2026:12:00:00 +0000] '
            '"GET /messages/u1?queued=true HTTP/1.1" 200 12 '
            '"http://app.example/inbox" "curl/8.4.0"'
        )

    def test_missing_fields_are_dashes(self):
        request = self._request({"Authorization": "Bearer not-basic"})
        line = format_combined(request, 204, None)
        assert ' - - [' in line
        assert line.endswith('204 - "-" "-"')


class TestSecurityHeaders:

    def test_overrides_replace_and_drop(self):
        middleware = SecurityHeadersMiddleware(
            app=None,
            overrides={"X-Frame-Options": "DENY", "Strict-Transport-Security": None},
        )
        assert middleware.headers["X-Frame-Options"] == "DENY"
        assert "Strict-Transport-Security" not in middleware.headers
        assert len(middleware.headers) == len(DEFAULT_SECURITY_HEADERS) - 1
