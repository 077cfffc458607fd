"""Built-in route handlers, registered through ``StoreBackend.route()``."""
