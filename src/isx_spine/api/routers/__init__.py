"""API routers: operations, streaming, health."""
