"""
HTTP and WebSocket adapter for the operation engine.

Routers only translate between HTTP and ``OperationManager`` /
``ConnectionHub`` calls; engine errors are mapped to RFC 7807 problem
responses in one place.

Quick start::

    from isx_spine.api import create_app

    app = create_app()  # ready for uvicorn

Tags:
    api, REST, WebSocket, FastAPI, transport-layer

Doc-Types:
    api-reference
"""

from isx_spine.api.app import create_app

__all__ = ["create_app"]
