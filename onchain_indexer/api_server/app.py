"""
FastAPI/ASGI application entrypoint.

Run with: uvicorn onchain_indexer.api_server.app:app --host 0.0.0.0 --port 8080
"""

from onchain_indexer.api_server.server import app, create_app

__all__ = ["app", "create_app"]
