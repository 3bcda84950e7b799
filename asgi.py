"""
asgi.py -- ASGI entry point for Warden.

Keeps the server command stable (uvicorn asgi:app) independent of where the
FastAPI app object lives.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
