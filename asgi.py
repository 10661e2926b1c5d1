"""
asgi.py -- ASGI entry point for PenTrack auth.

Run with:  uvicorn asgi:app --reload

The frontend is served separately; this process only answers /api/*.
"""

from api.main import app

__all__ = ["app"]
