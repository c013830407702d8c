"""
asgi.py -- Application assembly for Warden.

The ASGI server imports `app` from here rather than from api/main.py so that
deployment configuration has one stable import path.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
