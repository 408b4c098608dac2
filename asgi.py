"""
asgi.py -- ASGI entry point for the builder auth service.

The app is assembled by api.main.create_app() from environment settings;
this module only gives servers a stable import path.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
