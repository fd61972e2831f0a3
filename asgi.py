"""
asgi.py -- ASGI entry point for Latchkey.

The presentation layer (forms, pages, email templates) lives outside this
repository and talks to the JSON API only, so the app is exactly api.main.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
