"""
asgi.py -- ASGI entry point for TenantGate.

Kept separate from api/main.py so process managers have one stable import
path regardless of how the api package is organised.

Run with:  uvicorn asgi:app --reload
           uvicorn asgi:app --workers 4   (set ATTEMPT_STORE=database first)
"""

from api.main import app

__all__ = ["app"]
