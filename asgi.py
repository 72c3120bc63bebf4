"""
asgi.py -- ASGI entry point for the SynthAI authorization service.

Run with:  uvicorn asgi:app --reload
           uvicorn asgi:app --host 0.0.0.0 --port 3001 --workers 4   (SESSION_BACKEND=redis)

More than one worker needs the Redis session backend: the in-memory store is
per process, so a callback landing on another worker would not find its
transaction.
"""

from api.main import app

__all__ = ["app"]
