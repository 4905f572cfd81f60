"""
ASGI entrypoint: expose `app` for process managers / deployments.

- En production, un process manager (ex: gunicorn avec workers uvicorn) importe `backend.asgi:app`.
- Le webhook Stripe et les endpoints checkout sont servis par la même instance.
"""

from backend.app import app

__all__ = ["app"]
