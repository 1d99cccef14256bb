"""Shared Flask extension instances.

Blueprints and models import `db` and `limiter` from here so app.py can
bind them later without circular imports.
"""

import os

from flask import request
from flask_limiter import Limiter
from flask_sqlalchemy import SQLAlchemy


db = SQLAlchemy()


def get_client_ip() -> str:
    """Return the best-effort client IP.

    After ProxyFix, request.access_route[0] should be the real client IP.
    Falls back to request.remote_addr for local development.
    """
    if request.access_route:
        return request.access_route[0]
    return request.remote_addr or "0.0.0.0"


# - In production, set RATE_LIMIT_STORAGE_URL to a shared store for multi-instance correctness.
# - Defaults to in-memory storage for simplicity.
limiter = Limiter(
    get_client_ip,
    default_limits=["200 per day", "50 per hour"],
    storage_uri=os.getenv("RATE_LIMIT_STORAGE_URL", "memory://"),
)
