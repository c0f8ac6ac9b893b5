# FILE: mediaproof/auth/decorators.py

from __future__ import annotations

from functools import wraps
from typing import Callable, Optional

from flask import request, jsonify, g, current_app

from .tokens import verify_access_token


def get_bearer_token() -> Optional[str]:
    auth = request.headers.get("Authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip()
    return None


def require_auth(fn: Callable):
    """
    Resolve the caller's owner_id from the bearer token.

    The account row itself is not required here: POST /users/sync is how a
    fresh identity gets one, and scan endpoints answer 402 for owners without
    credit.
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        token = get_bearer_token()
        if not token:
            return jsonify(error="missing Authorization: Bearer <token>"), 401

        owner_id = verify_access_token(
            secret_key=current_app.config["SECRET_KEY"],
            token=token,
            max_age_seconds=current_app.config.get("AUTH_TOKEN_MAX_AGE", 60 * 60 * 8),
        )
        if not owner_id:
            return jsonify(error="invalid or expired token"), 401

        g.owner_id = owner_id
        return fn(*args, **kwargs)

    return wrapper


# ────────────────────────────────────────────────────────────
# Context helpers
# ────────────────────────────────────────────────────────────

def current_owner_id() -> str:
    """Get the authenticated owner from context."""
    return str(g.owner_id)
