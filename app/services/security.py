"""API authentication.

Requests authenticate either with the Flask-Login session cookie or with a
per-user bearer token. Only the SHA-256 hash of a token is stored.
"""

from __future__ import annotations

import hashlib
import secrets
from functools import wraps

from flask import g, jsonify, request
from flask_login import current_user

from app.extensions import db
from app.models import ApiToken, User, utcnow

TOKEN_PREFIX = "bm"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def bearer_token_from_request() -> str | None:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def issue_api_token(user: User, name: str) -> str:
    """Create a token for ``user`` and return its only plaintext copy."""
    token = f"{TOKEN_PREFIX}_{secrets.token_urlsafe(32)}"
    db.session.add(ApiToken(user_id=user.id, name=name, token_hash=hash_token(token)))
    db.session.commit()
    return token


def _live_token_row(token: str) -> ApiToken | None:
    row = ApiToken.query.filter_by(token_hash=hash_token(token)).first()
    if row is None or row.revoked_at is not None:
        return None
    return row


def revoke_api_token(token: str) -> bool:
    row = _live_token_row(token)
    if row is None:
        return False
    row.revoked_at = utcnow()
    db.session.commit()
    return True


def _user_for_token(token: str | None) -> User | None:
    if not token:
        return None
    row = _live_token_row(token)
    if row is None or row.user is None or not row.user.is_active:
        return None
    row.last_used_at = utcnow()
    db.session.commit()
    return row.user


def resolve_api_user(token_only: bool = False) -> User | None:
    if not token_only and current_user.is_authenticated and current_user.is_active:
        return current_user
    return _user_for_token(bearer_token_from_request())


def api_auth_required(admin=False, token_only=False):
    """Reject the request unless a user resolves; expose it as ``g.api_user``."""

    def decorator(func):
        @wraps(func)
        def wrapped(*args, **kwargs):
            user = resolve_api_user(token_only=token_only)
            if user is None:
                return jsonify({"error": "authentication required"}), 401
            if admin and not user.is_admin:
                return jsonify({"error": "admin access required"}), 403
            g.api_user = user
            return func(*args, **kwargs)

        return wrapped

    return decorator
