# =============================================================================
# File: mediaproof/users/routes.py
# Description: Account sync from the identity provider.
#   - POST /users/sync: upsert profile for the token's owner_id. A new
#     account is opened with SIGNUP_CREDITS credits.
#   - GET /users/me: profile and current credit balance.
# =============================================================================

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import IntegrityError

from mediaproof.auth.decorators import current_owner_id, require_auth
from mediaproof.extensions import db, get_ledger
from mediaproof.models import User

logger = logging.getLogger(__name__)

users_bp = Blueprint("users", __name__, url_prefix="/users")


def user_to_ui(u: User) -> dict:
    return {
        "ownerId": u.owner_id,
        "email": u.email,
        "fullName": u.full_name,
        "imageUrl": u.image_url,
        "credits": int(u.credits or 0),
        "createdAt": u.created_at.isoformat() + "Z" if u.created_at else None,
    }


def _clean(value, limit: int):
    if value is None:
        return None
    text = str(value).strip()
    return text[:limit] or None


@users_bp.post("/sync")
@require_auth
def sync_user():
    owner_id = current_owner_id()
    body = request.get_json(silent=True) or {}

    email = _clean(body.get("email"), 255)
    profile = {
        "email": email.lower() if email else None,
        "full_name": _clean(body.get("fullName"), 255),
        "image_url": _clean(body.get("imageUrl"), 1000),
    }

    user = User.query.filter_by(owner_id=owner_id).first()
    if user is not None:
        for key, value in profile.items():
            if value is not None:
                setattr(user, key, value)
        db.session.commit()
        return jsonify(user_to_ui(user)), 200

    try:
        user = User(owner_id=owner_id, credits=0, **profile)
        db.session.add(user)
        db.session.flush()
        signup = current_app.config["SIGNUP_CREDITS"]
        if signup > 0:
            get_ledger().credit(owner_id, signup, kind="signup", reference=owner_id, commit=False)
        db.session.commit()
    except IntegrityError:
        # Two first syncs raced; the other one created the account
        db.session.rollback()
        user = User.query.filter_by(owner_id=owner_id).first_or_404()
        return jsonify(user_to_ui(user)), 200

    db.session.refresh(user)
    logger.info(f"Created account for {owner_id}")
    return jsonify(user_to_ui(user)), 201


@users_bp.get("/me")
@require_auth
def me():
    user = User.query.filter_by(owner_id=current_owner_id()).first()
    if user is None:
        return jsonify(error="Not found", message="User not found"), 404
    return jsonify(user_to_ui(user)), 200
