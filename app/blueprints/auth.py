"""Auth blueprint — /auth/*

JSON login, logout and session lookup. The session cookie set here is
the identity every billing route resolves through Flask-Login.
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf
from werkzeug.security import check_password_hash

from app.extensions import limiter
from app.models.user import User

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _user_payload(user):
    return {"id": user.id, "email": user.email, "full_name": user.full_name}


# ──────────────────────────────────────────────
# POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("10 per minute", methods=["POST"])
def login():
    """Email + password login. Same error for unknown email and bad password."""
    body = request.get_json(silent=True) or {}
    email = (body.get("email") or "").lower().strip()
    password = body.get("password") or ""

    if not email or not password:
        return jsonify({"error": "Email and password are required.", "code": "invalid_request"}), 400

    user = User.query.filter_by(email=email).first()
    if not user or not check_password_hash(user.password_hash, password):
        logger.info(f"Failed login for {email}")
        return jsonify({"error": "Invalid email or password.", "code": "invalid_credentials"}), 401

    if not user.is_active:
        return jsonify({"error": "This account has been deactivated.", "code": "inactive"}), 403

    login_user(user, remember=bool(body.get("remember")))
    return jsonify({"user": _user_payload(user), "csrf_token": generate_csrf()})


# ──────────────────────────────────────────────
# POST /auth/logout
# ──────────────────────────────────────────────

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"ok": True})


# ──────────────────────────────────────────────
# GET /auth/session
# ──────────────────────────────────────────────

@auth_bp.route("/session", methods=["GET"])
def session_info():
    """Whether the session identity is resolved (the poller's waiting_auth)."""
    if not current_user.is_authenticated:
        return jsonify({"authenticated": False, "user": None})
    return jsonify({
        "authenticated": True,
        "user": _user_payload(current_user),
        "csrf_token": generate_csrf(),
    })
