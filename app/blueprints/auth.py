"""Auth blueprint — /auth/*

Session login / logout for the JSON API (Flask-Login cookie session).
Accepts JSON or form-encoded credentials.
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


def _user_dict(user):
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "is_admin": user.is_admin,
        "has_active_subscription": user.has_active_subscription,
        # Session-authenticated POSTs send this back as X-CSRFToken
        "csrf_token": generate_csrf(),
    }


# ──────────────────────────────────────────────
# POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("15 per minute")
def login():
    """Standard email + password login."""
    data = request.get_json(silent=True) or request.form
    email = (data.get("email") or "").lower().strip()
    password = data.get("password") or ""
    remember = bool(data.get("remember"))

    if not email or not password:
        return jsonify({"error": "Email and password are required."}), 400

    user = User.query.filter_by(email=email).first()

    if user is None or not check_password_hash(user.password_hash, password):
        logger.info(f"Failed login for {email}")
        return jsonify({"error": "Invalid email or password."}), 401

    if not user.is_active:
        return jsonify({"error": "Your account has been deactivated."}), 403

    login_user(user, remember=remember)
    return jsonify({"user": _user_dict(user)}), 200


# ──────────────────────────────────────────────
# GET|POST /auth/logout, GET /auth/me
# ──────────────────────────────────────────────

@auth_bp.route("/logout", methods=["GET", "POST"])
def logout():
    logout_user()
    return jsonify({"status": "logged_out"}), 200


@auth_bp.route("/me")
@login_required
def me():
    return jsonify({"user": _user_dict(current_user)})
