"""
Custom route decorators for access control.

- admin_required: ensures user is logged in AND has is_admin=True.
- cron_secret_required: ensures the request carries
  `Authorization: Bearer <CRON_SECRET>` (scheduler calls, no session).
"""

import hmac
import logging
from functools import wraps

from flask import abort, current_app, request
from flask_login import current_user, login_required

logger = logging.getLogger(__name__)


def admin_required(f):
    """Require login + is_admin flag."""

    @wraps(f)
    @login_required
    def decorated(*args, **kwargs):
        if not current_user.is_admin:
            abort(403)
        return f(*args, **kwargs)

    return decorated


def cron_secret_required(f):
    """Require the shared cron bearer token. Unset secret rejects everything."""

    @wraps(f)
    def decorated(*args, **kwargs):
        secret = current_app.config.get("CRON_SECRET")
        header = request.headers.get("Authorization", "")
        token = header[len("Bearer "):] if header.startswith("Bearer ") else ""

        if not secret or not token or not hmac.compare_digest(token, secret):
            logger.warning(f"Rejected cron call to {request.path}")
            abort(401)
        return f(*args, **kwargs)

    return decorated
