"""Cron blueprint — /cron/*

Scheduler entry points (Railway cron, GitHub Actions). No session; the
caller authenticates with `Authorization: Bearer <CRON_SECRET>`.
CSRF-exempt.
"""

import logging

from flask import Blueprint, jsonify

from app.decorators import cron_secret_required
from app.services import reconciliation_service

logger = logging.getLogger(__name__)

cron_bp = Blueprint("cron", __name__, url_prefix="/cron")


@cron_bp.route("/reconcile", methods=["POST"])
@cron_secret_required
def reconcile():
    """Run one reconciliation sweep and return its report."""
    report = reconciliation_service.run_sweep()
    status = 409 if report.skipped else 200
    return jsonify(report.to_dict()), status
