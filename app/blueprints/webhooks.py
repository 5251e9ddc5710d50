"""Webhooks blueprint — /mercadopago/webhooks

Receives MercadoPago notifications. CSRF-exempt.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, request, jsonify

from app.extensions import limiter
from app.services.webhook_service import (
    PayloadError,
    SignatureError,
    handle_notification,
    log_rejected,
    parse_notification,
    verify_signature,
)

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/mercadopago")


@webhooks_bp.route("/webhooks", methods=["POST"])
@limiter.limit("300 per minute")
def mercadopago_webhook():
    """Receive and process MercadoPago notifications.

    1. Get raw body (required for signature verification)
    2. Verify x-signature with MERCADOPAGO_WEBHOOK_SECRET -> 401
    3. Validate the JSON shape -> 400
    4. handle_notification (idempotent via the webhook_logs receipt row)
    5. Return 200; business failures are logged, not retried by the provider

    CSRF is exempted for this blueprint in create_app().
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("x-signature")

    # --- Verify signature ---
    try:
        verify_signature(payload, sig_header)
    except SignatureError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        log_rejected(payload, str(e))
        return jsonify({"error": str(e)}), 401

    # --- Validate payload ---
    try:
        notification = parse_notification(payload)
    except PayloadError as e:
        logger.warning(f"Webhook payload rejected: {e}")
        log_rejected(payload, str(e))
        return jsonify({"error": str(e)}), 400

    # --- Process (idempotent) ---
    status, outcome = handle_notification(notification)
    return jsonify({"status": status, "outcome": outcome}), 200
