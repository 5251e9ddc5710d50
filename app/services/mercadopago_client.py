"""MercadoPago REST client.

Thin wrapper around the provider endpoints the engine needs. Every call
carries the bearer access token and PROVIDER_TIMEOUT_SECONDS. Failures are
raised as ProviderError; callers decide whether that means "unknown" or
"not found". Nothing here touches the database.
"""

import logging

import requests
from flask import current_app

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Provider call failed. transient=True means retrying later may work."""

    def __init__(self, message, status_code=None, transient=False):
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


class ProviderNotFoundError(ProviderError):
    """The provider has no object with that id."""

    def __init__(self, message):
        super().__init__(message, status_code=404, transient=False)


def _request(method, path, params=None, payload=None):
    token = current_app.config.get("MERCADOPAGO_ACCESS_TOKEN")
    if not token:
        raise ProviderError("MERCADOPAGO_ACCESS_TOKEN not configured")

    base = current_app.config["MERCADOPAGO_API_BASE"].rstrip("/")
    url = f"{base}{path}"
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }

    try:
        resp = requests.request(
            method,
            url,
            headers=headers,
            params=params,
            json=payload,
            timeout=current_app.config["PROVIDER_TIMEOUT_SECONDS"],
        )
    except requests.Timeout as e:
        logger.warning(f"MercadoPago {method} {path} timed out: {e}")
        raise ProviderError(f"Timeout calling {path}", transient=True) from e
    except requests.RequestException as e:
        logger.warning(f"MercadoPago {method} {path} failed: {e}")
        raise ProviderError(f"Connection error calling {path}", transient=True) from e

    if resp.status_code == 404:
        raise ProviderNotFoundError(f"{path} not found")
    if resp.status_code == 429 or resp.status_code >= 500:
        logger.warning(f"MercadoPago {method} {path} returned {resp.status_code}")
        raise ProviderError(
            f"{path} returned {resp.status_code}",
            status_code=resp.status_code,
            transient=True,
        )
    if resp.status_code >= 400:
        logger.error(f"MercadoPago {method} {path} rejected: {resp.text[:500]}")
        raise ProviderError(
            f"{path} returned {resp.status_code}", status_code=resp.status_code
        )

    try:
        data = resp.json()
    except ValueError as e:
        raise ProviderError(f"Invalid JSON from {path}", transient=True) from e
    if not isinstance(data, dict):
        raise ProviderError(f"Unexpected response shape from {path}")
    return data


# ──────────────────────────────────────────────
# Reads
# ──────────────────────────────────────────────

def get_payment(payment_id):
    return _request("GET", f"/v1/payments/{payment_id}")


def get_preapproval(preapproval_id):
    return _request("GET", f"/preapproval/{preapproval_id}")


def search_preapprovals(external_reference):
    """Return the list of preapprovals carrying this external reference."""
    data = _request(
        "GET",
        "/preapproval/search",
        params={"external_reference": external_reference},
    )
    return data.get("results") or []


def get_authorized_payment(authorized_payment_id):
    return _request("GET", f"/authorized_payments/{authorized_payment_id}")


# ──────────────────────────────────────────────
# Writes
# ──────────────────────────────────────────────

def update_preapproval_status(preapproval_id, status):
    """Mirror a local status change. status: paused | authorized | cancelled."""
    return _request("PUT", f"/preapproval/{preapproval_id}", payload={"status": status})


def create_preapproval(
    reason,
    external_reference,
    payer_email,
    amount,
    currency,
    frequency,
    frequency_type,
    back_url,
    metadata=None,
):
    """Create a pending preapproval and return it (includes init_point)."""
    payload = {
        "reason": reason,
        "external_reference": external_reference,
        "payer_email": payer_email,
        "back_url": back_url,
        "auto_recurring": {
            "frequency": frequency,
            "frequency_type": frequency_type,
            "transaction_amount": float(amount),
            "currency_id": currency,
        },
        "status": "pending",
        "metadata": metadata or {},
    }
    return _request("POST", "/preapproval", payload=payload)
