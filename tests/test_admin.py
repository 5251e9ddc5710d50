"""Tests for the admin blueprint.

Covers:
- Auth guards (anonymous 401, non-admin 403)
- Manual activation / forced activation
- Integrity reports (single + batch)
- Metrics
- Webhook log listing and replay
"""

from unittest.mock import patch

import pytest

from app.extensions import db
from app.models.audit import AuditEvent
from app.models.subscription import Subscription
from app.models.webhook_log import WebhookLog
from app.services.mercadopago_client import ProviderError
from tests.conftest import login, login_admin, make_payment, make_preapproval, make_subscription


class TestAdminAuthGuards:

    @pytest.mark.parametrize("method,path", [
        ("post", "/admin/subscriptions/activate"),
        ("post", "/admin/integrity"),
        ("get", "/admin/metrics"),
        ("get", "/admin/webhooks"),
    ])
    def test_anonymous_gets_401(self, client, seed_data, method, path):
        resp = getattr(client, method)(path)
        assert resp.status_code == 401

    def test_non_admin_gets_403(self, client, seed_data):
        login(client)
        assert client.get("/admin/metrics").status_code == 403
        assert client.post("/admin/subscriptions/activate", json={"user_id": "u1"}).status_code == 403


class TestManualActivation:

    @patch("app.services.mercadopago_client.search_preapprovals")
    def test_activate_by_reference(self, mock_search, client, seed_data):
        sub = make_subscription()
        mock_search.return_value = [make_preapproval("pre-1")]
        login_admin(client)

        resp = client.post("/admin/subscriptions/activate", json={
            "external_reference": sub.external_reference,
        })

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["outcome"] == "activated"
        assert body["subscription"]["status"] == "active"
        assert body["subscription"]["metadata"]["activation_source"] == "manual"

    @patch("app.services.mercadopago_client.search_preapprovals")
    def test_not_approved_is_409(self, mock_search, client, seed_data):
        sub = make_subscription()
        mock_search.return_value = [make_preapproval("pre-1", status="pending")]
        login_admin(client)

        resp = client.post("/admin/subscriptions/activate", json={"subscription_id": sub.id})
        assert resp.status_code == 409
        assert resp.get_json()["outcome"] == "not_approved"

    @patch("app.services.mercadopago_client.search_preapprovals")
    def test_provider_down_is_502(self, mock_search, client, seed_data):
        sub = make_subscription()
        mock_search.side_effect = ProviderError("timeout", transient=True)
        login_admin(client)

        resp = client.post("/admin/subscriptions/activate", json={"subscription_id": sub.id})
        assert resp.status_code == 502
        assert resp.get_json()["outcome"] == "unknown"

    @patch("app.services.mercadopago_client.search_preapprovals")
    def test_force_activation_audited(self, mock_search, client, seed_data):
        sub = make_subscription()
        mock_search.return_value = []
        login_admin(client)

        resp = client.post("/admin/subscriptions/activate", json={
            "subscription_id": sub.id,
            "force": True,
            "reason": "Paid in store",
        })

        assert resp.status_code == 200
        event = AuditEvent.query.filter_by(action="subscription.activated").one()
        assert event.actor_user_id == seed_data["admin_id"]
        assert event.metadata_["forced"] is True
        assert event.metadata_["reason"] == "Paid in store"

    def test_force_without_reason_is_400(self, client, seed_data):
        sub = make_subscription()
        login_admin(client)
        resp = client.post("/admin/subscriptions/activate", json={
            "subscription_id": sub.id, "force": "true",
        })
        assert resp.status_code == 400

    def test_missing_identifier_is_400(self, client, seed_data):
        login_admin(client)
        assert client.post("/admin/subscriptions/activate", json={}).status_code == 400

    def test_unknown_subscription_is_404(self, client, seed_data):
        login_admin(client)
        resp = client.post("/admin/subscriptions/activate", json={"subscription_id": "nope"})
        assert resp.status_code == 404


class TestIntegrityEndpoint:

    def test_single_user(self, client, seed_data):
        login_admin(client)
        resp = client.post("/admin/integrity", json={"user_id": "u2"})

        body = resp.get_json()
        assert resp.status_code == 200
        assert body["results"][0]["integrity_score"] == 20
        assert body["summary"]["status"] == "critical"

    def test_batch(self, client, seed_data):
        make_subscription(status="active")
        login_admin(client)

        body = client.post("/admin/integrity", json={"user_ids": ["u1", "u2"]}).get_json()
        assert body["total_users"] == 2
        assert len(body["results"]) == 2

    def test_bad_user_ids(self, client, seed_data):
        login_admin(client)
        assert client.post("/admin/integrity", json={"user_ids": "u1"}).status_code == 400


class TestMetricsEndpoint:

    def test_metrics(self, client, seed_data):
        make_subscription(status="active")
        login_admin(client)

        body = client.get("/admin/metrics").get_json()
        assert body["active_subscriptions"] == 1
        assert "webhooks" in body

    def test_bad_start_date(self, client, seed_data):
        login_admin(client)
        assert client.get("/admin/metrics?start_date=yesterday").status_code == 400


class TestWebhookAdmin:

    def test_list_filters(self, client, seed_data):
        db.session.add_all([
            WebhookLog(entry_type="rejected", outcome="rejected", error="Invalid signature"),
            WebhookLog(entry_type="receipt", provider_notification_id="n1", topic="payment"),
        ])
        db.session.commit()
        login_admin(client)

        rows = client.get("/admin/webhooks?entry_type=rejected").get_json()["webhooks"]
        assert len(rows) == 1
        assert rows[0]["error"] == "Invalid signature"

    @patch("app.services.mercadopago_client.get_payment")
    def test_replay(self, mock_get, client, seed_data):
        sub = make_subscription()
        receipt = WebhookLog(
            entry_type="receipt",
            provider_notification_id="n1",
            topic="payment",
            resource_id="pay-1",
        )
        db.session.add(receipt)
        db.session.commit()
        mock_get.return_value = make_payment("pay-1", external_reference=sub.external_reference)
        login_admin(client)

        resp = client.post(f"/admin/webhooks/{receipt.id}/replay")

        assert resp.status_code == 200
        assert resp.get_json()["outcome"] == "activated"
        assert db.session.get(Subscription, sub.id).status == "active"

    def test_replay_unknown_is_404(self, client, seed_data):
        login_admin(client)
        assert client.post("/admin/webhooks/missing/replay").status_code == 404
