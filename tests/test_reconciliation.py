"""Tests for on-demand reconciliation and the scheduled sweep.

Covers:
- reconcile() by subscription id, reference, payment id and user id
- Provider "unknown" and "not approved" outcomes
- Forced activation through the reconciler
- run_sweep(): pending age cutoff, overlap guard, sync retries,
  divergence flagging
- The database lease that keeps sweeps from overlapping across processes
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from app.extensions import db
from app.models.job_lease import JobLease
from app.models.subscription import Subscription
from app.services import lease_service, reconciliation_service
from app.services.mercadopago_client import ProviderError
from tests.conftest import make_payment, make_preapproval, make_subscription


def _old(minutes=30):
    return datetime.now(timezone.utc) - timedelta(minutes=minutes)


class TestReconcile:

    def test_requires_identifier(self, app, seed_data):
        with pytest.raises(ValueError):
            reconciliation_service.reconcile()

    def test_force_requires_reason(self, app, seed_data):
        with pytest.raises(ValueError):
            reconciliation_service.reconcile(subscription_id="x", force=True)

    @patch("app.services.mercadopago_client.search_preapprovals")
    def test_activates_when_provider_authorized(self, mock_search, app, seed_data):
        sub = make_subscription()
        mock_search.return_value = [make_preapproval("pre-1", external_reference=sub.external_reference)]

        result = reconciliation_service.reconcile(external_reference=sub.external_reference)

        assert result.outcome == reconciliation_service.ACTIVATED
        assert result.subscription.status == "active"
        assert result.subscription.provider_subscription_id == "pre-1"
        mock_search.assert_called_once_with(sub.external_reference)

    @patch("app.services.mercadopago_client.search_preapprovals")
    def test_pending_at_provider_is_not_approved(self, mock_search, app, seed_data):
        sub = make_subscription()
        mock_search.return_value = [make_preapproval("pre-1", status="pending")]

        result = reconciliation_service.reconcile(subscription_id=sub.id)

        assert result.outcome == reconciliation_service.NOT_APPROVED
        assert db.session.get(Subscription, sub.id).status == "pending"

    @patch("app.services.mercadopago_client.search_preapprovals")
    def test_nothing_at_provider(self, mock_search, app, seed_data):
        sub = make_subscription()
        mock_search.return_value = []
        result = reconciliation_service.reconcile(subscription_id=sub.id)
        assert result.outcome == reconciliation_service.NOT_APPROVED

    @patch("app.services.mercadopago_client.get_preapproval")
    @patch("app.services.mercadopago_client.search_preapprovals")
    def test_checkout_preapproval_used_when_search_is_empty(self, mock_search, mock_get, app, seed_data):
        sub = make_subscription(metadata_={"checkout_preapproval_id": "pre-9"})
        mock_search.return_value = []
        mock_get.return_value = make_preapproval("pre-9")

        result = reconciliation_service.reconcile(subscription_id=sub.id)

        assert result.outcome == reconciliation_service.ACTIVATED
        mock_get.assert_called_once_with("pre-9")

    @patch("app.services.mercadopago_client.get_preapproval")
    def test_provider_down_is_unknown(self, mock_get, app, seed_data):
        sub = make_subscription(provider_subscription_id="pre-1")
        mock_get.side_effect = ProviderError("timeout", transient=True)

        result = reconciliation_service.reconcile(subscription_id=sub.id)

        assert result.outcome == reconciliation_service.UNKNOWN
        assert db.session.get(Subscription, sub.id).status == "pending"

    @patch("app.services.mercadopago_client.get_preapproval")
    def test_force_survives_provider_outage(self, mock_get, app, seed_data):
        sub = make_subscription(provider_subscription_id="pre-1")
        mock_get.side_effect = ProviderError("timeout", transient=True)

        result = reconciliation_service.reconcile(
            subscription_id=sub.id, force=True, reason="Customer sent receipt",
            source="manual", actor_user_id=seed_data["admin_id"],
        )

        assert result.outcome == reconciliation_service.ACTIVATED
        assert result.subscription.meta["activation_source"] == "manual"

    def test_already_active(self, app, seed_data):
        sub = make_subscription(status="active")
        result = reconciliation_service.reconcile(subscription_id=sub.id)
        assert result.outcome == reconciliation_service.ALREADY_ACTIVE

    def test_cancelled_is_not_pending(self, app, seed_data):
        sub = make_subscription(status="cancelled")
        result = reconciliation_service.reconcile(subscription_id=sub.id)
        assert result.outcome == reconciliation_service.NOT_PENDING

    def test_unknown_reference(self, app, seed_data):
        result = reconciliation_service.reconcile(external_reference="SUB-zz-1-00000000")
        assert result.outcome == reconciliation_service.NOT_FOUND

    @patch("app.services.mercadopago_client.get_payment")
    def test_by_payment_id(self, mock_get, app, seed_data):
        sub = make_subscription()
        mock_get.return_value = make_payment("pay-3", external_reference=sub.external_reference)

        result = reconciliation_service.reconcile(payment_id="pay-3")

        assert result.outcome == reconciliation_service.ACTIVATED
        assert result.subscription.meta["last_payment_id"] == "pay-3"

    @patch("app.services.mercadopago_client.search_preapprovals")
    def test_by_user_prefers_latest_pending(self, mock_search, app, seed_data):
        make_subscription(reference="SUB-u1-p73-00000001", created_at=_old(120))
        newest = make_subscription(reference="SUB-u1-p73-00000002", created_at=_old(5))
        mock_search.return_value = [make_preapproval("pre-1")]

        result = reconciliation_service.reconcile(user_id="u1")

        assert result.subscription.id == newest.id
        assert result.outcome == reconciliation_service.ACTIVATED

    def test_result_serialises(self, app, seed_data):
        sub = make_subscription(status="active")
        data = reconciliation_service.reconcile(subscription_id=sub.id).to_dict()
        assert data["outcome"] == "already_active"
        assert data["subscription"]["id"] == sub.id


class TestSweep:

    @patch("app.services.mercadopago_client.get_preapproval")
    @patch("app.services.mercadopago_client.search_preapprovals")
    def test_sweep_checks_only_old_pending(self, mock_search, mock_get, app, seed_data):
        old = make_subscription(reference="SUB-u1-p73-00000001", created_at=_old(30))
        fresh = make_subscription(reference="SUB-u1-p73-00000002", created_at=_old(1))
        old_ref = old.external_reference
        mock_search.side_effect = lambda ref: (
            [make_preapproval("pre-1", external_reference=ref)] if ref == old_ref else []
        )
        mock_get.return_value = make_preapproval("pre-1")

        report = reconciliation_service.run_sweep()

        assert report.skipped is False
        assert report.checked == 1
        assert report.outcomes == {"activated": 1}
        assert db.session.get(Subscription, old.id).status == "active"
        assert db.session.get(Subscription, fresh.id).status == "pending"

    @patch("app.services.reconciliation_service.reconcile")
    def test_one_failure_does_not_stop_the_sweep(self, mock_reconcile, app, seed_data):
        make_subscription(reference="SUB-u1-p73-00000001", created_at=_old(30))
        make_subscription(reference="SUB-u1-p73-00000002", created_at=_old(40))
        mock_reconcile.side_effect = [
            RuntimeError("bug"),
            reconciliation_service.ReconcileResult(reconciliation_service.UNKNOWN),
        ]

        report = reconciliation_service.run_sweep()
        assert report.outcomes == {"error": 1, "unknown": 1}

    def test_overlapping_sweep_skipped(self, app, seed_data):
        reconciliation_service._sweep_lock.acquire()
        try:
            report = reconciliation_service.run_sweep()
        finally:
            reconciliation_service._sweep_lock.release()
        assert report.skipped is True

    @patch("app.services.mercadopago_client.update_preapproval_status")
    def test_failed_mirror_retried(self, mock_update, app, seed_data):
        sub = make_subscription(
            status="paused",
            provider_subscription_id="pre-1",
            metadata_={"provider_sync_status": "failed", "provider_sync_target": "paused"},
        )

        tried, recovered = reconciliation_service.retry_failed_provider_syncs()

        assert (tried, recovered) == (1, 1)
        mock_update.assert_called_once_with("pre-1", "paused")
        assert db.session.get(Subscription, sub.id).meta["provider_sync_status"] == "synced"

    @patch("app.services.mercadopago_client.get_preapproval")
    def test_divergence_flagged_not_applied(self, mock_get, app, seed_data):
        sub = make_subscription(status="active", provider_subscription_id="pre-1")
        mock_get.return_value = make_preapproval("pre-1", status="cancelled")

        found = reconciliation_service.detect_divergence()

        assert found == [{"subscription_id": sub.id, "provider_status": "cancelled"}]
        sub = db.session.get(Subscription, sub.id)
        assert sub.status == "active"
        assert sub.meta["provider_divergence"]["provider_status"] == "cancelled"

    @patch("app.services.mercadopago_client.get_preapproval")
    def test_divergence_cleared_when_provider_agrees(self, mock_get, app, seed_data):
        sub = make_subscription(
            status="active",
            provider_subscription_id="pre-1",
            metadata_={"provider_divergence": {"provider_status": "paused"}},
        )
        mock_get.return_value = make_preapproval("pre-1", status="authorized")

        assert reconciliation_service.detect_divergence() == []
        assert db.session.get(Subscription, sub.id).meta["provider_divergence"] is None


class TestSweepLease:

    def _hold(self, expires_in):
        now = datetime.now(timezone.utc)
        db.session.add(JobLease(
            name=reconciliation_service.SWEEP_LEASE,
            holder="other-worker",
            acquired_at=now,
            expires_at=now + expires_in,
        ))
        db.session.commit()

    def test_lease_held_elsewhere_skips_sweep(self, app, seed_data):
        self._hold(timedelta(minutes=5))

        report = reconciliation_service.run_sweep()

        assert report.skipped is True
        db.session.expire_all()
        assert JobLease.query.one().holder == "other-worker"

    @patch("app.services.mercadopago_client.search_preapprovals")
    def test_expired_lease_is_taken_over(self, mock_search, app, seed_data):
        make_subscription(created_at=_old(30))
        mock_search.return_value = []
        self._hold(timedelta(minutes=-1))

        report = reconciliation_service.run_sweep()

        assert report.skipped is False
        assert report.checked == 1
        assert JobLease.query.count() == 0

    def test_lease_is_exclusive_until_released(self, app, seed_data):
        holder = lease_service.acquire("reconcile_sweep", 60)
        assert holder is not None
        assert lease_service.acquire("reconcile_sweep", 60) is None

        lease_service.release("reconcile_sweep", holder)
        assert JobLease.query.count() == 0
        assert lease_service.acquire("reconcile_sweep", 60) is not None

    def test_sweep_releases_its_lease(self, app, seed_data):
        assert reconciliation_service.run_sweep().skipped is False
        assert JobLease.query.count() == 0


class TestCronEndpoint:

    def test_requires_bearer_secret(self, client, seed_data):
        assert client.post("/cron/reconcile").status_code == 401
        resp = client.post("/cron/reconcile", headers={"Authorization": "Bearer wrong"})
        assert resp.status_code == 401

    def test_runs_sweep(self, client, seed_data):
        resp = client.post(
            "/cron/reconcile", headers={"Authorization": "Bearer cron-test-secret"}
        )
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["checked"] == 0
        assert body["skipped"] is False
