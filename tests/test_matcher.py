"""Tests for the subscription matcher strategy chain.

Covers:
- Each strategy in order of precedence
- Time windows for the fallback strategies
- Ambiguity is reported, never guessed
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from app.services import subscription_matcher
from app.services.subscription_matcher import AMBIGUOUS, MATCHED, NOT_FOUND, resolve
from tests.conftest import make_payment, make_preapproval, make_subscription


class TestStrategyChain:

    def test_exact_external_reference(self, app, seed_data):
        sub = make_subscription(reference="SUB-u1-p73-ab12cd34")
        result = resolve(make_payment(external_reference="SUB-u1-p73-ab12cd34"))

        assert result.outcome == MATCHED
        assert result.subscription.id == sub.id
        assert result.strategy == "external_reference"

    def test_provider_subscription_id(self, app, seed_data):
        sub = make_subscription(status="active", provider_subscription_id="pre-1")
        result = resolve(make_preapproval("pre-1", external_reference="SUB-other"))

        assert result.matched
        assert result.subscription.id == sub.id
        assert result.strategy == "provider_subscription_id"

    def test_metadata_reference(self, app, seed_data):
        sub = make_subscription(
            status="active",
            metadata_={"provider_external_reference": "SUB-u1-p73-ff99ee11"},
        )
        result = resolve(make_payment(
            external_reference="SUB-u1-p73-ff99ee11",
            metadata={},
            payer={},
        ))

        assert result.matched
        assert result.subscription.id == sub.id
        assert result.strategy == "metadata_reference"

    def test_user_product_window(self, app, seed_data):
        sub = make_subscription(reference="SUB-u1-p73-ab12cd34")
        payment = make_payment(external_reference="SUB-u1-p73-ff99ee11", status="authorized")

        result = resolve(payment, kind="payment")
        assert result.matched
        assert result.subscription.id == sub.id
        assert result.strategy == "user_product_window"

    def test_identity_taken_from_reference_when_metadata_missing(self, app, seed_data):
        sub = make_subscription()
        payment = make_payment(
            external_reference="SUB-u1-p73-ff99ee11", metadata={}, payer={}
        )
        result = resolve(payment)
        assert result.matched
        assert result.subscription.id == sub.id

    def test_user_product_window_excludes_old_records(self, app, seed_data):
        make_subscription(created_at=datetime.now(timezone.utc) - timedelta(hours=2))
        payment = make_payment(external_reference="SUB-u1-p73-ff99ee11", payer={})

        assert resolve(payment).outcome == NOT_FOUND

    def test_user_email_window(self, app, seed_data):
        sub = make_subscription(
            product_id="12",
            created_at=datetime.now(timezone.utc) - timedelta(hours=3),
        )
        payment = make_payment(product_id="99", external_reference=None)

        result = resolve(payment)
        assert result.matched
        assert result.subscription.id == sub.id
        assert result.strategy == "user_email_window"

    def test_email_window_requires_sole_pending_record(self, app, seed_data):
        earlier = datetime.now(timezone.utc) - timedelta(hours=3)
        make_subscription(product_id="12", created_at=earlier)
        make_subscription(
            product_id="14",
            created_at=earlier,
            reference="SUB-u1-p14-00000000",
            customer_snapshot={"email": "other@example.com"},
        )
        payment = make_payment(product_id="99")

        result = resolve(payment)
        assert result.outcome == AMBIGUOUS
        assert len(result.candidate_ids) == 2

    def test_ambiguous_user_product_window(self, app, seed_data):
        make_subscription(reference="SUB-u1-p73-aaaa0001")
        make_subscription(reference="SUB-u1-p73-aaaa0002")
        payment = make_payment(external_reference="SUB-u1-p73-ff99ee11")

        result = resolve(payment)
        assert result.outcome == AMBIGUOUS
        assert result.strategy == "user_product_window"
        assert result.subscription is None

    def test_nothing_matches(self, app, seed_data):
        payment = make_payment(user_id="u9", external_reference="SUB-u9-p1-deadbeef")
        assert resolve(payment).outcome == NOT_FOUND


class TestEntryPoints:

    @patch("app.services.mercadopago_client.get_payment")
    def test_match_payment_fetches_from_provider(self, mock_get, app, seed_data):
        sub = make_subscription()
        mock_get.return_value = make_payment("pay-5", external_reference=sub.external_reference)

        result = subscription_matcher.match_payment("pay-5")
        mock_get.assert_called_once_with("pay-5")
        assert result.subscription.id == sub.id
        assert result.charge.payment_id == "pay-5"

    @patch("app.services.mercadopago_client.get_authorized_payment")
    def test_match_authorized_payment(self, mock_get, app, seed_data):
        sub = make_subscription(status="active", provider_subscription_id="pre-1")
        mock_get.return_value = {
            "id": 42,
            "preapproval_id": "pre-1",
            "status": "processed",
            "payment": {"id": 9001, "status": "approved"},
        }

        result = subscription_matcher.match_authorized_payment("42")
        assert result.kind == "authorized_payment"
        assert result.subscription.id == sub.id
        assert result.charge.payment_id == "9001"

    def test_detect_kind(self):
        assert subscription_matcher.detect_kind(make_preapproval()) == "preapproval"
        assert subscription_matcher.detect_kind({"preapproval_id": "x", "payment": {}}) == "authorized_payment"
        assert subscription_matcher.detect_kind(make_payment()) == "payment"
