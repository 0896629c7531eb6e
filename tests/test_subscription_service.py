"""
Tests for subscription reconciliation (expiry math, Mercado Pago and Iugu events, dunning).
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
import pytz

from barberpro.core.errors import GatewayError
from barberpro.services import subscription_service as subs


class TestExpiry:
    """Tests for compute_new_expiry and plan_days."""

    def test_extends_from_now_when_expired(self, now):
        """Expired subscriptions restart from now."""
        assert subs.compute_new_expiry(now - timedelta(days=5), 30, now) == now + timedelta(days=30)

    def test_extends_from_current_end_when_in_future(self, now):
        """Early renewals stack on top of the remaining time."""
        current = now + timedelta(days=10)
        assert subs.compute_new_expiry(current, 30, now) == now + timedelta(days=40)

    def test_accepts_none_and_iso_strings(self, now):
        """None and ISO strings (naive treated as UTC) are accepted."""
        assert subs.compute_new_expiry(None, 30, now) == now + timedelta(days=30)
        assert subs.compute_new_expiry("2025-03-20T15:00:00", 30, now) == datetime(2025, 4, 19, 15, 0, tzinfo=pytz.utc)
        assert subs.compute_new_expiry("2025-03-20T15:00:00Z", 1, now) == datetime(2025, 3, 21, 15, 0, tzinfo=pytz.utc)

    def test_plan_days_sources(self, db):
        """saas_plans fields win over the static table, which wins over the default."""
        db.seed("saas_plans", "p1", {"days_valid": 45})
        db.seed("saas_plans", "p2", {"interval_days": 60})
        assert subs.plan_days(db, "p1") == 45
        assert subs.plan_days(db, "p2") == 60
        assert subs.plan_days(db, "quarterly") == 90
        assert subs.plan_days(db, "annual") == 365
        assert subs.plan_days(db, "unknown") == 30
        assert subs.plan_days(db, None) == 30


class TestExternalReference:
    """Tests for parse_external_reference."""

    def test_double_underscore_format(self):
        assert subs.parse_external_reference("est1__plan-pro") == ("est1", "plan-pro")

    def test_legacy_dash_format(self):
        assert subs.parse_external_reference("est1-monthly") == ("est1", "monthly")

    def test_invalid_references(self):
        assert subs.parse_external_reference(None) == (None, None)
        assert subs.parse_external_reference("") == (None, None)
        assert subs.parse_external_reference("justanid") == (None, None)
        assert subs.parse_external_reference("__plan") == (None, None)
        assert subs.parse_external_reference("agendamento__e__b") == (None, None)


class TestClaimEvent:
    """Tests for the webhook idempotency guard."""

    def test_second_claim_is_rejected(self, db):
        assert subs.claim_event(db, "mp:payment:1") is True
        assert subs.claim_event(db, "mp:payment:1") is False

    def test_release_allows_reprocessing(self, db):
        subs.claim_event(db, "iugu:invoice.payment_failed:inv/1")
        subs.release_event(db, "iugu:invoice.payment_failed:inv/1")
        assert subs.claim_event(db, "iugu:invoice.payment_failed:inv/1") is True


class TestMercadoPagoPayment:
    """Tests for apply_mercadopago_payment."""

    def _payment(self, **overrides):
        payment = {
            "id": 123,
            "status": "approved",
            "external_reference": "est-1__plan-pro",
            "transaction_amount": 97.0,
            "payment_method_id": "pix",
            "metadata": {},
        }
        payment.update(overrides)
        return payment

    def test_approved_extends_establishment(self, db, establishment, saas_plan, now):
        """Approved payment extends from the later of now and the stored end date."""
        result = subs.apply_mercadopago_payment(db, self._payment(), now)

        assert result == "subscription_activated"
        est = db.data("establishments", "est-1")
        assert est["subscription_status"] == "active"
        assert est["subscription_end_date"] == establishment["subscription_end_date"] + timedelta(days=30)
        assert est["plan_id"] == "plan-pro"

        sub = list(db.all("subscriptions").values())[0]
        assert sub["status"] == "active"
        assert sub["retry_count"] == 0
        assert sub["mp_payment_id"] == "123"

        payments = list(db.all("saas_payments").values())
        assert len(payments) == 1
        assert payments[0]["amount"] == 97.0

    def test_duplicate_delivery_is_ignored(self, db, establishment, saas_plan, now):
        """The same payment id only extends once."""
        subs.apply_mercadopago_payment(db, self._payment(), now)
        first_end = db.data("establishments", "est-1")["subscription_end_date"]

        assert subs.apply_mercadopago_payment(db, self._payment(), now) == "duplicate"
        assert db.data("establishments", "est-1")["subscription_end_date"] == first_end
        assert len(db.all("saas_payments")) == 1

    def test_renewal_months_multiply_days(self, db, establishment, saas_plan, now):
        payment = self._payment(metadata={"type": "saas_renewal", "establishment_id": "est-1",
                                          "plan_id": "plan-pro", "months_to_add": 3})
        subs.apply_mercadopago_payment(db, payment, now)
        est = db.data("establishments", "est-1")
        assert est["subscription_end_date"] == establishment["subscription_end_date"] + timedelta(days=90)

    def test_rejected_marks_subscription_failed(self, db, establishment, now):
        db.seed("subscriptions", "sub-1", {"establishment_id": "est-1", "status": "active", "updated_at": now})
        result = subs.apply_mercadopago_payment(db, self._payment(status="rejected"), now)
        assert result == "subscription_failed"
        assert db.data("subscriptions", "sub-1")["status"] == "failed"
        assert db.data("subscriptions", "sub-1")["last_payment_status"] == "rejected"

    def test_pending_status_is_ignored(self, db, establishment, now):
        assert subs.apply_mercadopago_payment(db, self._payment(status="in_process"), now) == "ignored"
        assert db.all("subscriptions") == {}

    def test_unknown_reference_is_ignored(self, db, now):
        assert subs.apply_mercadopago_payment(db, self._payment(external_reference="random"), now) == "ignored"

    def test_missing_establishment(self, db, saas_plan, now):
        result = subs.apply_mercadopago_payment(db, self._payment(external_reference="ghost__plan-pro"), now)
        assert result == "establishment_not_found"
        assert db.all("webhook_events") == {}

    def test_booking_deposit_confirms_booking(self, db, establishment, now):
        db.seed("agendamentos", "bk-1", {"establishment_id": "est-1", "status": "pending_payment"})
        payment = self._payment(external_reference="agendamento__est-1__bk-1")

        assert subs.apply_mercadopago_payment(db, payment, now) == "booking_confirmed"
        booking = db.data("agendamentos", "bk-1")
        assert booking["status"] == "confirmed"
        assert booking["payment_status"] == "paid"
        # Depósito de agendamento não mexe na assinatura
        assert db.data("establishments", "est-1")["subscription_end_date"] == establishment["subscription_end_date"]

    def test_booking_deposit_with_invalid_reference(self, db, now):
        assert subs.apply_mercadopago_payment(db, self._payment(external_reference="agendamento__x"), now) == "invalid_reference"


class TestMercadoPagoPreapproval:
    """Tests for apply_mercadopago_preapproval."""

    def test_authorized_activates_pending_subscription(self, db, establishment, now):
        db.seed("subscriptions", "sub-1", {"establishment_id": "est-1", "mp_preapproval_id": "pre-1",
                                           "status": "pending", "updated_at": now})
        preapproval = {"id": "pre-1", "status": "authorized", "auto_recurring": {"frequency": 3}}

        assert subs.apply_mercadopago_preapproval(db, preapproval, now) == "subscription_activated"
        assert db.data("subscriptions", "sub-1")["status"] == "active"
        est = db.data("establishments", "est-1")
        assert est["subscription_end_date"] == establishment["subscription_end_date"] + timedelta(days=90)

    def test_paused_marks_failed(self, db, establishment, now):
        db.seed("subscriptions", "sub-1", {"establishment_id": "est-1", "mp_preapproval_id": "pre-1",
                                           "status": "active", "updated_at": now})
        preapproval = {"id": "pre-1", "status": "paused"}
        assert subs.apply_mercadopago_preapproval(db, preapproval, now) == "subscription_failed"
        assert db.data("subscriptions", "sub-1")["status"] == "failed"

    def test_resolves_establishment_from_reference(self, db, establishment, now):
        preapproval = {"id": "pre-9", "status": "authorized", "external_reference": "est-1__annual",
                       "auto_recurring": {"frequency": 12}}
        subs.apply_mercadopago_preapproval(db, preapproval, now)
        sub = list(db.all("subscriptions").values())[0]
        assert sub["mp_preapproval_id"] == "pre-9"
        assert sub["status"] == "active"

    def test_plan_days_valid_wins_over_frequency(self, db, establishment, saas_plan, now):
        db.seed("saas_plans", "plan-45", {"name": "Promo", "days_valid": 45})
        preapproval = {"id": "pre-7", "status": "authorized", "external_reference": "est-1__plan-45",
                       "auto_recurring": {"frequency": 1}}

        subs.apply_mercadopago_preapproval(db, preapproval, now)

        est = db.data("establishments", "est-1")
        assert est["subscription_end_date"] == establishment["subscription_end_date"] + timedelta(days=45)


class TestIugu:
    """Tests for Iugu subscription resolution and payment events."""

    def test_resolution_order(self, db, now):
        db.seed("subscriptions", "a", {"iugu_subscription_id": "iu-1", "establishment_id": "e1", "updated_at": now})
        db.seed("subscriptions", "b", {"establishment_id": "e2", "updated_at": now - timedelta(days=1)})
        db.seed("subscriptions", "c", {"establishment_id": "e2", "updated_at": now})
        db.seed("subscriptions", "d", {"user_id": "u9", "updated_at": now})

        assert subs.resolve_iugu_subscription(db, "iu-1", "e2")["id"] == "a"
        assert subs.resolve_iugu_subscription(db, "missing", "e2")["id"] == "c"
        assert subs.resolve_iugu_subscription(db, None, None, "u9")["id"] == "d"
        assert subs.resolve_iugu_subscription(db, None, None, None) is None

    def test_payment_failed_increments_retry_and_queues_dunning(self, db, establishment, now):
        db.seed("subscriptions", "sub-1", {"establishment_id": "est-1", "status": "active", "retry_count": 1})
        sub = {"id": "sub-1", **db.data("subscriptions", "sub-1")}

        subs.apply_iugu_payment_failed(db, sub, now)

        stored = db.data("subscriptions", "sub-1")
        assert stored["status"] == "past_due"
        assert stored["last_payment_status"] == "failed"
        assert stored["retry_count"] == 2
        logs = list(db.all("whatsapp_logs").values())
        assert logs[0]["message_type"] == "billing_dunning"
        assert logs[0]["status"] == "pending"
        assert logs[0]["phone_number"] == establishment["phone"]

    def test_payment_succeeded_resets_and_extends(self, db, establishment, now):
        current_end = establishment["subscription_end_date"] + timedelta(days=5)
        db.seed("subscriptions", "sub-1", {"establishment_id": "est-1", "status": "past_due",
                                           "retry_count": 3, "current_period_end": current_end})
        sub = {"id": "sub-1", **db.data("subscriptions", "sub-1")}

        new_end = subs.apply_iugu_payment_succeeded(db, sub, now)

        assert new_end == current_end + timedelta(days=30)
        stored = db.data("subscriptions", "sub-1")
        assert stored["status"] == "active"
        assert stored["retry_count"] == 0
        est = db.data("establishments", "est-1")
        assert est["subscription_status"] == "active"
        assert est["subscription_end_date"] == new_end
        logs = list(db.all("whatsapp_logs").values())
        assert logs[0]["message_type"] == "billing_receipt"

    def test_payment_succeeded_keeps_later_establishment_end(self, db, establishment, now):
        """Access already extended by another gateway is never shortened."""
        db.seed("subscriptions", "sub-1", {"establishment_id": "est-1", "status": "past_due",
                                           "current_period_end": now})
        sub = {"id": "sub-1", **db.data("subscriptions", "sub-1")}

        new_end = subs.apply_iugu_payment_succeeded(db, sub, now)

        assert new_end == establishment["subscription_end_date"] + timedelta(days=30)
        assert db.data("establishments", "est-1")["subscription_end_date"] == new_end
        assert db.data("subscriptions", "sub-1")["current_period_end"] == new_end


class TestCrossGateway:
    """A Mercado Pago approval and an Iugu renewal add up in either order."""

    @pytest.fixture
    def iugu_sub(self, db, establishment, now):
        db.seed("subscriptions", "sub-iu", {"establishment_id": "est-1", "iugu_subscription_id": "iu-1",
                                            "status": "active", "current_period_end": now, "updated_at": now})

    def _iugu_renewal(self, db, now):
        sub = {"id": "sub-iu", **db.data("subscriptions", "sub-iu")}
        subs.apply_iugu_payment_succeeded(db, sub, now)

    def _mp_approval(self, db, now):
        payment = {"id": 777, "status": "approved", "external_reference": "est-1__plan-pro",
                   "transaction_amount": 97.0, "metadata": {}}
        assert subs.apply_mercadopago_payment(db, payment, now) == "subscription_activated"

    def test_mercadopago_then_iugu(self, db, establishment, saas_plan, iugu_sub, now):
        self._mp_approval(db, now)
        self._iugu_renewal(db, now)

        est = db.data("establishments", "est-1")
        assert est["subscription_end_date"] == establishment["subscription_end_date"] + timedelta(days=60)

    def test_iugu_then_mercadopago(self, db, establishment, saas_plan, iugu_sub, now):
        self._iugu_renewal(db, now)
        self._mp_approval(db, now)

        est = db.data("establishments", "est-1")
        assert est["subscription_end_date"] == establishment["subscription_end_date"] + timedelta(days=60)


class TestDunning:
    """Tests for process_dunning."""

    def _seed_past_due(self, db, doc_id, days_overdue, now, iugu_id=None):
        db.seed("establishments", f"est-{doc_id}", {"phone": "11988887777", "subscription_status": "active"})
        db.seed("subscriptions", doc_id, {
            "establishment_id": f"est-{doc_id}",
            "status": "past_due",
            "current_period_end": now - timedelta(days=days_overdue),
            "iugu_subscription_id": iugu_id,
        })

    def test_warning_between_three_and_seven_days(self, db, now):
        self._seed_past_due(db, "s1", 5, now)
        iugu = MagicMock()

        counts = subs.process_dunning(db, iugu, now)

        assert counts == {"warned": 1, "suspended": 0}
        logs = list(db.all("whatsapp_logs").values())
        assert logs[0]["message_type"] == "billing_warning"
        assert db.data("subscriptions", "s1")["status"] == "past_due"

    @pytest.mark.parametrize("days_overdue", [4, 7])
    def test_warning_edges(self, db, now, days_overdue):
        self._seed_past_due(db, "s1", days_overdue, now, iugu_id="iu-1")
        iugu = MagicMock()

        assert subs.process_dunning(db, iugu, now) == {"warned": 1, "suspended": 0}
        assert db.data("establishments", "est-s1")["subscription_status"] == "active"
        iugu.suspend_subscription.assert_not_called()

    def test_no_action_within_grace_period(self, db, now):
        self._seed_past_due(db, "s1", 3, now)
        assert subs.process_dunning(db, MagicMock(), now) == {"warned": 0, "suspended": 0}
        assert db.all("whatsapp_logs") == {}

    def test_suspends_after_seven_days(self, db, now):
        self._seed_past_due(db, "s1", 8, now, iugu_id="iu-1")
        iugu = MagicMock()

        counts = subs.process_dunning(db, iugu, now)

        assert counts["suspended"] == 1
        assert db.data("establishments", "est-s1")["subscription_status"] == "suspended"
        assert db.data("subscriptions", "s1")["status"] == "canceled"
        iugu.suspend_subscription.assert_called_once_with("iu-1")

    def test_iugu_failure_does_not_stop_the_run(self, db, now):
        self._seed_past_due(db, "s1", 10, now, iugu_id="iu-1")
        self._seed_past_due(db, "s2", 10, now, iugu_id="iu-2")
        iugu = MagicMock()
        iugu.suspend_subscription.side_effect = GatewayError("Iugu suspend failed")

        counts = subs.process_dunning(db, iugu, now)

        assert counts["suspended"] == 2
        assert iugu.suspend_subscription.call_count == 2


class TestCancelAndAccess:
    """Tests for cancel_subscription and is_establishment_active."""

    def test_cancel_keeps_end_date(self, db, establishment):
        end = subs.cancel_subscription(db, "est-1")
        est = db.data("establishments", "est-1")
        assert est["subscription_status"] == "cancelled"
        assert est["subscription_end_date"] == establishment["subscription_end_date"]
        assert end == establishment["subscription_end_date"]

    @pytest.mark.parametrize("status, end_offset, expected", [
        ("active", 5, True),
        ("active", -1, False),
        ("cancelled", 5, True),
        ("cancelled", -1, False),
        ("suspended", 5, False),
        ("past_due", 5, False),
    ])
    def test_active_statuses(self, now, status, end_offset, expected):
        est = {"subscription_status": status, "subscription_end_date": now + timedelta(days=end_offset)}
        assert subs.is_establishment_active(est, now) is expected

    def test_trial(self, now):
        assert subs.is_establishment_active({"subscription_status": "trialing",
                                             "trial_ends_at": now + timedelta(days=1)}, now)
        assert not subs.is_establishment_active({"subscription_status": "trialing",
                                                 "trial_ends_at": now - timedelta(days=1)}, now)
        assert not subs.is_establishment_active({"subscription_status": "trialing"}, now)
        assert not subs.is_establishment_active(None, now)
