"""
Tests for payment event parsing and reconciliation
"""
import json
from datetime import date
from decimal import Decimal

import pytest
from dateutil.relativedelta import relativedelta

from conftest import WEBHOOK_SECRET, stripe_event, stripe_signature
from fenstri.errors import InvalidPayload
from fenstri.extensions import db
from fenstri.models import Invoice, InvoiceStatus, PaymentEvent, Subscription, SubscriptionStatus
from fenstri.reconciliation import (
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    Outcome,
    parse_webhook,
    reconcile_payment_event,
)


def _event(kind, obj, event_id=None):
    return json.loads(stripe_event(kind, obj, event_id))


def _subscription_object(seed, external_id="sub_123", status="active", unit_amount=8900, **metadata):
    return {
        "id": external_id,
        "object": "subscription",
        "status": status,
        "metadata": {
            "org_id": seed.alpha_id,
            "property_id": seed.property_id,
            "service": "maintenance",
            **metadata,
        },
        "items": {"data": [{"price": {"unit_amount": unit_amount}}]},
    }


@pytest.mark.unit
class TestParseWebhook:
    """Tests for signature verification and payload shape checks"""

    def test_valid_signature(self):
        """Test a correctly signed payload is decoded"""
        payload = stripe_event(PAYMENT_SUCCEEDED, {"id": "in_1"}, "evt_1")
        event = parse_webhook(payload.encode("utf-8"), stripe_signature(payload), WEBHOOK_SECRET)
        assert event["id"] == "evt_1"
        assert event["type"] == PAYMENT_SUCCEEDED

    def test_missing_signature(self):
        """Test unsigned payloads are rejected"""
        payload = stripe_event(PAYMENT_SUCCEEDED, {"id": "in_1"})
        with pytest.raises(InvalidPayload):
            parse_webhook(payload, None, WEBHOOK_SECRET)

    def test_missing_secret(self):
        """Test payloads cannot be accepted without a configured secret"""
        payload = stripe_event(PAYMENT_SUCCEEDED, {"id": "in_1"})
        with pytest.raises(InvalidPayload):
            parse_webhook(payload, stripe_signature(payload), None)

    def test_wrong_secret(self):
        """Test signatures made with another secret are rejected"""
        payload = stripe_event(PAYMENT_SUCCEEDED, {"id": "in_1"})
        with pytest.raises(InvalidPayload):
            parse_webhook(payload, stripe_signature(payload, "whsec_other"), WEBHOOK_SECRET)

    def test_tampered_body(self):
        """Test a body changed after signing is rejected"""
        payload = stripe_event(PAYMENT_SUCCEEDED, {"id": "in_1"})
        signature = stripe_signature(payload)
        with pytest.raises(InvalidPayload):
            parse_webhook(payload.replace("in_1", "in_2"), signature, WEBHOOK_SECRET)

    def test_stale_timestamp(self):
        """Test signatures outside the tolerance window are rejected"""
        payload = stripe_event(PAYMENT_SUCCEEDED, {"id": "in_1"})
        signature = stripe_signature(payload, timestamp=1_000_000)
        with pytest.raises(InvalidPayload):
            parse_webhook(payload, signature, WEBHOOK_SECRET, tolerance=300)

    def test_invalid_json(self):
        """Test a signed but malformed body is rejected"""
        payload = "{not json"
        with pytest.raises(InvalidPayload):
            parse_webhook(payload, stripe_signature(payload), WEBHOOK_SECRET)

    def test_missing_data_object(self):
        """Test events without data.object are rejected"""
        payload = json.dumps({"id": "evt_1", "type": PAYMENT_SUCCEEDED, "data": {}})
        with pytest.raises(InvalidPayload):
            parse_webhook(payload, stripe_signature(payload), WEBHOOK_SECRET)

    def test_unverified_mode_still_parses(self):
        """Test verification can be skipped while shape checks remain"""
        payload = stripe_event(PAYMENT_SUCCEEDED, {"id": "in_1"})
        event = parse_webhook(payload, "t=0,v1=unchecked", WEBHOOK_SECRET, verify=False)
        assert event["data"]["object"]["id"] == "in_1"


@pytest.mark.unit
class TestPaymentEvents:
    """Tests for invoice payment reconciliation"""

    def test_payment_marks_paid(self, app, make_invoice):
        """Test a successful payment settles the referenced invoice"""
        invoice_id = make_invoice(status=InvoiceStatus.SENT)
        with app.app_context():
            result = reconcile_payment_event(
                _event(PAYMENT_SUCCEEDED, {"id": "in_100", "metadata": {"invoice_id": invoice_id}}, "evt_paid")
            )
            assert result.outcome == Outcome.APPLIED
        with app.app_context():
            invoice = db.session.get(Invoice, invoice_id)
            assert invoice.status == InvoiceStatus.PAID
            assert invoice.paid_at is not None
            assert invoice.external_invoice_id == "in_100"

    def test_replay_is_duplicate(self, app, make_invoice):
        """Test the same event id is applied only once"""
        invoice_id = make_invoice(status=InvoiceStatus.SENT)
        event = _event(PAYMENT_SUCCEEDED, {"id": "in_100", "metadata": {"invoice_id": invoice_id}}, "evt_once")
        with app.app_context():
            reconcile_payment_event(event)
            paid_at = db.session.get(Invoice, invoice_id).paid_at
            assert reconcile_payment_event(event).outcome == Outcome.DUPLICATE
            assert db.session.get(Invoice, invoice_id).paid_at == paid_at
            assert PaymentEvent.query.filter_by(provider_event_id="evt_once").count() == 1

    def test_second_delivery_id_is_unchanged(self, app, make_invoice):
        """Test a different event for an already paid invoice changes nothing"""
        invoice_id = make_invoice(status=InvoiceStatus.PAID)
        with app.app_context():
            result = reconcile_payment_event(
                _event(PAYMENT_SUCCEEDED, {"id": "in_100", "metadata": {"invoice_id": invoice_id}}, "evt_late")
            )
            assert result.outcome == Outcome.UNCHANGED

    def test_failed_payment_marks_overdue(self, app, make_invoice):
        """Test a failed payment moves an open invoice to overdue"""
        invoice_id = make_invoice(status=InvoiceStatus.SENT)
        with app.app_context():
            result = reconcile_payment_event(
                _event(PAYMENT_FAILED, {"id": "in_100", "metadata": {"invoice_id": invoice_id}}, "evt_fail")
            )
            assert result.outcome == Outcome.APPLIED
            assert db.session.get(Invoice, invoice_id).status == InvoiceStatus.OVERDUE

    def test_failed_payment_leaves_draft(self, app, make_invoice):
        """Test a failed payment does not move a draft to overdue"""
        invoice_id = make_invoice(status=InvoiceStatus.DRAFT)
        with app.app_context():
            result = reconcile_payment_event(
                _event(PAYMENT_FAILED, {"id": "in_101", "metadata": {"invoice_id": invoice_id}}, "evt_draft")
            )
            assert result.outcome == Outcome.UNCHANGED
            assert db.session.get(Invoice, invoice_id).status == InvoiceStatus.DRAFT

    def test_late_failure_never_unpays(self, app, make_invoice):
        """Test a failure arriving after payment leaves the invoice paid"""
        invoice_id = make_invoice(status=InvoiceStatus.SENT)
        obj = {"id": "in_100", "metadata": {"invoice_id": invoice_id}}
        with app.app_context():
            reconcile_payment_event(_event(PAYMENT_SUCCEEDED, obj, "evt_a"))
            result = reconcile_payment_event(_event(PAYMENT_FAILED, obj, "evt_b"))
            assert result.outcome == Outcome.UNCHANGED
            assert db.session.get(Invoice, invoice_id).status == InvoiceStatus.PAID

    def test_overdue_then_paid(self, app, make_invoice):
        """Test an overdue invoice can still be settled"""
        invoice_id = make_invoice(status=InvoiceStatus.OVERDUE)
        with app.app_context():
            reconcile_payment_event(
                _event(PAYMENT_SUCCEEDED, {"id": "in_7", "metadata": {"invoice_id": invoice_id}}, "evt_c")
            )
            assert db.session.get(Invoice, invoice_id).status == InvoiceStatus.PAID

    def test_lookup_by_external_id(self, app, make_invoice):
        """Test invoices are found by provider id when metadata is absent"""
        invoice_id = make_invoice(status=InvoiceStatus.SENT)
        with app.app_context():
            db.session.get(Invoice, invoice_id).external_invoice_id = "in_ext_9"
            db.session.commit()
            result = reconcile_payment_event(_event(PAYMENT_SUCCEEDED, {"id": "in_ext_9"}, "evt_ext"))
            assert result.outcome == Outcome.APPLIED

    def test_unknown_invoice_dropped(self, app, seed):
        """Test events for unknown invoices are dropped but recorded"""
        with app.app_context():
            result = reconcile_payment_event(
                _event(PAYMENT_SUCCEEDED, {"id": "in_x", "metadata": {"invoice_id": "missing"}}, "evt_drop")
            )
            assert result.outcome == Outcome.DROPPED
            assert PaymentEvent.query.filter_by(provider_event_id="evt_drop").one().outcome == "dropped"

    def test_unhandled_kind_ignored(self, app, seed):
        """Test unrelated event kinds are ignored and not recorded"""
        with app.app_context():
            result = reconcile_payment_event(_event("charge.refunded", {"id": "ch_1"}, "evt_ignored"))
            assert result.outcome == Outcome.IGNORED
            assert PaymentEvent.query.count() == 0


@pytest.mark.unit
class TestSubscriptionEvents:
    """Tests for recurring service contract reconciliation"""

    def test_created(self, app, seed):
        """Test a new subscription mirrors price and frequency"""
        with app.app_context():
            result = reconcile_payment_event(
                _event(SUBSCRIPTION_CREATED, _subscription_object(seed, frequency_months="3"), "evt_sub")
            )
            assert result.outcome == Outcome.APPLIED
            subscription = Subscription.query.filter_by(external_subscription_id="sub_123").one()
            assert subscription.organization_id == seed.alpha_id
            assert subscription.status == SubscriptionStatus.ACTIVE
            assert subscription.frequency_months == 3
            assert subscription.price_per_service == Decimal("89.00")
            assert subscription.next_service_date == date.today() + relativedelta(months=3)

    def test_created_default_frequency(self, app, seed):
        """Test frequency falls back to the configured default"""
        with app.app_context():
            reconcile_payment_event(_event(SUBSCRIPTION_CREATED, _subscription_object(seed), "evt_sub_d"))
            assert Subscription.query.one().frequency_months == 6

    def test_created_twice_unchanged(self, app, seed):
        """Test a repeated create with a new event id does not duplicate rows"""
        with app.app_context():
            reconcile_payment_event(_event(SUBSCRIPTION_CREATED, _subscription_object(seed), "evt_1"))
            result = reconcile_payment_event(_event(SUBSCRIPTION_CREATED, _subscription_object(seed), "evt_2"))
            assert result.outcome == Outcome.UNCHANGED
            assert Subscription.query.count() == 1

    def test_created_foreign_property_dropped(self, app, seed):
        """Test a property outside the named organization is refused"""
        obj = _subscription_object(seed, property_id=seed.beta_property_id)
        with app.app_context():
            result = reconcile_payment_event(_event(SUBSCRIPTION_CREATED, obj, "evt_x"))
            assert result.outcome == Outcome.DROPPED
            assert Subscription.query.count() == 0

    def test_created_without_metadata_dropped(self, app, seed):
        """Test creates lacking routing metadata are dropped"""
        with app.app_context():
            result = reconcile_payment_event(_event(SUBSCRIPTION_CREATED, {"id": "sub_bare"}, "evt_bare"))
            assert result.outcome == Outcome.DROPPED

    def test_updated_status_and_price(self, app, seed):
        """Test updates map provider status and refresh the price"""
        with app.app_context():
            reconcile_payment_event(_event(SUBSCRIPTION_CREATED, _subscription_object(seed), "evt_c"))
            result = reconcile_payment_event(
                _event(SUBSCRIPTION_UPDATED, _subscription_object(seed, status="past_due", unit_amount=9900), "evt_u")
            )
            assert result.outcome == Outcome.APPLIED
            subscription = Subscription.query.one()
            assert subscription.status == SubscriptionStatus.PAST_DUE
            assert subscription.price_per_service == Decimal("99.00")

    def test_unknown_provider_status_cancels(self, app, seed):
        """Test provider statuses other than active and past_due read as cancelled"""
        with app.app_context():
            reconcile_payment_event(_event(SUBSCRIPTION_CREATED, _subscription_object(seed), "evt_c"))
            reconcile_payment_event(_event(SUBSCRIPTION_UPDATED, _subscription_object(seed, status="unpaid"), "evt_u"))
            assert Subscription.query.one().status == SubscriptionStatus.CANCELLED

    def test_deleted(self, app, seed):
        """Test deletion cancels the subscription once"""
        with app.app_context():
            reconcile_payment_event(_event(SUBSCRIPTION_CREATED, _subscription_object(seed), "evt_c"))
            first = reconcile_payment_event(_event(SUBSCRIPTION_DELETED, {"id": "sub_123"}, "evt_d1"))
            second = reconcile_payment_event(_event(SUBSCRIPTION_DELETED, {"id": "sub_123"}, "evt_d2"))
            assert first.outcome == Outcome.APPLIED
            assert second.outcome == Outcome.UNCHANGED
            assert Subscription.query.one().status == SubscriptionStatus.CANCELLED

    def test_stale_update_after_delete(self, app, seed):
        """Test an active update arriving after deletion keeps the contract cancelled"""
        with app.app_context():
            reconcile_payment_event(_event(SUBSCRIPTION_CREATED, _subscription_object(seed), "evt_c"))
            reconcile_payment_event(_event(SUBSCRIPTION_DELETED, {"id": "sub_123"}, "evt_d"))
            result = reconcile_payment_event(
                _event(SUBSCRIPTION_UPDATED, _subscription_object(seed, status="active"), "evt_stale")
            )
            assert result.outcome == Outcome.UNCHANGED
            assert Subscription.query.one().status == SubscriptionStatus.CANCELLED

    def test_update_unknown_dropped(self, app, seed):
        """Test updates for unknown subscriptions are dropped"""
        with app.app_context():
            result = reconcile_payment_event(_event(SUBSCRIPTION_UPDATED, {"id": "sub_missing"}, "evt_m"))
            assert result.outcome == Outcome.DROPPED
