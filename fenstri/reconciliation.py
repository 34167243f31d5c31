"""Apply payment-provider events to invoices and subscriptions.

Every handler sets a state only when it differs from the stored one, so
retried or reordered deliveries converge on the same result. Events carrying
a provider id are additionally recorded in the ``PaymentEvent`` ledger and
skipped on replay.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Mapping

import stripe
from dateutil.relativedelta import relativedelta
from flask import current_app

from .errors import InvalidPayload
from .extensions import db
from .lifecycle import commit_session
from .models import (
    Invoice,
    PaymentEvent,
    Property,
    ServiceType,
    Subscription,
    SubscriptionStatus,
    to_money,
)

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
PAYMENT_FAILED = "invoice.payment_failed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

INVOICE_METADATA_KEY = "invoice_id"
SUBSCRIPTION_METADATA_KEY = "subscription_id"

_PROVIDER_SUBSCRIPTION_STATUS = {
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
}


class Outcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    DROPPED = "dropped"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


@dataclass
class ReconcileResult:
    kind: str
    outcome: Outcome
    invoice: Invoice | None = None
    subscription: Subscription | None = None


def parse_webhook(
    payload: bytes | str,
    signature: str | None,
    secret: str | None,
    *,
    verify: bool = True,
    tolerance: int | None = None,
) -> dict[str, Any]:
    if not secret or not signature:
        raise InvalidPayload("Missing webhook signature or secret")
    body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    if verify:
        try:
            stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
        except stripe.SignatureVerificationError as exc:
            raise InvalidPayload("Invalid webhook signature") from exc
    try:
        event = json.loads(body)
    except json.JSONDecodeError as exc:
        raise InvalidPayload("Invalid webhook payload") from exc
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise InvalidPayload("Webhook payload has no event type")
    if not isinstance((event.get("data") or {}).get("object"), dict):
        raise InvalidPayload("Webhook payload has no data object")
    return event


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, Mapping) else {}


def _locate_invoice(obj: Mapping[str, Any]) -> Invoice | None:
    invoice_id = _metadata(obj).get(INVOICE_METADATA_KEY)
    if invoice_id:
        invoice = db.session.get(Invoice, str(invoice_id))
        if invoice is None:
            logger.warning("Payment event references unknown invoice %s; dropping", invoice_id)
        return invoice
    external_id = obj.get("id")
    if external_id:
        invoice = Invoice.query.filter_by(external_invoice_id=str(external_id)).first()
        if invoice is not None:
            return invoice
    logger.info("Payment event carries no invoice reference; dropping")
    return None


def _locate_subscription(obj: Mapping[str, Any]) -> Subscription | None:
    external_id = obj.get("id")
    if external_id:
        subscription = Subscription.query.filter_by(external_subscription_id=str(external_id)).first()
        if subscription is not None:
            return subscription
    local_id = _metadata(obj).get(SUBSCRIPTION_METADATA_KEY)
    if local_id:
        return db.session.get(Subscription, str(local_id))
    return None


def _first_item_price(obj: Mapping[str, Any]) -> Decimal | None:
    items = (obj.get("items") or {}).get("data") or []
    if not items:
        return None
    unit_amount = (items[0].get("price") or {}).get("unit_amount")
    if unit_amount is None:
        return None
    return to_money(Decimal(str(unit_amount)) / 100)


def _payment_succeeded(obj: Mapping[str, Any]) -> ReconcileResult:
    invoice = _locate_invoice(obj)
    if invoice is None:
        return ReconcileResult(PAYMENT_SUCCEEDED, Outcome.DROPPED)
    if not invoice.mark_paid():
        logger.info("Invoice %s already %s; payment event leaves it unchanged", invoice.id, invoice.status.value)
        return ReconcileResult(PAYMENT_SUCCEEDED, Outcome.UNCHANGED, invoice=invoice)
    if obj.get("id") and not invoice.external_invoice_id:
        invoice.external_invoice_id = str(obj["id"])
    logger.info("Invoice %s marked paid", invoice.id)
    return ReconcileResult(PAYMENT_SUCCEEDED, Outcome.APPLIED, invoice=invoice)


def _payment_failed(obj: Mapping[str, Any]) -> ReconcileResult:
    invoice = _locate_invoice(obj)
    if invoice is None:
        return ReconcileResult(PAYMENT_FAILED, Outcome.DROPPED)
    if not invoice.mark_payment_failed():
        logger.info("Invoice %s is %s; failed payment leaves it unchanged", invoice.id, invoice.status.value)
        return ReconcileResult(PAYMENT_FAILED, Outcome.UNCHANGED, invoice=invoice)
    logger.info("Invoice %s marked overdue after failed payment", invoice.id)
    return ReconcileResult(PAYMENT_FAILED, Outcome.APPLIED, invoice=invoice)


def _subscription_created(obj: Mapping[str, Any]) -> ReconcileResult:
    metadata = _metadata(obj)
    org_id = metadata.get("org_id")
    property_id = metadata.get("property_id")
    service = metadata.get("service")
    if not (org_id and property_id and service):
        logger.warning("Subscription event missing org_id/property_id/service metadata; dropping")
        return ReconcileResult(SUBSCRIPTION_CREATED, Outcome.DROPPED)

    existing = _locate_subscription(obj)
    if existing is not None:
        return ReconcileResult(SUBSCRIPTION_CREATED, Outcome.UNCHANGED, subscription=existing)

    prop = db.session.get(Property, str(property_id))
    if prop is None or prop.organization_id != org_id:
        logger.warning("Subscription event names property %s outside organization %s; dropping", property_id, org_id)
        return ReconcileResult(SUBSCRIPTION_CREATED, Outcome.DROPPED)
    try:
        service_type = ServiceType(service)
    except ValueError:
        logger.warning("Subscription event names unknown service %r; dropping", service)
        return ReconcileResult(SUBSCRIPTION_CREATED, Outcome.DROPPED)

    default_frequency = current_app.config.get("SUBSCRIPTION_DEFAULT_FREQUENCY_MONTHS", 6)
    try:
        frequency = int(metadata.get("frequency_months") or default_frequency)
    except (TypeError, ValueError):
        frequency = default_frequency

    subscription = Subscription(
        organization_id=prop.organization_id,
        property_id=prop.id,
        service=service_type,
        status=SubscriptionStatus.ACTIVE,
        frequency_months=frequency,
        price_per_service=_first_item_price(obj),
        next_service_date=date.today() + relativedelta(months=frequency),
        external_subscription_id=str(obj["id"]) if obj.get("id") else None,
    )
    db.session.add(subscription)
    logger.info("Subscription created for property %s (%s every %s months)", prop.id, service_type.value, frequency)
    return ReconcileResult(SUBSCRIPTION_CREATED, Outcome.APPLIED, subscription=subscription)


def _subscription_updated(obj: Mapping[str, Any]) -> ReconcileResult:
    subscription = _locate_subscription(obj)
    if subscription is None:
        logger.warning("Subscription update for unknown subscription %s; dropping", obj.get("id"))
        return ReconcileResult(SUBSCRIPTION_UPDATED, Outcome.DROPPED)
    if subscription.status == SubscriptionStatus.CANCELLED:
        logger.info("Subscription %s is cancelled; update event leaves it unchanged", subscription.id)
        return ReconcileResult(SUBSCRIPTION_UPDATED, Outcome.UNCHANGED, subscription=subscription)

    changed = False
    status = _PROVIDER_SUBSCRIPTION_STATUS.get(str(obj.get("status")), SubscriptionStatus.CANCELLED)
    if subscription.status != status:
        subscription.status = status
        changed = True
    price = _first_item_price(obj)
    if price is not None and to_money(subscription.price_per_service) != price:
        subscription.price_per_service = price
        changed = True
    outcome = Outcome.APPLIED if changed else Outcome.UNCHANGED
    return ReconcileResult(SUBSCRIPTION_UPDATED, outcome, subscription=subscription)


def _subscription_deleted(obj: Mapping[str, Any]) -> ReconcileResult:
    subscription = _locate_subscription(obj)
    if subscription is None:
        logger.warning("Subscription deletion for unknown subscription %s; dropping", obj.get("id"))
        return ReconcileResult(SUBSCRIPTION_DELETED, Outcome.DROPPED)
    if subscription.status == SubscriptionStatus.CANCELLED:
        return ReconcileResult(SUBSCRIPTION_DELETED, Outcome.UNCHANGED, subscription=subscription)
    subscription.status = SubscriptionStatus.CANCELLED
    return ReconcileResult(SUBSCRIPTION_DELETED, Outcome.APPLIED, subscription=subscription)


_HANDLERS: dict[str, Callable[[Mapping[str, Any]], ReconcileResult]] = {
    PAYMENT_SUCCEEDED: _payment_succeeded,
    PAYMENT_FAILED: _payment_failed,
    SUBSCRIPTION_CREATED: _subscription_created,
    SUBSCRIPTION_UPDATED: _subscription_updated,
    SUBSCRIPTION_DELETED: _subscription_deleted,
}


def reconcile_payment_event(event: Mapping[str, Any]) -> ReconcileResult:
    kind = str(event.get("type") or "")
    obj = (event.get("data") or {}).get("object") or {}
    event_id = event.get("id")

    handler = _HANDLERS.get(kind)
    if handler is None:
        logger.info("Ignoring unhandled payment event type %s", kind)
        return ReconcileResult(kind, Outcome.IGNORED)

    if event_id and PaymentEvent.query.filter_by(provider_event_id=str(event_id)).first():
        logger.info("Payment event %s already processed", event_id)
        return ReconcileResult(kind, Outcome.DUPLICATE)

    result = handler(obj)
    if event_id:
        db.session.flush()
        org_id = None
        if result.invoice is not None:
            org_id = result.invoice.organization_id
        elif result.subscription is not None:
            org_id = result.subscription.organization_id
        db.session.add(
            PaymentEvent(
                provider_event_id=str(event_id),
                kind=kind,
                outcome=result.outcome.value,
                organization_id=org_id,
                invoice_id=result.invoice.id if result.invoice else None,
                subscription_id=result.subscription.id if result.subscription else None,
            )
        )
    commit_session()
    return result


__all__ = [
    "PAYMENT_SUCCEEDED",
    "PAYMENT_FAILED",
    "SUBSCRIPTION_CREATED",
    "SUBSCRIPTION_UPDATED",
    "SUBSCRIPTION_DELETED",
    "INVOICE_METADATA_KEY",
    "Outcome",
    "ReconcileResult",
    "parse_webhook",
    "reconcile_payment_event",
]
