from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from ..email_service import send_invoice_paid_notice
from ..extensions import csrf
from ..models import Invoice, Profile, UserRole
from ..reconciliation import PAYMENT_SUCCEEDED, Outcome, parse_webhook, reconcile_payment_event
from ..tenant import tenant_query

webhook_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


def _send_paid_notice(invoice: Invoice) -> None:
    recipients = (
        tenant_query(Profile, invoice.organization_id)
        .filter(Profile.role.in_([UserRole.ADMIN, UserRole.DISPATCHER]), Profile.active.is_(True))
        .with_entities(Profile.email)
        .all()
    )
    for email, in recipients:
        try:
            send_invoice_paid_notice(email, invoice)
        except Exception:
            current_app.logger.exception("Failed to send invoice paid notice to %s", email)


@webhook_bp.route("/stripe", methods=["POST"])
@csrf.exempt
def stripe_webhook():
    event = parse_webhook(
        request.get_data(),
        request.headers.get("Stripe-Signature"),
        current_app.config.get("STRIPE_WEBHOOK_SECRET"),
        verify=current_app.config.get("STRIPE_WEBHOOK_VERIFY", True),
        tolerance=current_app.config.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS"),
    )
    current_app.logger.info("Received payment webhook %s (%s)", event.get("id"), event["type"])

    result = reconcile_payment_event(event)
    current_app.logger.info("Payment webhook %s: %s", event["type"], result.outcome.value)

    if result.kind == PAYMENT_SUCCEEDED and result.outcome == Outcome.APPLIED and result.invoice is not None:
        _send_paid_notice(result.invoice)
    return jsonify({"received": True})
