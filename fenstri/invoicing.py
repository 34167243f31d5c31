"""Invoice issuing, adjustment and the printable German invoice document."""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal

from flask import current_app, render_template
from sqlalchemy import select

from .errors import ConstraintViolation
from .extensions import db
from .lifecycle import commit_session
from .models import Invoice, InvoiceStatus, Profile, WorkOrder, WorkOrderStatus, to_money, utcnow
from .permissions import Capability, require_capability
from .tenant import enforce_same_tenant, load_scoped

logger = logging.getLogger(__name__)

# Presentation buckets used by list filters and dashboards
PRESENTATION_FILTERS: dict[str, frozenset[InvoiceStatus]] = {
    "pending": frozenset({InvoiceStatus.DRAFT, InvoiceStatus.SENT}),
    "overdue": frozenset({InvoiceStatus.OVERDUE}),
    "paid": frozenset({InvoiceStatus.PAID}),
    "void": frozenset({InvoiceStatus.VOID}),
}


def tax_rate() -> Decimal:
    return Decimal(str(current_app.config.get("INVOICE_TAX_RATE", "0.19")))


def compute_totals(amount, rate: Decimal | None = None) -> tuple[Decimal, Decimal, Decimal]:
    net = to_money(amount)
    if net < 0:
        raise ConstraintViolation("Invoice amount cannot be negative", field="amount")
    tax = to_money(net * (tax_rate() if rate is None else rate))
    return net, tax, net + tax


def next_invoice_number(organization_id: str, year: int | None = None) -> str:
    prefix = current_app.config.get("INVOICE_NUMBER_PREFIX", "RE")
    stem = f"{prefix}-{year or date.today().year}-"
    numbers = db.session.execute(
        select(Invoice.invoice_number).where(
            Invoice.organization_id == organization_id,
            Invoice.invoice_number.like(f"{stem}%"),
        )
    ).scalars()
    highest = 0
    for number in numbers:
        suffix = number[len(stem):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return f"{stem}{highest + 1:04d}"


def live_invoice_for(work_order: WorkOrder) -> Invoice | None:
    return Invoice.query.filter(
        Invoice.work_order_id == work_order.id,
        Invoice.status != InvoiceStatus.VOID,
    ).first()


def issue_invoice(work_order: WorkOrder, actor: Profile | None = None, *, notes: str | None = None) -> Invoice:
    """Draft an invoice from a completed work order's items.

    ``actor`` is ``None`` for the automatic issue on completion.
    """
    if actor is not None:
        enforce_same_tenant(work_order, actor.organization_id)
        require_capability(actor, Capability.MANAGE_INVOICES)
    if work_order.status != WorkOrderStatus.DONE:
        raise ConstraintViolation("Only completed work orders can be invoiced", field="work_order_id")
    if live_invoice_for(work_order) is not None:
        raise ConstraintViolation("This work order already has an invoice", field="work_order_id")

    terms = int(current_app.config.get("INVOICE_PAYMENT_TERMS_DAYS", 14))
    invoice = Invoice(
        organization_id=work_order.organization_id,
        work_order_id=work_order.id,
        invoice_number=next_invoice_number(work_order.organization_id),
        status=InvoiceStatus.DRAFT,
        due_date=date.today() + timedelta(days=terms),
        notes=notes,
    )
    invoice.apply_amount(work_order.items_subtotal, tax_rate())
    db.session.add(invoice)
    commit_session()
    logger.info(
        "Issued invoice %s (%s) for work order %s, total %s",
        invoice.invoice_number,
        invoice.id,
        work_order.id,
        invoice.total_amount,
    )
    return invoice


def on_work_order_done(work_order: WorkOrder) -> Invoice | None:
    if not current_app.config.get("AUTO_INVOICE_ON_COMPLETION"):
        return None
    if work_order.status != WorkOrderStatus.DONE or live_invoice_for(work_order) is not None:
        return None
    return issue_invoice(work_order)


def _ensure_manageable(invoice: Invoice, actor: Profile) -> None:
    enforce_same_tenant(invoice, actor.organization_id)
    require_capability(actor, Capability.MANAGE_INVOICES)


def mark_sent(invoice: Invoice, actor: Profile) -> Invoice:
    _ensure_manageable(invoice, actor)
    if invoice.status != InvoiceStatus.DRAFT:
        raise ConstraintViolation(f"Only draft invoices can be sent (status is {invoice.status.value})", field="status")
    invoice.status = InvoiceStatus.SENT
    invoice.sent_at = utcnow()
    commit_session()
    logger.info("Invoice %s marked sent by %s", invoice.invoice_number, actor.id)
    return invoice


def void_invoice(invoice: Invoice, actor: Profile) -> Invoice:
    _ensure_manageable(invoice, actor)
    if invoice.status.is_terminal:
        raise ConstraintViolation(f"A {invoice.status.value} invoice cannot be voided", field="status")
    invoice.status = InvoiceStatus.VOID
    commit_session()
    logger.info("Invoice %s voided by %s", invoice.invoice_number, actor.id)
    return invoice


def adjust_amount(
    invoice: Invoice,
    actor: Profile,
    *,
    amount=None,
    due_date: date | None = None,
    notes: str | None = None,
) -> Invoice:
    _ensure_manageable(invoice, actor)
    if invoice.status.is_terminal:
        raise ConstraintViolation(f"A {invoice.status.value} invoice cannot be changed", field="status")
    if amount is not None:
        if invoice.status != InvoiceStatus.DRAFT:
            raise ConstraintViolation("Amounts can only be changed while the invoice is a draft", field="amount")
        net, tax, total = compute_totals(amount)
        invoice.amount, invoice.tax_amount, invoice.total_amount = net, tax, total
    if due_date is not None:
        invoice.due_date = due_date
    if notes is not None:
        invoice.notes = notes
    commit_session()
    return invoice


def presentation_status(invoice: Invoice) -> str:
    if invoice.status in (InvoiceStatus.PAID, InvoiceStatus.VOID, InvoiceStatus.OVERDUE):
        return invoice.status.value
    return "overdue" if invoice.is_past_due else "pending"


def format_currency(value) -> str:
    """German notation, e.g. ``1.234,50 €``."""
    amount = to_money(value)
    text = f"{abs(amount):,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    sign = "-" if amount < 0 else ""
    return f"{sign}{text} €"


def format_date(value: date | datetime | None) -> str:
    if value is None:
        return ""
    return value.strftime("%d.%m.%Y")


def render_invoice(invoice_id: str | None, organization_id: str | None) -> str:
    """Complete HTML document for one invoice of the caller's organization."""
    invoice = load_scoped(Invoice, invoice_id, organization_id, "Invoice")
    work_order = invoice.work_order
    return render_template(
        "invoices/invoice.html",
        invoice=invoice,
        work_order=work_order,
        property=work_order.property,
        customer=invoice.organization,
        items=list(work_order.items),
        issuer=current_app.config["INVOICE_ISSUER"],
        tax_rate_percent=int(tax_rate() * 100),
        payment_terms_days=current_app.config.get("INVOICE_PAYMENT_TERMS_DAYS", 14),
        issued_on=invoice.created_at,
    )


__all__ = [
    "PRESENTATION_FILTERS",
    "tax_rate",
    "compute_totals",
    "next_invoice_number",
    "live_invoice_for",
    "issue_invoice",
    "on_work_order_done",
    "mark_sent",
    "void_invoice",
    "adjust_amount",
    "presentation_status",
    "format_currency",
    "format_date",
    "render_invoice",
]
