from __future__ import annotations

from flask import Blueprint, current_app, jsonify, make_response, request
from flask_login import current_user, login_required

from ..errors import ConstraintViolation, FenstriError
from ..forms import InvoiceAdjustForm, bind_form, json_body
from ..invoicing import PRESENTATION_FILTERS, adjust_amount, issue_invoice, mark_sent, render_invoice, void_invoice
from ..models import Invoice, InvoiceStatus, WorkOrder
from ..permissions import Capability, require_capability
from ..serializers import serialize_invoice
from ..tenant import capability_required, get_current_user, load_scoped, tenant_query, tenant_required

invoice_bp = Blueprint("invoices", __name__, url_prefix="/invoices")


def _load_invoice(invoice_id: str) -> Invoice:
    return load_scoped(Invoice, invoice_id, current_user.organization_id, "Invoice")


@invoice_bp.route("", methods=["GET"])
@login_required
@tenant_required
@capability_required(Capability.READ_INVOICES)
def list_invoices():
    query = tenant_query(Invoice, current_user.organization_id)
    status_filter = (request.args.get("status") or "").strip().lower()
    if status_filter:
        statuses = PRESENTATION_FILTERS.get(status_filter)
        if statuses is None:
            try:
                statuses = frozenset({InvoiceStatus(status_filter)})
            except ValueError:
                raise ConstraintViolation(f"Unknown invoice status '{status_filter}'", field="status") from None
        query = query.filter(Invoice.status.in_(list(statuses)))
    work_order_id = request.args.get("work_order_id")
    if work_order_id:
        query = query.filter(Invoice.work_order_id == work_order_id)
    invoices = query.order_by(Invoice.created_at.desc()).all()
    return jsonify({"invoices": [serialize_invoice(i) for i in invoices]})


@invoice_bp.route("/<invoice_id>", methods=["GET"])
@login_required
@tenant_required
@capability_required(Capability.READ_INVOICES)
def invoice_detail(invoice_id: str):
    return jsonify({"invoice": serialize_invoice(_load_invoice(invoice_id))})


@invoice_bp.route("/from-work-order/<work_order_id>", methods=["POST"])
@login_required
@tenant_required
def create_from_work_order(work_order_id: str):
    work_order = load_scoped(WorkOrder, work_order_id, current_user.organization_id, "Work order")
    notes = json_body().get("notes")
    invoice = issue_invoice(work_order, current_user, notes=str(notes) if notes else None)
    return jsonify({"invoice": serialize_invoice(invoice)}), 201


@invoice_bp.route("/<invoice_id>/send", methods=["POST"])
@login_required
@tenant_required
def send(invoice_id: str):
    invoice = mark_sent(_load_invoice(invoice_id), current_user)
    return jsonify({"invoice": serialize_invoice(invoice)})


@invoice_bp.route("/<invoice_id>/void", methods=["POST"])
@login_required
@tenant_required
def void(invoice_id: str):
    invoice = void_invoice(_load_invoice(invoice_id), current_user)
    return jsonify({"invoice": serialize_invoice(invoice)})


@invoice_bp.route("/<invoice_id>", methods=["PATCH"])
@login_required
@tenant_required
def adjust(invoice_id: str):
    invoice = _load_invoice(invoice_id)
    payload = json_body()
    form = bind_form(InvoiceAdjustForm, payload)
    adjust_amount(
        invoice,
        current_user,
        amount=form.amount.data if "amount" in payload else None,
        due_date=form.due_date.data if "due_date" in payload else None,
        notes=form.notes.data if "notes" in payload else None,
    )
    return jsonify({"invoice": serialize_invoice(invoice)})


@invoice_bp.route("/render", methods=["POST"])
def render():
    """Printable invoice; every failure answers 400 ``{"error": ...}``."""
    try:
        user = get_current_user()
        if user is None or not user.is_active:
            raise FenstriError("Authentication required")
        require_capability(user, Capability.RENDER_INVOICES)
        payload = request.get_json(silent=True) or {}
        invoice_id = payload.get("invoiceId") if isinstance(payload, dict) else None
        if not invoice_id:
            raise FenstriError("invoiceId is required")
        html = render_invoice(str(invoice_id), user.organization_id)
    except FenstriError as exc:
        return jsonify({"error": exc.message}), 400
    except Exception as exc:
        current_app.logger.exception("Invoice rendering failed")
        return jsonify({"error": str(exc) or "Invoice could not be rendered"}), 400

    response = make_response(html)
    response.headers["Content-Type"] = "text/html; charset=utf-8"
    return response
