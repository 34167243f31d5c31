from __future__ import annotations

import json

from flask import Blueprint, current_app, jsonify, request, send_file
from flask_login import current_user, login_required

from ..email_service import send_work_order_alert
from ..errors import ConstraintViolation, FenstriError, NotFound
from ..forms import AssignTechnicianForm, ReportForm, TransitionForm, WorkOrderForm, bind_form, json_body
from ..invoicing import on_work_order_done
from ..lifecycle import allowed_targets, assign_technician, create_work_order, transition
from ..models import Invoice, Photo, Profile, UserRole, WorkOrder, WorkOrderStatus
from ..permissions import Capability
from ..reports import REPORT_FIELDS, submit_report
from ..serializers import serialize_invoice, serialize_profile, serialize_work_order
from ..storage import PhotoStorage
from ..tenant import (
    capability_required,
    ensure_work_order_visible,
    load_scoped,
    tenant_query,
    tenant_required,
    visible_work_orders,
)

work_order_bp = Blueprint("work_orders", __name__, url_prefix="/work-orders")


def _load_work_order(work_order_id: str) -> WorkOrder:
    work_order = load_scoped(WorkOrder, work_order_id, current_user.organization_id, "Work order")
    ensure_work_order_visible(work_order, current_user)
    return work_order


def _detail_payload(work_order: WorkOrder, invoice: Invoice | None = None) -> dict:
    payload = {
        "work_order": serialize_work_order(work_order, detail=True),
        "allowed_transitions": [status.value for status in allowed_targets(work_order, current_user)],
    }
    if invoice is not None:
        payload["invoice"] = serialize_invoice(invoice)
    return payload


def _dispatch_recipients(work_order: WorkOrder) -> set[str]:
    rows = (
        tenant_query(Profile, work_order.organization_id)
        .filter(Profile.role.in_([UserRole.DISPATCHER, UserRole.ADMIN]), Profile.active.is_(True))
        .with_entities(Profile.email)
        .all()
    )
    return {email for email, in rows if email}


def _notify(work_order: WorkOrder, recipients: set[str], subject: str, message: str) -> None:
    items = [
        f"Objekt: {work_order.property.name if work_order.property else '-'}",
        f"Leistung: {work_order.service.value}",
        f"Status: {work_order.status.value}",
        f"Priorität: {work_order.priority.value}",
    ]
    if work_order.scheduled_at:
        items.append(f"Termin: {work_order.scheduled_at.strftime('%d.%m.%Y %H:%M')}")
    context = {"title": subject, "message": message, "items": items, "work_order": work_order}
    for email in recipients:
        try:
            send_work_order_alert(email, subject, context)
        except Exception:
            current_app.logger.exception("Failed to send work order alert to %s", email)


def _after_status_change(work_order: WorkOrder) -> Invoice | None:
    if work_order.status == WorkOrderStatus.QA_HOLD:
        _notify(
            work_order,
            _dispatch_recipients(work_order),
            "Auftrag wartet auf Prüfung",
            f"{current_user.full_name} hat den Auftrag zur Qualitätsprüfung markiert.",
        )
    if work_order.status != WorkOrderStatus.DONE:
        return None
    try:
        return on_work_order_done(work_order)
    except FenstriError:
        current_app.logger.exception("Automatic invoice for work order %s failed", work_order.id)
        return None


@work_order_bp.route("", methods=["GET"])
@login_required
@tenant_required
def list_work_orders():
    query = visible_work_orders(current_user)
    status_filter = (request.args.get("status") or "").strip().lower()
    if status_filter:
        try:
            query = query.filter(WorkOrder.status == WorkOrderStatus(status_filter))
        except ValueError:
            raise ConstraintViolation(f"Unknown work-order status '{status_filter}'", field="status") from None
    property_id = request.args.get("property_id")
    if property_id:
        query = query.filter(WorkOrder.property_id == property_id)
    work_orders = query.order_by(WorkOrder.created_at.desc()).all()
    return jsonify({"work_orders": [serialize_work_order(w) for w in work_orders]})


@work_order_bp.route("", methods=["POST"])
@login_required
@tenant_required
@capability_required(Capability.CREATE_WORK_ORDER)
def create():
    form = bind_form(WorkOrderForm, json_body())
    work_order = create_work_order(
        current_user,
        property_id=form.property_id.data.strip(),
        description=form.description.data,
        service=form.service.data,
        priority=form.priority.data,
        preferred_start=form.preferred_start.data,
        preferred_end=form.preferred_end.data,
    )
    return jsonify(_detail_payload(work_order)), 201


@work_order_bp.route("/technicians", methods=["GET"])
@login_required
@tenant_required
@capability_required(Capability.VIEW_ROSTER)
def technicians():
    roster = (
        tenant_query(Profile, current_user.organization_id)
        .filter(Profile.role == UserRole.TECHNICIAN, Profile.active.is_(True))
        .order_by(Profile.full_name.asc())
        .all()
    )
    return jsonify({"technicians": [serialize_profile(p) for p in roster]})


@work_order_bp.route("/<work_order_id>", methods=["GET"])
@login_required
@tenant_required
def detail(work_order_id: str):
    return jsonify(_detail_payload(_load_work_order(work_order_id)))


@work_order_bp.route("/<work_order_id>/assign", methods=["POST"])
@login_required
@tenant_required
def assign(work_order_id: str):
    work_order = _load_work_order(work_order_id)
    form = bind_form(AssignTechnicianForm, json_body())
    previous_assignee = work_order.assigned_to
    assign_technician(
        work_order,
        form.technician_id.data.strip(),
        current_user,
        scheduled_at=form.scheduled_at.data,
    )
    if work_order.assignee and work_order.assigned_to != previous_assignee:
        _notify(
            work_order,
            {work_order.assignee.email},
            "Neuer Auftrag zugewiesen",
            f"{current_user.full_name} hat Ihnen einen Auftrag zugewiesen.",
        )
    return jsonify(_detail_payload(work_order))


@work_order_bp.route("/<work_order_id>/transition", methods=["POST"])
@login_required
@tenant_required
def change_status(work_order_id: str):
    work_order = _load_work_order(work_order_id)
    form = bind_form(TransitionForm, json_body())
    transition(work_order, form.status.data, current_user)
    invoice = _after_status_change(work_order)
    return jsonify(_detail_payload(work_order, invoice))


def _report_payload() -> tuple[dict, list | None, list]:
    if request.mimetype == "multipart/form-data":
        payload = request.form.to_dict()
        raw_items = payload.pop("items", None)
        try:
            items = json.loads(raw_items) if raw_items else None
        except json.JSONDecodeError:
            raise ConstraintViolation("items must be a JSON array", field="items") from None
        photos = [upload for upload in request.files.getlist("photos") if upload and upload.filename]
    else:
        payload = json_body()
        items = payload.pop("items", None)
        photos = []
    if items is not None and not isinstance(items, list):
        raise ConstraintViolation("items must be a list", field="items")
    if items is not None and not all(isinstance(entry, dict) for entry in items):
        raise ConstraintViolation("Each item must be an object", field="items")
    return payload, items, photos


@work_order_bp.route("/<work_order_id>/report", methods=["POST"])
@login_required
@tenant_required
@capability_required(Capability.FILE_REPORT)
def report(work_order_id: str):
    work_order = _load_work_order(work_order_id)
    payload, items, photos = _report_payload()
    form = bind_form(ReportForm, payload)
    fields = {name: getattr(form, name).data for name in REPORT_FIELDS if name in payload}
    previous_status = work_order.status

    result = submit_report(
        work_order,
        current_user,
        fields=fields,
        items=items,
        photos=photos,
        outcome=form.outcome.data or None,
    )
    invoice = None
    if work_order.status != previous_status:
        invoice = _after_status_change(work_order)
    body = _detail_payload(result.work_order, invoice)
    body["uploaded_photos"] = len(result.photos)
    return jsonify(body)


@work_order_bp.route("/<work_order_id>/photos/<photo_id>", methods=["GET"])
@login_required
@tenant_required
def photo(work_order_id: str, photo_id: str):
    work_order = _load_work_order(work_order_id)
    record = load_scoped(Photo, photo_id, current_user.organization_id, "Photo")
    if record.work_order_id != work_order.id:
        raise NotFound("Photo", photo_id)
    path = PhotoStorage.from_app().path_for(record.file_path)
    if not path.exists():
        raise NotFound("Photo", photo_id)
    return send_file(path, mimetype=record.content_type or "application/octet-stream")
