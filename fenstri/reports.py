from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Sequence

from werkzeug.datastructures import FileStorage

from .errors import ConstraintViolation, ExternalServiceFailure, InvalidTransition
from .extensions import db
from .invoicing import live_invoice_for, tax_rate
from .lifecycle import can_transition, commit_session, ensure_assignee, parse_status, transition
from .models import InvoiceStatus, Photo, Profile, WorkOrder, WorkOrderItem, WorkOrderStatus, to_money
from .permissions import Capability, require_capability
from .storage import PhotoStorage
from .tenant import enforce_same_tenant

logger = logging.getLogger(__name__)

REPORT_FIELDS = (
    "work_performed",
    "materials_used",
    "time_spent",
    "issues_found",
    "recommendations",
    "customer_signature",
)
REPORTABLE_STATUSES = frozenset({WorkOrderStatus.IN_PROGRESS, WorkOrderStatus.QA_HOLD, WorkOrderStatus.DONE})
REPORT_OUTCOMES = frozenset({WorkOrderStatus.DONE, WorkOrderStatus.QA_HOLD})


@dataclass
class ReportLine:
    description: str
    quantity: int
    unit_price: Decimal
    completed: bool = True


@dataclass
class ReportResult:
    work_order: WorkOrder
    photos: list[Photo] = field(default_factory=list)
    failed_uploads: list[str] = field(default_factory=list)


def _whole_number(value: Any, label: str) -> int:
    if isinstance(value, bool):
        raise ConstraintViolation(f"{label}: quantity must be a whole number", field="items")
    try:
        number = Decimal(str(value).strip())
        if number != number.to_integral_value():
            raise ValueError(value)
        return int(number)
    except (InvalidOperation, ValueError, OverflowError):
        raise ConstraintViolation(f"{label}: quantity must be a whole number", field="items") from None


def parse_line(raw: Mapping[str, Any], index: int) -> ReportLine:
    label = f"items[{index}]"
    description = str(raw.get("description") or "").strip()
    if not description:
        raise ConstraintViolation(f"{label}: description is required", field="items")
    quantity = _whole_number(raw.get("quantity", 1), label)
    if quantity < 1:
        raise ConstraintViolation(f"{label}: quantity must be at least 1", field="items")
    try:
        unit_price = to_money(raw.get("unit_price", 0))
    except (InvalidOperation, ValueError):
        raise ConstraintViolation(f"{label}: unit price must be a number", field="items") from None
    if unit_price < 0:
        raise ConstraintViolation(f"{label}: unit price cannot be negative", field="items")
    return ReportLine(description[:255], quantity, unit_price, bool(raw.get("completed", True)))


def replace_items(work_order: WorkOrder, lines: Sequence[ReportLine]) -> None:
    """Swap the item set wholesale; orphaned rows are deleted on flush."""
    work_order.items = [
        WorkOrderItem(
            organization_id=work_order.organization_id,
            position=position,
            description=line.description,
            quantity=line.quantity,
            unit_price=line.unit_price,
            completed=line.completed,
        )
        for position, line in enumerate(lines)
    ]


def attach_photo(work_order: WorkOrder, upload: FileStorage, storage: PhotoStorage) -> Photo:
    key = storage.save(work_order.id, upload)
    photo = Photo(
        work_order_id=work_order.id,
        organization_id=work_order.organization_id,
        file_path=key,
        description=f"Arbeitsbericht Foto - {upload.filename}",
        content_type=upload.mimetype,
    )
    db.session.add(photo)
    commit_session()
    return photo


def submit_report(
    work_order: WorkOrder,
    actor: Profile,
    *,
    fields: Mapping[str, Any] | None = None,
    items: Sequence[Mapping[str, Any]] | None = None,
    photos: Sequence[FileStorage] = (),
    outcome: WorkOrderStatus | str | None = None,
    storage: PhotoStorage | None = None,
) -> ReportResult:
    """Save a technician report.

    Fields, the item set and the optional outcome transition commit together.
    Photos are stored afterwards, one by one; a failed upload leaves the saved
    report in place and surfaces as :class:`ExternalServiceFailure`.
    ``items=None`` keeps the current items, a list (even an empty one) replaces them.
    """
    enforce_same_tenant(work_order, actor.organization_id)
    require_capability(actor, Capability.FILE_REPORT)
    ensure_assignee(work_order, actor)

    if work_order.status not in REPORTABLE_STATUSES:
        raise InvalidTransition(
            work_order.status.value,
            message=f"Reports can only be filed once work has started (status is {work_order.status.value})",
        )

    target = None
    if outcome:
        target = parse_status(outcome)
        if target not in REPORT_OUTCOMES:
            raise ConstraintViolation("Report outcome must be done or qa_hold", field="outcome")
        if target != work_order.status and not can_transition(work_order.status, target, actor.role, True):
            raise InvalidTransition(work_order.status.value, target.value)

    lines = [parse_line(raw, index) for index, raw in enumerate(items)] if items is not None else None
    invoice = live_invoice_for(work_order) if lines is not None else None
    if invoice is not None and invoice.status != InvoiceStatus.DRAFT:
        raise ConstraintViolation(
            f"Items are locked once invoice {invoice.invoice_number} is {invoice.status.value}; void it first",
            field="items",
        )
    storage = storage or PhotoStorage.from_app()
    for upload in photos:
        storage.clean_filename(upload)

    for name in REPORT_FIELDS:
        if fields and name in fields:
            setattr(work_order, name, fields[name])
    if lines is not None:
        replace_items(work_order, lines)
        if invoice is not None:
            invoice.apply_amount(work_order.items_subtotal, tax_rate())
    if target is not None and target != work_order.status:
        transition(work_order, target, actor, commit=False)
    commit_session()
    logger.info(
        "Report saved for work order %s by %s (%s items, status %s)",
        work_order.id,
        actor.id,
        len(work_order.items),
        work_order.status.value,
    )

    result = ReportResult(work_order)
    for upload in photos:
        try:
            result.photos.append(attach_photo(work_order, upload, storage))
        except ExternalServiceFailure:
            logger.exception("Photo upload failed for work order %s (%s)", work_order.id, upload.filename)
            result.failed_uploads.append(upload.filename or "")

    if result.failed_uploads:
        raise ExternalServiceFailure(
            PhotoStorage.service_name,
            f"{len(result.failed_uploads)} of {len(photos)} photo(s) could not be stored; the report was saved",
        )
    return result


__all__ = ["REPORT_FIELDS", "ReportLine", "ReportResult", "parse_line", "replace_items", "attach_photo", "submit_report"]
