"""Work-order lifecycle: the transition table, its guard and the operations built on it.

The table is the single source of truth for status changes. Blueprints and
the report flow go through :func:`transition` / :func:`assign_technician`
rather than writing ``WorkOrder.status`` themselves.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from .errors import AccessDenied, ConstraintViolation, InvalidTransition
from .extensions import db
from .models import (
    Priority,
    Profile,
    Property,
    ServiceType,
    UserRole,
    WorkOrder,
    WorkOrderStatus,
    utcnow,
)
from .permissions import Capability, require_capability
from .tenant import enforce_same_tenant, load_scoped

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Edge:
    roles: frozenset[UserRole]
    assignee_only: bool = False


_DISPATCH = frozenset({UserRole.DISPATCHER, UserRole.ADMIN})
_FIELD = frozenset({UserRole.TECHNICIAN})

TRANSITIONS: dict[tuple[WorkOrderStatus, WorkOrderStatus], Edge] = {
    (WorkOrderStatus.DRAFT, WorkOrderStatus.SCHEDULED): Edge(_DISPATCH),
    (WorkOrderStatus.SCHEDULED, WorkOrderStatus.IN_PROGRESS): Edge(_FIELD, assignee_only=True),
    (WorkOrderStatus.IN_PROGRESS, WorkOrderStatus.DONE): Edge(_FIELD, assignee_only=True),
    (WorkOrderStatus.IN_PROGRESS, WorkOrderStatus.QA_HOLD): Edge(_FIELD, assignee_only=True),
    (WorkOrderStatus.QA_HOLD, WorkOrderStatus.DONE): Edge(_DISPATCH),
}
for _status in WorkOrderStatus:
    if not _status.is_terminal:
        TRANSITIONS[(_status, WorkOrderStatus.CANCELLED)] = Edge(_DISPATCH)


def commit_session() -> None:
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def parse_status(value: WorkOrderStatus | str | None) -> WorkOrderStatus:
    try:
        return WorkOrderStatus(value)
    except ValueError:
        raise ConstraintViolation(f"Unknown work-order status '{value}'", field="status") from None


def can_transition(
    current: WorkOrderStatus | str,
    target: WorkOrderStatus | str,
    role: UserRole | str,
    is_assignee: bool,
) -> bool:
    try:
        edge = TRANSITIONS.get((WorkOrderStatus(current), WorkOrderStatus(target)))
        role = UserRole(role)
    except ValueError:
        return False
    if edge is None or role not in edge.roles:
        return False
    return is_assignee or not edge.assignee_only


def allowed_targets(work_order: WorkOrder, actor: Profile) -> list[WorkOrderStatus]:
    is_assignee = work_order.is_assigned_to(actor)
    return [
        target
        for (current, target) in TRANSITIONS
        if current == work_order.status and can_transition(current, target, actor.role, is_assignee)
    ]


def _apply_side_effects(work_order: WorkOrder, target: WorkOrderStatus) -> None:
    now = utcnow()
    if target == WorkOrderStatus.IN_PROGRESS:
        work_order.started_at = work_order.started_at or now
    elif target == WorkOrderStatus.DONE:
        work_order.completed_at = now
    elif target == WorkOrderStatus.CANCELLED:
        work_order.cancelled_at = now
    work_order.status = target


def transition(
    work_order: WorkOrder,
    target: WorkOrderStatus | str,
    actor: Profile,
    *,
    commit: bool = True,
) -> WorkOrder:
    enforce_same_tenant(work_order, actor.organization_id)
    target = parse_status(target)
    current = work_order.status

    if not can_transition(current, target, actor.role, work_order.is_assigned_to(actor)):
        logger.info(
            "Rejected work order %s transition %s -> %s by %s (%s)",
            work_order.id,
            current.value,
            target.value,
            actor.id,
            actor.role.value,
        )
        raise InvalidTransition(current.value, target.value)

    if target == WorkOrderStatus.SCHEDULED and not work_order.assigned_to:
        raise ConstraintViolation("Assign a technician before scheduling", field="assigned_to")

    _apply_side_effects(work_order, target)
    if commit:
        commit_session()
    logger.info("Work order %s moved %s -> %s by %s", work_order.id, current.value, target.value, actor.id)
    return work_order


def assign_technician(
    work_order: WorkOrder,
    technician_id: str | None,
    actor: Profile,
    *,
    scheduled_at: datetime | None = None,
) -> WorkOrder:
    """Assign (or reassign) a technician; a draft order becomes scheduled."""
    enforce_same_tenant(work_order, actor.organization_id)
    require_capability(actor, Capability.ASSIGN_TECHNICIAN)

    if work_order.status.is_terminal:
        raise InvalidTransition(
            work_order.status.value,
            WorkOrderStatus.SCHEDULED.value,
            message=f"Cannot assign a technician to a {work_order.status.value} work order",
        )

    technician = db.session.get(Profile, technician_id) if technician_id else None
    if technician is None or technician.organization_id != work_order.organization_id:
        raise ConstraintViolation("Technician must belong to this organization", field="assigned_to")
    if technician.role != UserRole.TECHNICIAN:
        raise ConstraintViolation("Only profiles with the technician role can be assigned", field="assigned_to")
    if not technician.active:
        raise ConstraintViolation("Technician account is inactive", field="assigned_to")

    previous_status = work_order.status
    work_order.assigned_to = technician.id
    if scheduled_at is not None:
        work_order.scheduled_at = scheduled_at
    if previous_status == WorkOrderStatus.DRAFT:
        # An unassigned order has no scheduling meaning; assignment is the trigger
        _apply_side_effects(work_order, WorkOrderStatus.SCHEDULED)

    commit_session()
    logger.info(
        "Work order %s assigned to %s by %s (%s -> %s)",
        work_order.id,
        technician.id,
        actor.id,
        previous_status.value,
        work_order.status.value,
    )
    return work_order


def create_work_order(
    actor: Profile,
    *,
    property_id: str,
    description: str,
    service: ServiceType | str = ServiceType.MAINTENANCE,
    priority: Priority | str = Priority.MEDIUM,
    preferred_start: datetime | None = None,
    preferred_end: datetime | None = None,
) -> WorkOrder:
    require_capability(actor, Capability.CREATE_WORK_ORDER)
    prop = load_scoped(Property, property_id, actor.organization_id, "Property")

    if not (description or "").strip():
        raise ConstraintViolation("Description is required", field="description")
    if preferred_start and preferred_end and preferred_end < preferred_start:
        raise ConstraintViolation("Preferred window ends before it starts", field="preferred_end")

    work_order = WorkOrder(
        organization_id=prop.organization_id,
        property_id=prop.id,
        service=ServiceType(service),
        description=description.strip(),
        priority=Priority(priority),
        status=WorkOrderStatus.DRAFT,
        created_by=actor.id,
        preferred_start=preferred_start,
        preferred_end=preferred_end,
    )
    db.session.add(work_order)
    commit_session()
    logger.info("Work order %s created by %s for property %s", work_order.id, actor.id, prop.id)
    return work_order


def ensure_assignee(work_order: WorkOrder, actor: Profile) -> None:
    if not work_order.is_assigned_to(actor):
        raise AccessDenied("Only the assigned technician can do this")


__all__ = [
    "Edge",
    "TRANSITIONS",
    "can_transition",
    "allowed_targets",
    "transition",
    "assign_technician",
    "create_work_order",
    "ensure_assignee",
    "parse_status",
    "commit_session",
]
