from __future__ import annotations

from collections import defaultdict

from flask import Blueprint, jsonify
from flask_login import current_user, login_required

from ..invoicing import presentation_status
from ..models import Invoice, Subscription, SubscriptionStatus, WorkOrder, WorkOrderStatus
from ..permissions import Capability, has_capability
from ..serializers import serialize_subscription, serialize_work_order
from ..tenant import tenant_query, tenant_required, visible_work_orders

dashboard_bp = Blueprint("dashboard", __name__, url_prefix="/dashboard")


def _status_counts(work_orders: list[WorkOrder]) -> dict[str, int]:
    counts: dict[str, int] = {status.value: 0 for status in WorkOrderStatus}
    for work_order in work_orders:
        counts[work_order.status.value] += 1
    return counts


def _invoice_counts(invoices: list[Invoice]) -> dict[str, object]:
    by_status: dict[str, int] = defaultdict(int)
    open_total = 0
    for invoice in invoices:
        label = presentation_status(invoice)
        by_status[label] += 1
        if label in {"pending", "overdue"}:
            open_total += invoice.total_amount
    return {"by_status": dict(by_status), "open_total": f"{open_total:.2f}"}


@dashboard_bp.route("/summary", methods=["GET"])
@login_required
@tenant_required
def summary():
    work_orders = visible_work_orders(current_user).order_by(WorkOrder.updated_at.desc()).all()
    payload: dict[str, object] = {
        "role": current_user.role.value,
        "work_orders": _status_counts(work_orders),
        "recent": [serialize_work_order(w) for w in work_orders[:5]],
    }

    if has_capability(current_user, Capability.READ_ORG_WORK_ORDERS):
        payload["unassigned"] = len(
            [w for w in work_orders if w.assigned_to is None and not w.status.is_terminal]
        )
    if has_capability(current_user, Capability.READ_INVOICES):
        invoices = tenant_query(Invoice, current_user.organization_id).all()
        payload["invoices"] = _invoice_counts(invoices)
        subscriptions = (
            tenant_query(Subscription, current_user.organization_id)
            .filter(Subscription.status != SubscriptionStatus.CANCELLED)
            .order_by(Subscription.next_service_date.asc())
            .all()
        )
        payload["subscriptions"] = [serialize_subscription(s) for s in subscriptions]
    return jsonify(payload)
