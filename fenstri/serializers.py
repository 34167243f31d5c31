from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from .invoicing import presentation_status
from .models import Invoice, Organization, Photo, Profile, Property, Subscription, WorkOrder, WorkOrderItem


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value else None


def _money(value: Decimal | None) -> str | None:
    return None if value is None else f"{value:.2f}"


def serialize_organization(org: Organization) -> dict[str, Any]:
    return {
        "id": org.id,
        "name": org.name,
        "slug": org.slug,
        "status": org.status.value,
        "tax_id": org.tax_id,
        "city": org.city,
    }


def serialize_profile(profile: Profile) -> dict[str, Any]:
    return {
        "id": profile.id,
        "email": profile.email,
        "full_name": profile.full_name,
        "phone": profile.phone,
        "role": profile.role.value,
        "active": profile.active,
        "organization_id": profile.organization_id,
    }


def serialize_property(prop: Property) -> dict[str, Any]:
    return {
        "id": prop.id,
        "organization_id": prop.organization_id,
        "name": prop.name,
        "address_line1": prop.address_line1,
        "address_line2": prop.address_line2,
        "postal_code": prop.postal_code,
        "city": prop.city,
        "country": prop.country,
        "contact_name": prop.contact_name,
        "contact_phone": prop.contact_phone,
        "contact_email": prop.contact_email,
        "notes": prop.notes,
        "created_at": _iso(prop.created_at),
    }


def serialize_item(item: WorkOrderItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "position": item.position,
        "description": item.description,
        "quantity": item.quantity,
        "unit_price": _money(item.unit_price),
        "line_total": _money(item.line_total),
        "completed": item.completed,
    }


def serialize_photo(photo: Photo) -> dict[str, Any]:
    return {
        "id": photo.id,
        "file_path": photo.file_path,
        "description": photo.description,
        "content_type": photo.content_type,
        "created_at": _iso(photo.created_at),
    }


def serialize_work_order(work_order: WorkOrder, *, detail: bool = False) -> dict[str, Any]:
    payload = {
        "id": work_order.id,
        "organization_id": work_order.organization_id,
        "property_id": work_order.property_id,
        "property_name": work_order.property.name if work_order.property else None,
        "service": work_order.service.value,
        "description": work_order.description,
        "status": work_order.status.value,
        "priority": work_order.priority.value,
        "assigned_to": work_order.assigned_to,
        "assignee_name": work_order.assignee.full_name if work_order.assignee else None,
        "created_by": work_order.created_by,
        "scheduled_at": _iso(work_order.scheduled_at),
        "preferred_start": _iso(work_order.preferred_start),
        "preferred_end": _iso(work_order.preferred_end),
        "started_at": _iso(work_order.started_at),
        "completed_at": _iso(work_order.completed_at),
        "cancelled_at": _iso(work_order.cancelled_at),
        "created_at": _iso(work_order.created_at),
    }
    if detail:
        payload.update(
            {
                "work_performed": work_order.work_performed,
                "materials_used": work_order.materials_used,
                "time_spent": work_order.time_spent,
                "issues_found": work_order.issues_found,
                "recommendations": work_order.recommendations,
                "customer_signature": work_order.customer_signature,
                "items": [serialize_item(item) for item in work_order.items],
                "items_subtotal": _money(work_order.items_subtotal),
                "photos": [serialize_photo(photo) for photo in work_order.photos],
            }
        )
    return payload


def serialize_invoice(invoice: Invoice) -> dict[str, Any]:
    return {
        "id": invoice.id,
        "organization_id": invoice.organization_id,
        "work_order_id": invoice.work_order_id,
        "invoice_number": invoice.invoice_number,
        "amount": _money(invoice.amount),
        "tax_amount": _money(invoice.tax_amount),
        "total_amount": _money(invoice.total_amount),
        "status": invoice.status.value,
        "display_status": presentation_status(invoice),
        "due_date": _iso(invoice.due_date),
        "sent_at": _iso(invoice.sent_at),
        "paid_at": _iso(invoice.paid_at),
        "external_invoice_id": invoice.external_invoice_id,
        "notes": invoice.notes,
        "created_at": _iso(invoice.created_at),
    }


def serialize_subscription(subscription: Subscription) -> dict[str, Any]:
    return {
        "id": subscription.id,
        "property_id": subscription.property_id,
        "service": subscription.service.value,
        "status": subscription.status.value,
        "frequency_months": subscription.frequency_months,
        "price_per_service": _money(subscription.price_per_service),
        "next_service_date": _iso(subscription.next_service_date),
    }
