from __future__ import annotations

from datetime import timedelta
from functools import wraps
from typing import Callable, Type, TypeVar

from flask import abort, current_app, g, session
from flask_login import current_user

from .errors import AccessDenied, NotFound
from .extensions import db
from .models import (
    Organization,
    OrganizationStatus,
    Priority,
    Profile,
    Property,
    ServiceType,
    UserRole,
    WorkOrder,
    WorkOrderStatus,
    utcnow,
)
from .permissions import Capability, has_capability, require_capability

T = TypeVar("T")

ORG_SESSION_KEY = "org_id"


def get_current_user() -> Profile | None:
    if current_user and current_user.is_authenticated:
        g.current_user = current_user
        return current_user
    return None


def get_current_organization() -> Organization | None:
    user = get_current_user()
    if not user:
        return None
    org_id = session.get(ORG_SESSION_KEY)
    if org_id and org_id != user.organization_id:
        clear_tenant_session()
        abort(403, description="Organization context mismatch")

    org = user.organization
    if not org:
        abort(403, description="Organization missing for user")
    if org.status != OrganizationStatus.ACTIVE:
        clear_tenant_session()
        abort(403, description="Organization is suspended")

    g.current_organization = org
    return org


def set_tenant_session(user: Profile) -> None:
    session.permanent = True
    session[ORG_SESSION_KEY] = user.organization_id
    g.current_user = user
    g.current_organization = user.organization


def clear_tenant_session() -> None:
    session.pop(ORG_SESSION_KEY, None)
    g.pop("current_user", None)
    g.pop("current_organization", None)


def tenant_query(model: Type[db.Model], organization_id: str | None):
    """Base query for a tenant-scoped model; the organization id is mandatory."""
    if not organization_id:
        raise AccessDenied("Organization context required")
    if not hasattr(model, "organization_id"):
        raise ValueError("Model is not tenant-scoped: organization_id missing")
    return model.query.filter_by(organization_id=organization_id)


def enforce_same_tenant(record: db.Model, organization_id: str | None) -> None:
    if not organization_id:
        raise AccessDenied("Organization context required")
    if getattr(record, "organization_id", None) != organization_id:
        raise AccessDenied("Cross-tenant access is not allowed")


def load_scoped(model: Type[T], record_id: str | None, organization_id: str | None, resource: str | None = None) -> T:
    """Fetch by id, failing with NotFound for unknown ids and AccessDenied for foreign rows."""
    label = resource or model.__name__
    record = db.session.get(model, record_id) if record_id else None
    if record is None:
        raise NotFound(label, record_id)
    enforce_same_tenant(record, organization_id)
    return record


def visible_work_orders(actor: Profile):
    query = tenant_query(WorkOrder, actor.organization_id)
    if has_capability(actor, Capability.READ_ORG_WORK_ORDERS):
        return query
    if has_capability(actor, Capability.READ_ASSIGNED_WORK_ORDERS):
        return query.filter(WorkOrder.assigned_to == actor.id)
    raise AccessDenied("Your role cannot read work orders")


def ensure_work_order_visible(work_order: WorkOrder, actor: Profile) -> None:
    enforce_same_tenant(work_order, actor.organization_id)
    if has_capability(actor, Capability.READ_ORG_WORK_ORDERS):
        return
    if has_capability(actor, Capability.READ_ASSIGNED_WORK_ORDERS) and work_order.is_assigned_to(actor):
        return
    raise AccessDenied("This work order is not assigned to you")


def tenant_required(func: Callable[..., T]) -> Callable[..., T]:
    @wraps(func)
    def wrapper(*args, **kwargs):
        user = get_current_user()
        if not user:
            abort(401, description="Authentication required")
        org = get_current_organization()
        if not org:
            abort(403, description="Organization context required")
        if not user.is_active:
            clear_tenant_session()
            abort(403, description="Account inactive or organization suspended")
        if session.get(ORG_SESSION_KEY) != user.organization_id:
            clear_tenant_session()
            abort(403, description="Tenant session mismatch")
        return func(*args, **kwargs)

    return wrapper


def capability_required(capability: Capability) -> Callable[[Callable[..., T]], Callable[..., T]]:
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs):
            user = get_current_user()
            if not user:
                abort(401, description="Authentication required")
            require_capability(user, capability)
            return func(*args, **kwargs)

        return wrapper

    return decorator


def bootstrap_demo_tenant() -> tuple[Organization, Profile]:
    organization = Organization.query.filter_by(slug="fenstri-demo").first()
    if not organization:
        organization = Organization(
            name="Fenstri Demo Hausverwaltung",
            slug="fenstri-demo",
            address_line1="Beispielweg 5",
            postal_code="10117",
            city="Berlin",
        )
        db.session.add(organization)
        db.session.flush()

    demo_password = current_app.config.get("DEMO_PASSWORD", "ChangeMeNow!123")
    seeded: dict[UserRole, Profile] = {}
    for role, email, name in (
        (UserRole.ADMIN, "admin@demo.fenstri.de", "Demo Admin"),
        (UserRole.DISPATCHER, "dispatch@demo.fenstri.de", "Demo Dispatcher"),
        (UserRole.TECHNICIAN, "tech@demo.fenstri.de", "Demo Technician"),
        (UserRole.CUSTOMER, "customer@demo.fenstri.de", "Demo Customer"),
    ):
        profile = Profile.query.filter_by(email=email).first()
        if not profile:
            profile = Profile(email=email, full_name=name, role=role, organization_id=organization.id)
            profile.set_password(demo_password)
            db.session.add(profile)
        seeded[role] = profile
    db.session.flush()

    has_property = Property.query.filter_by(organization_id=organization.id).first()
    if not has_property:
        demo_property = Property(
            organization_id=organization.id,
            name="Wohnanlage Mitte",
            address_line1="Friedrichstraße 10",
            postal_code="10117",
            city="Berlin",
            contact_name="Hausmeister Schulz",
            contact_phone="+49 30 555 0101",
        )
        db.session.add(demo_property)
        db.session.flush()
        db.session.add_all(
            [
                WorkOrder(
                    organization_id=organization.id,
                    property_id=demo_property.id,
                    service=ServiceType.MAINTENANCE,
                    description="Halbjährliche Wartung aller Fensterbeschläge",
                    priority=Priority.MEDIUM,
                    status=WorkOrderStatus.DRAFT,
                    created_by=seeded[UserRole.CUSTOMER].id,
                    preferred_start=utcnow() + timedelta(days=7),
                ),
                WorkOrder(
                    organization_id=organization.id,
                    property_id=demo_property.id,
                    service=ServiceType.REPAIR,
                    description="Undichtes Dachfenster im 4. OG",
                    priority=Priority.HIGH,
                    status=WorkOrderStatus.SCHEDULED,
                    created_by=seeded[UserRole.CUSTOMER].id,
                    assigned_to=seeded[UserRole.TECHNICIAN].id,
                    scheduled_at=utcnow() + timedelta(days=2),
                ),
            ]
        )

    db.session.commit()
    return organization, seeded[UserRole.ADMIN]
