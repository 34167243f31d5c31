from __future__ import annotations

import re
import uuid
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from flask_login import UserMixin
from sqlalchemy import event, select
from werkzeug.security import check_password_hash, generate_password_hash

from .errors import ConstraintViolation
from .extensions import db

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def to_money(value) -> Decimal:
    return Decimal(str(value if value is not None else 0)).quantize(CENT, rounding=ROUND_HALF_UP)


def _enum(enum_cls: type[Enum]):
    return db.Enum(
        enum_cls,
        native_enum=False,
        validate_strings=True,
        values_callable=lambda members: [member.value for member in members],
    )


class BaseModel(db.Model):
    __abstract__ = True

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class OrganizationStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class UserRole(str, Enum):
    ADMIN = "admin"
    DISPATCHER = "dispatcher"
    TECHNICIAN = "technician"
    CUSTOMER = "customer"


class ServiceType(str, Enum):
    MAINTENANCE = "maintenance"
    REPAIR = "repair"
    INSPECTION = "inspection"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class WorkOrderStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    QA_HOLD = "qa_hold"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {WorkOrderStatus.DONE, WorkOrderStatus.CANCELLED}


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    OVERDUE = "overdue"
    PAID = "paid"
    VOID = "void"

    @property
    def is_terminal(self) -> bool:
        return self in {InvoiceStatus.PAID, InvoiceStatus.VOID}


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


def _resolve_org_id(connection, table, pk_value: str | None) -> str | None:
    if pk_value is None:
        return None
    return connection.execute(select(table.c.organization_id).where(table.c.id == pk_value)).scalar()


class Organization(BaseModel):
    __tablename__ = "organizations"

    name = db.Column(db.String(255), nullable=False, unique=True)
    slug = db.Column(db.String(128), nullable=False, unique=True, index=True)
    status = db.Column(_enum(OrganizationStatus), default=OrganizationStatus.ACTIVE, nullable=False)
    tax_id = db.Column(db.String(64), nullable=True)
    payment_customer_id = db.Column(db.String(128), nullable=True, unique=True)
    address_line1 = db.Column(db.String(255), nullable=True)
    address_line2 = db.Column(db.String(255), nullable=True)
    postal_code = db.Column(db.String(16), nullable=True)
    city = db.Column(db.String(128), nullable=True)
    country = db.Column(db.String(64), nullable=True, default="DE")

    profiles = db.relationship("Profile", back_populates="organization", lazy="select")

    @staticmethod
    def _slugify(value: str) -> str:
        slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
        return slug or "org"

    @classmethod
    def generate_unique_slug(cls, name: str) -> str:
        base_slug = cls._slugify(name)
        candidate = base_slug
        counter = 2
        while db.session.execute(select(cls.id).filter_by(slug=candidate)).first():
            candidate = f"{base_slug}-{counter}"
            counter += 1
        return candidate

    def __repr__(self) -> str:  # pragma: no cover - repr utility
        return f"<Organization {self.slug} ({self.status})>"


class Profile(UserMixin, BaseModel):
    """A signed-up identity; its id doubles as the session user id."""

    __tablename__ = "profiles"

    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    full_name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(64), nullable=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(_enum(UserRole), nullable=False, default=UserRole.CUSTOMER)
    active = db.Column(db.Boolean, nullable=False, default=True)

    # Only empty while an identity is being provisioned
    organization_id = db.Column(
        db.String(36),
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    organization = db.relationship("Organization", back_populates="profiles", lazy="joined")

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    @property
    def is_active(self) -> bool:
        return bool(
            self.active
            and self.organization
            and self.organization.status == OrganizationStatus.ACTIVE
        )

    def __repr__(self) -> str:  # pragma: no cover - repr utility
        return f"<Profile {self.email} role={self.role} org={self.organization_id}>"


class Property(BaseModel):
    __tablename__ = "properties"

    organization_id = db.Column(
        db.String(36),
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(255), nullable=False)
    address_line1 = db.Column(db.String(255), nullable=False)
    address_line2 = db.Column(db.String(255), nullable=True)
    postal_code = db.Column(db.String(16), nullable=False)
    city = db.Column(db.String(128), nullable=False)
    country = db.Column(db.String(64), nullable=False, default="DE")
    contact_name = db.Column(db.String(255), nullable=True)
    contact_phone = db.Column(db.String(64), nullable=True)
    contact_email = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    organization = db.relationship("Organization", lazy="joined")
    work_orders = db.relationship("WorkOrder", back_populates="property", lazy="select")

    def __repr__(self) -> str:  # pragma: no cover - repr utility
        return f"<Property {self.name} org={self.organization_id}>"


class WorkOrder(BaseModel):
    __tablename__ = "work_orders"

    organization_id = db.Column(
        db.String(36),
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    property_id = db.Column(db.String(36), db.ForeignKey("properties.id"), nullable=False, index=True)
    service = db.Column(_enum(ServiceType), nullable=False, default=ServiceType.MAINTENANCE)
    description = db.Column(db.Text, nullable=False)
    status = db.Column(_enum(WorkOrderStatus), nullable=False, default=WorkOrderStatus.DRAFT)
    priority = db.Column(_enum(Priority), nullable=False, default=Priority.MEDIUM)
    assigned_to = db.Column(db.String(36), db.ForeignKey("profiles.id"), nullable=True, index=True)
    created_by = db.Column(db.String(36), db.ForeignKey("profiles.id"), nullable=True)
    scheduled_at = db.Column(db.DateTime, nullable=True)
    preferred_start = db.Column(db.DateTime, nullable=True)
    preferred_end = db.Column(db.DateTime, nullable=True)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    # Technician report
    work_performed = db.Column(db.Text, nullable=True)
    materials_used = db.Column(db.Text, nullable=True)
    time_spent = db.Column(db.String(64), nullable=True)
    issues_found = db.Column(db.Text, nullable=True)
    recommendations = db.Column(db.Text, nullable=True)
    customer_signature = db.Column(db.Boolean, nullable=False, default=False)

    # Declared before the relationships: the `property` relationship below shadows the builtin.
    @property
    def items_subtotal(self) -> Decimal:
        return to_money(sum((item.line_total for item in self.items), Decimal("0")))

    def is_assigned_to(self, profile: Profile | None) -> bool:
        return bool(profile is not None and self.assigned_to and self.assigned_to == profile.id)

    property = db.relationship("Property", back_populates="work_orders", lazy="joined")
    assignee = db.relationship("Profile", foreign_keys=[assigned_to], lazy="joined")
    creator = db.relationship("Profile", foreign_keys=[created_by], lazy="select")
    items = db.relationship(
        "WorkOrderItem",
        back_populates="work_order",
        lazy="select",
        cascade="all, delete-orphan",
        order_by="WorkOrderItem.position",
    )
    photos = db.relationship(
        "Photo",
        back_populates="work_order",
        lazy="select",
        order_by="Photo.created_at",
    )
    invoices = db.relationship("Invoice", back_populates="work_order", lazy="select")

    __table_args__ = (
        db.Index("ix_work_orders_org_status", "organization_id", "status"),
        db.Index("ix_work_orders_org_assignee", "organization_id", "assigned_to"),
    )

    def __repr__(self) -> str:  # pragma: no cover - repr utility
        return f"<WorkOrder {self.id} status={self.status} org={self.organization_id}>"


class WorkOrderItem(BaseModel):
    __tablename__ = "work_order_items"

    work_order_id = db.Column(
        db.String(36),
        db.ForeignKey("work_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id = db.Column(
        db.String(36),
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position = db.Column(db.Integer, nullable=False, default=0)
    description = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    completed = db.Column(db.Boolean, nullable=False, default=True)

    work_order = db.relationship("WorkOrder", back_populates="items")

    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="quantity_positive"),
        db.CheckConstraint("unit_price >= 0", name="unit_price_non_negative"),
    )

    @property
    def line_total(self) -> Decimal:
        return to_money(Decimal(self.quantity or 0) * to_money(self.unit_price))


class Invoice(BaseModel):
    __tablename__ = "invoices"

    organization_id = db.Column(
        db.String(36),
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    work_order_id = db.Column(db.String(36), db.ForeignKey("work_orders.id"), nullable=False, index=True)
    invoice_number = db.Column(db.String(64), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    status = db.Column(_enum(InvoiceStatus), nullable=False, default=InvoiceStatus.DRAFT)
    due_date = db.Column(db.Date, nullable=True)
    sent_at = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    external_invoice_id = db.Column(db.String(128), nullable=True, index=True)
    notes = db.Column(db.Text, nullable=True)

    organization = db.relationship("Organization", lazy="joined")
    work_order = db.relationship("WorkOrder", back_populates="invoices", lazy="joined")

    __table_args__ = (
        db.UniqueConstraint("organization_id", "invoice_number", name="uq_invoice_number_org"),
        db.Index("ix_invoices_org_status", "organization_id", "status"),
    )

    def apply_amount(self, amount, tax_rate: Decimal) -> None:
        net = to_money(amount)
        tax = to_money(net * tax_rate)
        self.amount = net
        self.tax_amount = tax
        self.total_amount = net + tax

    def mark_paid(self, paid_at: datetime | None = None) -> bool:
        """Settle the invoice once; replays keep the first payment time."""
        if self.status.is_terminal:
            return False
        self.status = InvoiceStatus.PAID
        self.paid_at = paid_at or utcnow()
        return True

    def mark_payment_failed(self) -> bool:
        """Only a sent invoice can fall overdue."""
        if self.status != InvoiceStatus.SENT:
            return False
        self.status = InvoiceStatus.OVERDUE
        return True

    @property
    def is_past_due(self) -> bool:
        if self.status.is_terminal or not self.due_date:
            return False
        return self.due_date < date.today()

    def __repr__(self) -> str:  # pragma: no cover - repr utility
        return f"<Invoice {self.invoice_number} status={self.status} org={self.organization_id}>"


class Photo(BaseModel):
    __tablename__ = "photos"

    work_order_id = db.Column(
        db.String(36),
        db.ForeignKey("work_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id = db.Column(
        db.String(36),
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    file_path = db.Column(db.String(512), nullable=False, unique=True)
    description = db.Column(db.String(255), nullable=True)
    content_type = db.Column(db.String(128), nullable=True)

    work_order = db.relationship("WorkOrder", back_populates="photos")


class Subscription(BaseModel):
    """Recurring service contract mirrored from the payment provider."""

    __tablename__ = "subscriptions"

    organization_id = db.Column(
        db.String(36),
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    property_id = db.Column(db.String(36), db.ForeignKey("properties.id"), nullable=False, index=True)
    service = db.Column(_enum(ServiceType), nullable=False)
    status = db.Column(_enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE)
    frequency_months = db.Column(db.Integer, nullable=False, default=6)
    price_per_service = db.Column(db.Numeric(12, 2), nullable=True)
    next_service_date = db.Column(db.Date, nullable=True)
    external_subscription_id = db.Column(db.String(128), nullable=True, unique=True)

    property = db.relationship("Property", lazy="joined")


class PaymentEvent(BaseModel):
    """Ledger of provider events already applied, keyed by the provider's event id."""

    __tablename__ = "payment_events"

    provider_event_id = db.Column(db.String(128), nullable=False, unique=True)
    kind = db.Column(db.String(64), nullable=False, index=True)
    outcome = db.Column(db.String(32), nullable=False)
    organization_id = db.Column(db.String(36), db.ForeignKey("organizations.id"), nullable=True, index=True)
    invoice_id = db.Column(db.String(36), db.ForeignKey("invoices.id"), nullable=True)
    subscription_id = db.Column(db.String(36), db.ForeignKey("subscriptions.id"), nullable=True)


@event.listens_for(WorkOrder, "before_insert")
@event.listens_for(WorkOrder, "before_update")
def _work_order_org_guard(mapper, connection, target: WorkOrder) -> None:  # noqa: D401
    property_org = _resolve_org_id(connection, Property.__table__, target.property_id)
    if property_org != target.organization_id:
        raise ConstraintViolation("Property must belong to the work order's organization", field="property_id")

    creator_org = _resolve_org_id(connection, Profile.__table__, target.created_by)
    if creator_org and creator_org != target.organization_id:
        raise ConstraintViolation("Creator must belong to the work order's organization", field="created_by")

    if target.assigned_to:
        profiles = Profile.__table__
        row = connection.execute(
            select(profiles.c.organization_id, profiles.c.role).where(profiles.c.id == target.assigned_to)
        ).first()
        if row is None or row.organization_id != target.organization_id:
            raise ConstraintViolation("Technician must belong to the same organization", field="assigned_to")
        if row.role != UserRole.TECHNICIAN:
            raise ConstraintViolation("Only technicians can be assigned to work orders", field="assigned_to")


@event.listens_for(WorkOrderItem, "before_insert")
@event.listens_for(WorkOrderItem, "before_update")
def _work_order_item_guard(mapper, connection, target: WorkOrderItem) -> None:  # noqa: D401
    if target.quantity is None or int(target.quantity) < 1:
        raise ConstraintViolation("Quantity must be a positive whole number", field="quantity")
    if target.unit_price is None or to_money(target.unit_price) < 0:
        raise ConstraintViolation("Unit price cannot be negative", field="unit_price")
    order_org = _resolve_org_id(connection, WorkOrder.__table__, target.work_order_id)
    if order_org and order_org != target.organization_id:
        raise ConstraintViolation("Line items must stay within the work order's organization", field="work_order_id")


@event.listens_for(Invoice, "before_insert")
@event.listens_for(Invoice, "before_update")
def _invoice_amount_guard(mapper, connection, target: Invoice) -> None:  # noqa: D401
    amount = to_money(target.amount)
    tax_amount = to_money(target.tax_amount)
    if amount < 0 or tax_amount < 0:
        raise ConstraintViolation("Invoice amounts cannot be negative", field="amount")
    if to_money(target.total_amount) != amount + tax_amount:
        raise ConstraintViolation("Total must equal amount plus tax", field="total_amount")
    order_org = _resolve_org_id(connection, WorkOrder.__table__, target.work_order_id)
    if order_org != target.organization_id:
        raise ConstraintViolation("Invoice must belong to the work order's organization", field="work_order_id")


__all__ = [
    "BaseModel",
    "Organization",
    "OrganizationStatus",
    "Profile",
    "UserRole",
    "Property",
    "WorkOrder",
    "WorkOrderStatus",
    "WorkOrderItem",
    "ServiceType",
    "Priority",
    "Invoice",
    "InvoiceStatus",
    "Photo",
    "Subscription",
    "SubscriptionStatus",
    "PaymentEvent",
    "utcnow",
    "to_money",
    "new_id",
]
