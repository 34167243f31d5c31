"""
Pytest configuration and shared fixtures
"""
import hashlib
import hmac
import json
import time
from datetime import date, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from fenstri import create_app
from fenstri.extensions import db
from fenstri.models import (
    Invoice,
    InvoiceStatus,
    Organization,
    Priority,
    Profile,
    Property,
    ServiceType,
    UserRole,
    WorkOrder,
    WorkOrderItem,
    WorkOrderStatus,
)

PASSWORD = "Fenster!Service2024"
WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def app(tmp_path):
    """Application built from the testing config over in-memory SQLite"""
    application = create_app("testing")
    application.config["PHOTO_STORAGE_DIR"] = str(tmp_path / "photos")
    yield application
    with application.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def _profile(org, email, role, name):
    profile = Profile(email=email, full_name=name, role=role, organization_id=org.id)
    profile.set_password(PASSWORD)
    db.session.add(profile)
    return profile


@pytest.fixture
def seed(app):
    """Two organizations; ids only, so tests never share ORM instances across contexts"""
    with app.app_context():
        alpha = Organization(name="Alpha Hausverwaltung", slug="alpha", city="Berlin")
        beta = Organization(name="Beta Immobilien", slug="beta", city="Hamburg")
        db.session.add_all([alpha, beta])
        db.session.flush()

        profiles = {
            "admin": _profile(alpha, "admin@alpha-hv.de", UserRole.ADMIN, "Anna Admin"),
            "dispatcher": _profile(alpha, "dispo@alpha-hv.de", UserRole.DISPATCHER, "Dirk Dispo"),
            "technician": _profile(alpha, "tech@alpha-hv.de", UserRole.TECHNICIAN, "Tom Technik"),
            "technician2": _profile(alpha, "tech2@alpha-hv.de", UserRole.TECHNICIAN, "Tina Technik"),
            "customer": _profile(alpha, "kunde@alpha-hv.de", UserRole.CUSTOMER, "Karl Kunde"),
            "beta_admin": _profile(beta, "admin@beta-immo.de", UserRole.ADMIN, "Bernd Beta"),
            "beta_technician": _profile(beta, "tech@beta-immo.de", UserRole.TECHNICIAN, "Berta Technik"),
        }
        alpha_property = Property(
            organization_id=alpha.id,
            name="Wohnanlage Mitte",
            address_line1="Friedrichstraße 10",
            postal_code="10117",
            city="Berlin",
        )
        beta_property = Property(
            organization_id=beta.id,
            name="Speicherstadt Loft",
            address_line1="Am Sandtorkai 1",
            postal_code="20457",
            city="Hamburg",
        )
        db.session.add_all([alpha_property, beta_property])
        db.session.commit()

        return SimpleNamespace(
            alpha_id=alpha.id,
            beta_id=beta.id,
            property_id=alpha_property.id,
            beta_property_id=beta_property.id,
            **{f"{key}_id": profile.id for key, profile in profiles.items()},
        )


@pytest.fixture
def make_work_order(app, seed):
    """Create a work order in the alpha organization and return its id"""

    def factory(status=WorkOrderStatus.DRAFT, assigned_to=None, items=()):
        with app.app_context():
            work_order = WorkOrder(
                organization_id=seed.alpha_id,
                property_id=seed.property_id,
                service=ServiceType.MAINTENANCE,
                description="Fensterbeschläge warten",
                priority=Priority.MEDIUM,
                status=status,
                created_by=seed.customer_id,
                assigned_to=assigned_to,
                scheduled_at=datetime(2024, 5, 2, 9, 0) if assigned_to else None,
            )
            for position, (description, quantity, unit_price) in enumerate(items):
                work_order.items.append(
                    WorkOrderItem(
                        organization_id=seed.alpha_id,
                        position=position,
                        description=description,
                        quantity=quantity,
                        unit_price=Decimal(unit_price),
                    )
                )
            db.session.add(work_order)
            db.session.commit()
            return work_order.id

    return factory


@pytest.fixture
def make_invoice(app, seed, make_work_order):
    """Issue an invoice for a done work order without going through the service layer"""

    def factory(status=InvoiceStatus.SENT, amount="100.00", due_in_days=14):
        work_order_id = make_work_order(
            status=WorkOrderStatus.DONE,
            assigned_to=seed.technician_id,
            items=[("Fenster einstellen", 1, amount)],
        )
        with app.app_context():
            invoice = Invoice(
                organization_id=seed.alpha_id,
                work_order_id=work_order_id,
                invoice_number=f"TEST-{work_order_id[:8]}",
                status=status,
                due_date=date.today() + timedelta(days=due_in_days),
            )
            invoice.apply_amount(Decimal(amount), Decimal("0.19"))
            db.session.add(invoice)
            db.session.commit()
            return invoice.id

    return factory


def login(client, email, slug="alpha", password=PASSWORD):
    response = client.post(
        "/auth/login",
        json={"organization_slug": slug, "email": email, "password": password},
    )
    assert response.status_code == 200, response.get_json()
    return response


@pytest.fixture
def login_as(app, seed):
    """Return a logged-in test client for one of the seeded profiles"""
    emails = {
        "admin": ("admin@alpha-hv.de", "alpha"),
        "dispatcher": ("dispo@alpha-hv.de", "alpha"),
        "technician": ("tech@alpha-hv.de", "alpha"),
        "technician2": ("tech2@alpha-hv.de", "alpha"),
        "customer": ("kunde@alpha-hv.de", "alpha"),
        "beta_admin": ("admin@beta-immo.de", "beta"),
    }

    def factory(role_key):
        email, slug = emails[role_key]
        test_client = app.test_client()
        login(test_client, email, slug)
        return test_client

    return factory


def stripe_signature(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a Stripe-Signature header value for a raw payload"""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(kind, obj, event_id=None):
    return json.dumps(
        {
            "id": event_id or f"evt_{int(time.time() * 1000)}",
            "object": "event",
            "type": kind,
            "data": {"object": obj},
        }
    )


@pytest.fixture
def post_webhook(client):
    def factory(payload, signature=None, secret=WEBHOOK_SECRET):
        headers = {"Content-Type": "application/json"}
        if signature is not False:
            headers["Stripe-Signature"] = signature or stripe_signature(payload, secret)
        return client.post("/webhooks/stripe", data=payload, headers=headers)

    return factory
