from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from ..errors import ConstraintViolation
from ..extensions import db
from ..forms import PropertyForm, bind_form, json_body
from ..lifecycle import commit_session
from ..models import Property, Subscription, WorkOrder
from ..permissions import Capability
from ..serializers import serialize_property, serialize_subscription
from ..tenant import capability_required, load_scoped, tenant_query, tenant_required

property_bp = Blueprint("properties", __name__, url_prefix="/properties")

_PROPERTY_FIELDS = (
    "name",
    "address_line1",
    "address_line2",
    "postal_code",
    "city",
    "country",
    "contact_name",
    "contact_phone",
    "contact_email",
    "notes",
)


def _apply_form(prop: Property, form: PropertyForm) -> None:
    for name in _PROPERTY_FIELDS:
        value = getattr(form, name).data
        if isinstance(value, str):
            value = value.strip() or None
        setattr(prop, name, value)
    prop.country = prop.country or "DE"


@property_bp.route("", methods=["GET"])
@login_required
@tenant_required
@capability_required(Capability.READ_PROPERTIES)
def list_properties():
    query = tenant_query(Property, current_user.organization_id)
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        query = query.filter(db.or_(Property.name.ilike(like), Property.city.ilike(like)))
    properties = query.order_by(Property.name.asc()).all()
    return jsonify({"properties": [serialize_property(p) for p in properties]})


@property_bp.route("", methods=["POST"])
@login_required
@tenant_required
@capability_required(Capability.MANAGE_PROPERTIES)
def create_property():
    form = bind_form(PropertyForm, json_body())
    prop = Property(organization_id=current_user.organization_id)
    _apply_form(prop, form)
    db.session.add(prop)
    commit_session()
    current_app.logger.info("Property %s created by %s", prop.id, current_user.id)
    return jsonify({"property": serialize_property(prop)}), 201


@property_bp.route("/<property_id>", methods=["GET"])
@login_required
@tenant_required
@capability_required(Capability.READ_PROPERTIES)
def property_detail(property_id: str):
    prop = load_scoped(Property, property_id, current_user.organization_id, "Property")
    subscriptions = (
        tenant_query(Subscription, current_user.organization_id)
        .filter_by(property_id=prop.id)
        .order_by(Subscription.created_at.asc())
        .all()
    )
    return jsonify(
        {
            "property": serialize_property(prop),
            "subscriptions": [serialize_subscription(s) for s in subscriptions],
        }
    )


@property_bp.route("/<property_id>", methods=["PATCH"])
@login_required
@tenant_required
@capability_required(Capability.MANAGE_PROPERTIES)
def update_property(property_id: str):
    prop = load_scoped(Property, property_id, current_user.organization_id, "Property")
    current = {name: getattr(prop, name) for name in _PROPERTY_FIELDS}
    form = bind_form(PropertyForm, {**current, **json_body()})
    _apply_form(prop, form)
    commit_session()
    return jsonify({"property": serialize_property(prop)})


@property_bp.route("/<property_id>", methods=["DELETE"])
@login_required
@tenant_required
@capability_required(Capability.MANAGE_PROPERTIES)
def delete_property(property_id: str):
    prop = load_scoped(Property, property_id, current_user.organization_id, "Property")
    if tenant_query(WorkOrder, current_user.organization_id).filter_by(property_id=prop.id).first():
        raise ConstraintViolation("Properties with work orders cannot be deleted", field="property_id")
    if tenant_query(Subscription, current_user.organization_id).filter_by(property_id=prop.id).first():
        raise ConstraintViolation("Properties with service contracts cannot be deleted", field="property_id")
    db.session.delete(prop)
    commit_session()
    current_app.logger.info("Property %s deleted by %s", property_id, current_user.id)
    return jsonify({"deleted": True})
