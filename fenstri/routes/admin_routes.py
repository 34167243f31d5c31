from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from ..errors import ConstraintViolation
from ..extensions import db
from ..forms import ProfileCreateForm, ProfileUpdateForm, bind_form, json_body
from ..lifecycle import commit_session
from ..models import Profile, UserRole, WorkOrder, WorkOrderStatus
from ..permissions import Capability
from ..serializers import serialize_profile
from ..tenant import capability_required, load_scoped, tenant_query, tenant_required

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def _active_admin_count(organization_id: str) -> int:
    return tenant_query(Profile, organization_id).filter_by(role=UserRole.ADMIN, active=True).count()


def _ensure_not_last_admin(profile: Profile, *, new_role: UserRole | None = None, new_active: bool | None = None) -> None:
    if profile.role != UserRole.ADMIN or not profile.active:
        return
    losing_admin = (new_role is not None and new_role != UserRole.ADMIN) or new_active is False
    if losing_admin and _active_admin_count(profile.organization_id) <= 1:
        raise ConstraintViolation("The organization needs at least one active admin", field="role")


def _ensure_no_open_assignments(profile: Profile) -> None:
    open_orders = (
        tenant_query(WorkOrder, profile.organization_id)
        .filter(
            WorkOrder.assigned_to == profile.id,
            WorkOrder.status.notin_([WorkOrderStatus.DONE, WorkOrderStatus.CANCELLED]),
        )
        .count()
    )
    if open_orders:
        raise ConstraintViolation(
            f"Technician still has {open_orders} open work order(s); reassign them first",
            field="role",
        )


@admin_bp.route("/profiles", methods=["GET"])
@login_required
@tenant_required
@capability_required(Capability.MANAGE_PROFILES)
def list_profiles():
    query = tenant_query(Profile, current_user.organization_id)
    role_filter = (request.args.get("role") or "").strip().lower()
    if role_filter:
        try:
            query = query.filter(Profile.role == UserRole(role_filter))
        except ValueError:
            raise ConstraintViolation(f"Unknown role '{role_filter}'", field="role") from None
    profiles = query.order_by(Profile.full_name.asc()).all()
    return jsonify({"profiles": [serialize_profile(p) for p in profiles]})


@admin_bp.route("/profiles", methods=["POST"])
@login_required
@tenant_required
@capability_required(Capability.MANAGE_PROFILES)
def create_profile():
    form = bind_form(ProfileCreateForm, json_body())
    email = form.email.data.strip().lower()
    if Profile.query.filter_by(email=email).first():
        raise ConstraintViolation("That email is already registered.", field="email")

    profile = Profile(
        full_name=form.full_name.data.strip(),
        email=email,
        phone=(form.phone.data or "").strip() or None,
        role=UserRole(form.role.data),
        organization_id=current_user.organization_id,
        active=True,
    )
    profile.set_password(form.password.data)
    db.session.add(profile)
    commit_session()
    current_app.logger.info("Profile %s (%s) created by %s", profile.id, profile.role.value, current_user.id)
    return jsonify({"profile": serialize_profile(profile)}), 201


@admin_bp.route("/profiles/<profile_id>", methods=["PATCH"])
@login_required
@tenant_required
@capability_required(Capability.MANAGE_PROFILES)
def update_profile(profile_id: str):
    profile = load_scoped(Profile, profile_id, current_user.organization_id, "Profile")
    payload = json_body()
    merged = {
        "full_name": profile.full_name,
        "phone": profile.phone,
        "role": profile.role.value,
        "active": profile.active,
        **payload,
    }
    form = bind_form(ProfileUpdateForm, merged)
    new_role = UserRole(form.role.data)
    new_active = bool(form.active.data)

    _ensure_not_last_admin(profile, new_role=new_role, new_active=new_active)
    if profile.role == UserRole.TECHNICIAN and (new_role != UserRole.TECHNICIAN or not new_active):
        _ensure_no_open_assignments(profile)

    profile.full_name = form.full_name.data.strip()
    profile.phone = (form.phone.data or "").strip() or None
    profile.role = new_role
    profile.active = new_active
    commit_session()
    current_app.logger.info("Profile %s updated by %s", profile.id, current_user.id)
    return jsonify({"profile": serialize_profile(profile)})


@admin_bp.route("/profiles/<profile_id>", methods=["DELETE"])
@login_required
@tenant_required
@capability_required(Capability.MANAGE_PROFILES)
def deactivate_profile(profile_id: str):
    """Profiles are deactivated rather than deleted; work orders keep referencing them."""
    profile = load_scoped(Profile, profile_id, current_user.organization_id, "Profile")
    if profile.id == current_user.id:
        raise ConstraintViolation("You cannot deactivate your own account", field="id")
    _ensure_not_last_admin(profile, new_active=False)
    if profile.role == UserRole.TECHNICIAN:
        _ensure_no_open_assignments(profile)
    profile.active = False
    commit_session()
    current_app.logger.info("Profile %s deactivated by %s", profile.id, current_user.id)
    return jsonify({"profile": serialize_profile(profile)})
