from __future__ import annotations

from flask import Blueprint, current_app, jsonify, session
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf

from ..errors import AccessDenied, ConstraintViolation
from ..extensions import db
from ..forms import LoginForm, OrganizationSignupForm, SelfProfileForm, bind_form, json_body
from ..lifecycle import commit_session
from ..models import Organization, OrganizationStatus, Profile, UserRole
from ..permissions import permissions_for
from ..serializers import serialize_organization, serialize_profile
from ..tenant import clear_tenant_session, set_tenant_session, tenant_required

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _session_payload(profile: Profile) -> dict:
    return {
        "profile": serialize_profile(profile),
        "organization": serialize_organization(profile.organization) if profile.organization else None,
        "capabilities": sorted(cap.value for cap in permissions_for(profile.role)),
    }


@auth_bp.route("/csrf-token", methods=["GET"])
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})


@auth_bp.route("/register-organization", methods=["POST"])
def register_organization():
    if current_user.is_authenticated and current_user.organization_id:
        raise ConstraintViolation("This account already belongs to an organization", field="organization_id")

    form = bind_form(OrganizationSignupForm, json_body())
    org_name = form.organization_name.data.strip()
    if Organization.query.filter_by(name=org_name).first():
        raise ConstraintViolation("An organization with this name already exists.", field="organization_name")

    admin_email = form.admin_email.data.strip().lower()
    if Profile.query.filter_by(email=admin_email).first():
        raise ConstraintViolation("That email is already registered.", field="admin_email")

    org = Organization(
        name=org_name,
        slug=Organization.generate_unique_slug(org_name),
        tax_id=(form.tax_id.data or "").strip() or None,
    )
    db.session.add(org)
    db.session.flush()

    admin = Profile(
        full_name=form.admin_name.data.strip(),
        email=admin_email,
        organization_id=org.id,
        role=UserRole.ADMIN,
        active=True,
    )
    admin.set_password(form.admin_password.data)
    db.session.add(admin)
    commit_session()

    session.clear()
    login_user(admin)
    set_tenant_session(admin)
    current_app.logger.info("Organization %s registered by %s", org.slug, admin.id)
    return jsonify(_session_payload(admin)), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    form = bind_form(LoginForm, json_body())
    email = form.email.data.strip().lower()
    org_slug = form.organization_slug.data.strip().lower()

    org = Organization.query.filter_by(slug=org_slug).first()
    profile = Profile.query.filter_by(email=email, organization_id=org.id).first() if org else None
    if not profile or not profile.check_password(form.password.data):
        current_app.logger.info("Failed sign-in for %s at %s", email, org_slug)
        raise AccessDenied("Invalid credentials. Please try again.")
    if org.status != OrganizationStatus.ACTIVE:
        raise AccessDenied("Organization is suspended. Contact your administrator.")
    if not profile.active:
        raise AccessDenied("This account is inactive. Contact your administrator.")

    session.clear()
    login_user(profile, remember=bool(form.remember_me.data))
    set_tenant_session(profile)
    current_app.logger.info("Profile %s signed in to %s", profile.id, org.slug)
    return jsonify(_session_payload(profile))


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    clear_tenant_session()
    logout_user()
    session.clear()
    return jsonify({"signed_out": True})


@auth_bp.route("/me", methods=["GET"])
@login_required
@tenant_required
def me():
    return jsonify(_session_payload(current_user))


@auth_bp.route("/me", methods=["PATCH"])
@login_required
@tenant_required
def update_me():
    payload = json_body()
    merged = {"full_name": current_user.full_name, "phone": current_user.phone, **payload}
    form = bind_form(SelfProfileForm, merged)
    current_user.full_name = form.full_name.data.strip()
    current_user.phone = (form.phone.data or "").strip() or None
    commit_session()
    return jsonify(_session_payload(current_user))
