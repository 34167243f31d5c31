from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from flask import request
from flask_wtf import FlaskForm
from werkzeug.datastructures import MultiDict
from wtforms import BooleanField, DecimalField, Field, PasswordField, SelectField, StringField, TextAreaField
from wtforms.fields import DateField
from wtforms.validators import AnyOf, Email, EqualTo, InputRequired, Length, NumberRange, Optional, ValidationError
from wtforms.widgets import TextInput

from .errors import ConstraintViolation
from .models import Priority, ServiceType, UserRole, WorkOrderStatus


def _validate_strong_password(form, field) -> None:
    value = field.data or ""
    if len(value) < 12:
        raise ValidationError("Password must be at least 12 characters long.")
    if not any(ch.islower() for ch in value):
        raise ValidationError("Include at least one lowercase letter.")
    if not any(ch.isupper() for ch in value):
        raise ValidationError("Include at least one uppercase letter.")
    if not any(ch.isdigit() for ch in value):
        raise ValidationError("Include at least one number.")
    if not any(ch in "!@#$%^&*()_-+=[]{}|;:'\",.<>?/`~" for ch in value):
        raise ValidationError("Include at least one symbol.")


def _choices(enum_cls) -> list[tuple[str, str]]:
    return [(member.value, member.value.replace("_", " ").title()) for member in enum_cls]


def _values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class IsoDateTimeField(Field):
    """ISO 8601 timestamp; aware values are normalised to naive UTC."""

    widget = TextInput()

    def _value(self) -> str:
        return self.data.isoformat() if self.data else ""

    def process_formdata(self, valuelist) -> None:
        if not valuelist or not valuelist[0]:
            self.data = None
            return
        try:
            parsed = datetime.fromisoformat(valuelist[0].strip().replace("Z", "+00:00"))
        except ValueError:
            self.data = None
            raise ValueError(self.gettext("Not a valid ISO 8601 date/time.")) from None
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        self.data = parsed


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return "y" if value else ""
    return str(value)


def json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConstraintViolation("Request body must be a JSON object")
    return payload


def bind_form(form_cls: type[FlaskForm], payload: Mapping[str, Any] | None) -> FlaskForm:
    """Validate a JSON body with a form class; the first error becomes a ConstraintViolation."""
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise ConstraintViolation("Request body must be a JSON object")

    form_data = MultiDict()
    for key, value in payload.items():
        if value is None or isinstance(value, Mapping):
            continue
        if isinstance(value, (list, tuple)):
            for entry in value:
                form_data.add(key, _form_value(entry))
            continue
        form_data.add(key, _form_value(value))

    form = form_cls(formdata=form_data, meta={"csrf": False})
    if not form.validate():
        field_name, messages = next(iter(form.errors.items()))
        raise ConstraintViolation(f"{field_name}: {messages[0]}", field=field_name)
    return form


class LoginForm(FlaskForm):
    organization_slug = StringField(
        "Organization Slug",
        validators=[InputRequired(message="Organization is required"), Length(max=128)],
    )
    email = StringField(
        "Email",
        validators=[InputRequired(message="Email is required"), Email(), Length(max=255)],
    )
    password = PasswordField(
        "Password",
        validators=[InputRequired(message="Password is required"), Length(min=8, max=128)],
    )
    remember_me = BooleanField("Remember this device")


class OrganizationSignupForm(FlaskForm):
    organization_name = StringField(
        "Organization Name",
        validators=[InputRequired(message="Organization name is required"), Length(max=255)],
    )
    admin_name = StringField(
        "Admin Full Name",
        validators=[InputRequired(message="Full name is required"), Length(max=255)],
    )
    admin_email = StringField(
        "Admin Email",
        validators=[InputRequired(message="Email is required"), Email(), Length(max=255)],
    )
    admin_password = PasswordField(
        "Admin Password",
        validators=[InputRequired(), Length(min=12, max=128), _validate_strong_password],
    )
    confirm_password = PasswordField(
        "Confirm Password",
        validators=[InputRequired(), EqualTo("admin_password", message="Passwords must match")],
    )
    tax_id = StringField("Tax ID", validators=[Optional(), Length(max=64)])


class ProfileCreateForm(FlaskForm):
    full_name = StringField(
        "Full Name",
        validators=[InputRequired(message="Name is required"), Length(max=255)],
    )
    email = StringField(
        "Email",
        validators=[InputRequired(message="Email is required"), Email(), Length(max=255)],
    )
    phone = StringField("Phone", validators=[Optional(), Length(max=64)])
    password = PasswordField(
        "Password",
        validators=[InputRequired(), Length(min=12, max=128), _validate_strong_password],
    )
    role = SelectField("Role", choices=_choices(UserRole), validators=[InputRequired()])


class ProfileUpdateForm(FlaskForm):
    full_name = StringField("Full Name", validators=[InputRequired(message="Name is required"), Length(max=255)])
    phone = StringField("Phone", validators=[Optional(), Length(max=64)])
    role = SelectField("Role", choices=_choices(UserRole), validators=[InputRequired()])
    active = BooleanField("Active")


class SelfProfileForm(FlaskForm):
    full_name = StringField("Full Name", validators=[InputRequired(message="Name is required"), Length(max=255)])
    phone = StringField("Phone", validators=[Optional(), Length(max=64)])


class PropertyForm(FlaskForm):
    name = StringField("Name", validators=[InputRequired(message="Name is required"), Length(max=255)])
    address_line1 = StringField(
        "Street",
        validators=[InputRequired(message="Street address is required"), Length(max=255)],
    )
    address_line2 = StringField("Address Line 2", validators=[Optional(), Length(max=255)])
    postal_code = StringField(
        "Postal Code",
        validators=[InputRequired(message="Postal code is required"), Length(max=16)],
    )
    city = StringField("City", validators=[InputRequired(message="City is required"), Length(max=128)])
    country = StringField("Country", validators=[Optional(), Length(max=64)], default="DE")
    contact_name = StringField("Contact Name", validators=[Optional(), Length(max=255)])
    contact_phone = StringField("Contact Phone", validators=[Optional(), Length(max=64)])
    contact_email = StringField("Contact Email", validators=[Optional(), Email(), Length(max=255)])
    notes = TextAreaField("Notes", validators=[Optional(), Length(max=4000)])


class WorkOrderForm(FlaskForm):
    property_id = StringField("Property", validators=[InputRequired(message="Property is required"), Length(max=36)])
    service = SelectField("Service", choices=_choices(ServiceType), default=ServiceType.MAINTENANCE.value)
    description = TextAreaField(
        "Description",
        validators=[InputRequired(message="Description is required"), Length(max=4000)],
    )
    priority = SelectField("Priority", choices=_choices(Priority), default=Priority.MEDIUM.value)
    preferred_start = IsoDateTimeField("Preferred Start", validators=[Optional()])
    preferred_end = IsoDateTimeField("Preferred End", validators=[Optional()])

    def validate_preferred_end(self, field) -> None:  # type: ignore[override]
        if field.data and self.preferred_start.data and field.data < self.preferred_start.data:
            raise ValidationError("Preferred end cannot be earlier than preferred start.")


class AssignTechnicianForm(FlaskForm):
    technician_id = StringField(
        "Technician",
        validators=[InputRequired(message="Technician is required"), Length(max=36)],
    )
    scheduled_at = IsoDateTimeField("Scheduled At", validators=[Optional()])


class TransitionForm(FlaskForm):
    status = StringField(
        "Target Status",
        validators=[InputRequired(message="Target status is required"), AnyOf(_values(WorkOrderStatus))],
    )


class ReportForm(FlaskForm):
    work_performed = TextAreaField("Work Performed", validators=[Optional(), Length(max=8000)])
    materials_used = TextAreaField("Materials Used", validators=[Optional(), Length(max=4000)])
    time_spent = StringField("Time Spent", validators=[Optional(), Length(max=64)])
    issues_found = TextAreaField("Issues Found", validators=[Optional(), Length(max=4000)])
    recommendations = TextAreaField("Recommendations", validators=[Optional(), Length(max=4000)])
    customer_signature = BooleanField("Customer Signature")
    outcome = StringField(
        "Outcome",
        validators=[Optional(), AnyOf([WorkOrderStatus.DONE.value, WorkOrderStatus.QA_HOLD.value])],
    )


class InvoiceAdjustForm(FlaskForm):
    amount = DecimalField(
        "Net Amount",
        places=2,
        validators=[Optional(), NumberRange(min=0, message="Amount cannot be negative")],
    )
    due_date = DateField("Due Date", validators=[Optional()], format="%Y-%m-%d")
    notes = TextAreaField("Notes", validators=[Optional(), Length(max=4000)])


__all__ = [
    "bind_form",
    "json_body",
    "IsoDateTimeField",
    "LoginForm",
    "OrganizationSignupForm",
    "ProfileCreateForm",
    "ProfileUpdateForm",
    "SelfProfileForm",
    "PropertyForm",
    "WorkOrderForm",
    "AssignTechnicianForm",
    "TransitionForm",
    "ReportForm",
    "InvoiceAdjustForm",
]
