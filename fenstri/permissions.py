"""Role capability sets.

A single lookup answers "may this role do X" so the blueprints never compare
role strings directly.
"""
from __future__ import annotations

from enum import Enum

from .errors import AccessDenied
from .models import Profile, UserRole


class Capability(str, Enum):
    MANAGE_PROPERTIES = "manage_properties"
    READ_PROPERTIES = "read_properties"
    CREATE_WORK_ORDER = "create_work_order"
    READ_ORG_WORK_ORDERS = "read_org_work_orders"
    READ_ASSIGNED_WORK_ORDERS = "read_assigned_work_orders"
    ASSIGN_TECHNICIAN = "assign_technician"
    DISPATCH_TRANSITIONS = "dispatch_transitions"
    EXECUTE_WORK = "execute_work"
    FILE_REPORT = "file_report"
    READ_INVOICES = "read_invoices"
    MANAGE_INVOICES = "manage_invoices"
    RENDER_INVOICES = "render_invoices"
    MANAGE_PROFILES = "manage_profiles"
    VIEW_ROSTER = "view_roster"


_ROLE_CAPABILITIES: dict[UserRole, frozenset[Capability]] = {
    UserRole.CUSTOMER: frozenset(
        {
            Capability.MANAGE_PROPERTIES,
            Capability.READ_PROPERTIES,
            Capability.CREATE_WORK_ORDER,
            Capability.READ_ORG_WORK_ORDERS,
            Capability.READ_INVOICES,
            Capability.RENDER_INVOICES,
        }
    ),
    UserRole.TECHNICIAN: frozenset(
        {
            Capability.READ_PROPERTIES,
            Capability.READ_ASSIGNED_WORK_ORDERS,
            Capability.EXECUTE_WORK,
            Capability.FILE_REPORT,
        }
    ),
    UserRole.DISPATCHER: frozenset(
        {
            Capability.READ_PROPERTIES,
            Capability.CREATE_WORK_ORDER,
            Capability.READ_ORG_WORK_ORDERS,
            Capability.ASSIGN_TECHNICIAN,
            Capability.DISPATCH_TRANSITIONS,
            Capability.READ_INVOICES,
            Capability.MANAGE_INVOICES,
            Capability.RENDER_INVOICES,
            Capability.VIEW_ROSTER,
        }
    ),
}
_ROLE_CAPABILITIES[UserRole.ADMIN] = _ROLE_CAPABILITIES[UserRole.DISPATCHER] | {
    Capability.MANAGE_PROPERTIES,
    Capability.MANAGE_PROFILES,
}


def permissions_for(role: UserRole | str) -> frozenset[Capability]:
    try:
        return _ROLE_CAPABILITIES[UserRole(role)]
    except ValueError:
        return frozenset()


def has_capability(actor: Profile | None, capability: Capability) -> bool:
    if actor is None or actor.role is None:
        return False
    return capability in permissions_for(actor.role)


def require_capability(actor: Profile | None, capability: Capability) -> None:
    if not has_capability(actor, capability):
        raise AccessDenied(f"Your role does not allow '{capability.value.replace('_', ' ')}'")


__all__ = ["Capability", "permissions_for", "has_capability", "require_capability"]
