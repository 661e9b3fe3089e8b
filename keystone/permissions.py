"""
keystone/permissions.py

Role-based permission evaluation for tenant-scoped actors.

A PermissionSet maps a Resource to the Actions a role may perform on it.
A resource missing from the set means no access. The `manage` action is a
wildcard for the resource it is listed on (and only that resource).

Pure Python logic - no FastAPI imports, no database access.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping


# ============================================================================
# Resources and Actions
# ============================================================================

class Resource(str, Enum):
    """Tenant-owned resource families an actor can be granted access to."""
    PROPERTIES = "properties"
    LEASES = "leases"
    TENANTS = "tenants"
    MAINTENANCE = "maintenance"
    PAYMENTS = "payments"
    USERS = "users"
    ROLES = "roles"
    SETTINGS = "settings"
    BILLING = "billing"
    OFFICES = "offices"
    REPORTS = "reports"


class Action(str, Enum):
    VIEW = "view"
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    MANAGE = "manage"


# Resource -> actions. Values may be any iterable of Action members or their
# string values (role permissions are stored as JSON lists).
PermissionSet = Mapping[str, Iterable[str]]

EMPTY_PERMISSIONS: Mapping[str, FrozenSet[Action]] = MappingProxyType({})


# ============================================================================
# Evaluation
# ============================================================================

def allows(permissions: PermissionSet, resource: str, action: str) -> bool:
    """
    Check whether a permission set allows `action` on `resource`.

    Args:
        permissions: Resource -> actions mapping (may be empty or partial)
        resource: Resource member or its string value
        action: Action member or its string value

    Returns:
        False if the resource is absent. True if the resource's actions
        include `manage`. Otherwise True iff `action` is listed.

    Raises:
        ValueError: If resource or action is not a known member.
    """
    resource = Resource(resource)
    action = Action(action)

    granted = permissions.get(resource.value) if permissions else None
    if not granted:
        return False

    granted = {Action(a) for a in granted}
    if Action.MANAGE in granted:
        return True

    return action in granted


def _bound_to(action: Action):
    def check(permissions: PermissionSet, resource: str) -> bool:
        return allows(permissions, resource, action)

    check.__name__ = f"can_{action.value}"
    check.__doc__ = f"Shorthand for allows(permissions, resource, Action.{action.name})."
    return check


can_view = _bound_to(Action.VIEW)
can_create = _bound_to(Action.CREATE)
can_edit = _bound_to(Action.EDIT)
can_delete = _bound_to(Action.DELETE)
can_manage = _bound_to(Action.MANAGE)


# ============================================================================
# Validation / serialisation
# ============================================================================

def normalize_permissions(raw: Mapping[str, Any]) -> Dict[str, FrozenSet[Action]]:
    """
    Validate a client- or database-supplied permission mapping.

    Unknown resources or actions raise ValueError, as do empty action lists.
    Duplicate actions collapse; `manage` is kept as written, never expanded.
    """
    if not isinstance(raw, Mapping):
        raise ValueError("permissions must be an object of resource -> actions")

    normalized: Dict[str, FrozenSet[Action]] = {}
    for key, actions in raw.items():
        resource = Resource(key)
        if isinstance(actions, (str, bytes)) or not isinstance(actions, Iterable):
            raise ValueError(f"actions for '{resource.value}' must be a list")
        action_set = frozenset(Action(a) for a in actions)
        if not action_set:
            raise ValueError(f"actions for '{resource.value}' must not be empty")
        normalized[resource.value] = action_set
    return normalized


def permissions_to_json(permissions: PermissionSet) -> Dict[str, List[str]]:
    """Serialise a permission set with a stable action order."""
    order = list(Action)
    result: Dict[str, List[str]] = {}
    for resource in Resource:
        actions = permissions.get(resource.value)
        if actions:
            present = {Action(a) for a in actions}
            result[resource.value] = [a.value for a in order if a in present]
    return result


# ============================================================================
# Default role templates (seeded for every new tenant)
# ============================================================================

_CRUD = (Action.VIEW, Action.CREATE, Action.EDIT, Action.DELETE)
_ALL = _CRUD + (Action.MANAGE,)


def _template(grants: Mapping[Resource, Iterable[Action]]) -> Mapping[str, FrozenSet[Action]]:
    return MappingProxyType({r.value: frozenset(a) for r, a in grants.items()})


ACCOUNT_OWNER = "Account Owner"
PROPERTY_MANAGER = "Property Manager"
MAINTENANCE_COORDINATOR = "Maintenance Coordinator"
LEASING_AGENT = "Leasing Agent"
VIEWER = "Viewer"

DEFAULT_ROLES: Mapping[str, Mapping[str, FrozenSet[Action]]] = MappingProxyType({
    ACCOUNT_OWNER: _template({r: _ALL for r in Resource}),
    PROPERTY_MANAGER: _template({
        Resource.PROPERTIES: (Action.VIEW, Action.CREATE, Action.EDIT),
        Resource.LEASES: (Action.VIEW, Action.CREATE, Action.EDIT),
        Resource.TENANTS: (Action.VIEW, Action.CREATE, Action.EDIT),
        Resource.MAINTENANCE: _CRUD,
        Resource.PAYMENTS: (Action.VIEW, Action.CREATE),
        Resource.USERS: (Action.VIEW,),
        Resource.OFFICES: (Action.VIEW,),
        Resource.REPORTS: (Action.VIEW,),
    }),
    MAINTENANCE_COORDINATOR: _template({
        Resource.PROPERTIES: (Action.VIEW,),
        Resource.MAINTENANCE: _ALL,
        Resource.REPORTS: (Action.VIEW,),
    }),
    LEASING_AGENT: _template({
        Resource.PROPERTIES: (Action.VIEW,),
        Resource.LEASES: (Action.VIEW, Action.CREATE, Action.EDIT),
        Resource.TENANTS: (Action.VIEW, Action.CREATE, Action.EDIT),
        Resource.REPORTS: (Action.VIEW,),
    }),
    VIEWER: _template({
        Resource.PROPERTIES: (Action.VIEW,),
        Resource.LEASES: (Action.VIEW,),
        Resource.TENANTS: (Action.VIEW,),
        Resource.MAINTENANCE: (Action.VIEW,),
        Resource.PAYMENTS: (Action.VIEW,),
        Resource.REPORTS: (Action.VIEW,),
    }),
})
