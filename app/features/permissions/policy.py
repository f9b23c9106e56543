"""
Declarative permission catalog and route policy.

Permission keys are ``<module>.<action>``. ``POLICY`` maps a (module, action)
pair to the key guarding it; protected routes declare the pair (or only the
module, with the action taken from the HTTP method) instead of hand-rolling
their own checks:

    @router.delete("/{campaign_id}", dependencies=[Depends(require_policy("campaigns"))])
"""
from typing import Dict, List, Optional, Tuple


# (module, display name, actions), in display order
DEFAULT_MODULES: List[Tuple[str, str, List[str]]] = [
    ("dashboard", "Dashboard", ["read", "analytics"]),
    ("campaigns", "Campaigns", ["read", "create", "update", "delete"]),
    ("ads", "Ads", ["read", "create", "update", "delete"]),
    ("brands", "Brands", ["read", "create", "update", "delete"]),
    ("cards", "Cards", ["read", "create", "update", "delete"]),
    ("reports", "Reports", ["read", "create", "update", "delete", "export"]),
    ("users", "Users", ["read", "create", "update", "delete", "manage_roles"]),
    ("roles", "Roles", ["read", "create", "update", "delete"]),
    ("permissions", "Permissions", ["read", "create", "update", "assign"]),
    ("audit", "Audit Logs", ["read"]),
    ("settings", "Settings", ["read", "update"]),
]

METHOD_ACTIONS: Dict[str, str] = {
    "GET": "read",
    "HEAD": "read",
    "POST": "create",
    "PUT": "update",
    "PATCH": "update",
    "DELETE": "delete",
}


def permission_key(module: str, action: str) -> str:
    return f"{module}.{action}"


POLICY: Dict[Tuple[str, str], str] = {
    (module, action): permission_key(module, action)
    for module, _display_name, actions in DEFAULT_MODULES
    for action in actions
}


def action_for_method(method: str) -> Optional[str]:
    return METHOD_ACTIONS.get(method.upper())


def permission_key_for(module: str, action: str) -> str:
    """
    Look up the key guarding (module, action).

    Pairs missing from the table fall back to ``<module>.<action>`` so new
    modules created at runtime are still checkable.
    """
    return POLICY.get((module, action), permission_key(module, action))
