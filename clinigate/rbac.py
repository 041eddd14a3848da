"""
Role-Based Access Control for the AI gateway.

Two tables gate what a caller may do:

* **task permissions** -- which AI tasks each role may request, taken from
  ``GatewayPolicy.role_tasks`` so deployments can change them in YAML.
* **action permissions** -- governance operations (escalation reset, rate
  limit and cache administration, metrics and audit access, feedback).

Roles arrive as strings from the upstream auth layer.  Unknown roles are
denied every action and every task.

DISCLAIMER: This RBAC model is a decision-support access layer.  Production
deployments should integrate with enterprise identity providers
(e.g., OAuth2/OIDC, SAML).
"""

from __future__ import annotations

from clinigate.config import GatewayPolicy
from clinigate.errors import TaskNotPermittedError
from clinigate.models import Role


# ---------------------------------------------------------------------------
# Action permissions
# ---------------------------------------------------------------------------

ACTIONS = (
    "submit_feedback",
    "view_metrics",
    "view_escalation",
    "reset_escalation",
    "view_audit",
    "manage_limits",
    "manage_cache",
)

_GRANTS: dict[Role, set[str]] = {
    Role.NURSE: {"submit_feedback", "view_escalation"},
    Role.SENIOR_NURSE: {"submit_feedback", "view_escalation", "reset_escalation", "view_audit"},
    Role.CLINICIAN: {"submit_feedback", "view_escalation", "reset_escalation", "view_audit"},
    Role.DOCTOR: {"submit_feedback", "view_escalation", "reset_escalation", "view_audit"},
    Role.RADIOLOGIST: {"submit_feedback", "view_escalation"},
    Role.DERMATOLOGIST: {"submit_feedback", "view_escalation"},
    Role.MANAGER: {"view_metrics", "view_escalation", "view_audit"},
    Role.ADMIN: {
        "view_metrics",
        "view_escalation",
        "reset_escalation",
        "view_audit",
        "manage_limits",
        "manage_cache",
    },
}

# Maps (role, action) -> allowed
_PERMISSIONS: dict[tuple[Role, str], bool] = {
    (role, action): action in _GRANTS[role]
    for role in Role
    for action in ACTIONS
}


def _as_role(role: Role | str) -> Role | None:
    if isinstance(role, Role):
        return role
    try:
        return Role(role)
    except ValueError:
        return None


def check_permission(role: Role | str, action: str) -> bool:
    """Check whether a role has permission to perform an action.

    Args:
        role: The actor's role, as an enum or the raw header string.
        action: The action to check (e.g., 'reset_escalation').

    Returns:
        True if the role is permitted to perform the action, False otherwise.
    """
    resolved = _as_role(role)
    if resolved is None:
        return False
    return _PERMISSIONS.get((resolved, action), False)


def require_permission(role: Role | str, action: str) -> None:
    """Enforce a permission check; raise if denied.

    Raises:
        PermissionError: If the role is not permitted.
    """
    if not check_permission(role, action):
        label = role.value if isinstance(role, Role) else role
        raise PermissionError(
            f"Role '{label}' is not permitted to perform action '{action}'."
        )


def get_permissions_for_role(role: Role | str) -> dict[str, bool]:
    resolved = _as_role(role)
    return {
        action: resolved is not None and _PERMISSIONS.get((resolved, action), False)
        for action in ACTIONS
    }


# ---------------------------------------------------------------------------
# Task permissions
# ---------------------------------------------------------------------------

def allowed_tasks(policy: GatewayPolicy, role: Role | str) -> list[str]:
    label = role.value if isinstance(role, Role) else role
    return list(policy.role_tasks.get(label, []))


def check_task_permission(policy: GatewayPolicy, role: Role | str, task: str) -> None:
    """Raise unless ``role`` may request AI ``task`` under ``policy``.

    Raises:
        TaskNotPermittedError: If the task is not in the role's task list.
    """
    if task not in allowed_tasks(policy, role):
        label = role.value if isinstance(role, Role) else role
        raise TaskNotPermittedError(label, task)
