"""Permission gate: effective role resolution and the role -> capability table."""

import sqlite3
from enum import Enum

from sprintboard.core.errors import ForbiddenError, ProjectNotFoundError
from sprintboard.db.models import MemberStatus, Role


class Permission(str, Enum):
    ORG_EDIT = "org:edit"
    ORG_DELETE = "org:delete"
    ORG_MANAGE_MEMBERS = "org:manage_members"
    PROJECT_CREATE = "project:create"
    PROJECT_EDIT = "project:edit"
    PROJECT_DELETE = "project:delete"
    PROJECT_MANAGE_MEMBERS = "project:manage_members"
    SPRINT_CREATE = "sprint:create"
    SPRINT_EDIT = "sprint:edit"
    SPRINT_DELETE = "sprint:delete"
    STORY_VIEW = "story:view"
    STORY_CREATE = "story:create"
    STORY_EDIT = "story:edit"
    STORY_DELETE = "story:delete"
    BOARD_MANAGE = "board:manage"


_MEMBER_PERMISSIONS = frozenset({
    Permission.STORY_VIEW,
    Permission.PROJECT_EDIT,
    Permission.SPRINT_CREATE,
    Permission.SPRINT_EDIT,
    Permission.STORY_CREATE,
    Permission.STORY_EDIT,
    Permission.STORY_DELETE,
    Permission.BOARD_MANAGE,
})

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.OWNER: frozenset(Permission),
    Role.ADMIN: frozenset(Permission) - {Permission.ORG_DELETE},
    Role.MEMBER: _MEMBER_PERMISSIONS,
    Role.VIEWER: frozenset({Permission.STORY_VIEW}),
}


def has_permission(role: Role | None, permission: Permission) -> bool:
    """Pure lookup in the permission table. A missing role grants nothing."""
    if role is None:
        return False
    return permission in ROLE_PERMISSIONS[role]


def resolve_org_role(db: sqlite3.Connection, user_id: str, org_id: str) -> Role | None:
    """Role of a user in an organization: OWNER for the owner, else the accepted membership role."""
    org = db.execute("SELECT owner_id FROM organizations WHERE id = ?", (org_id,)).fetchone()
    if not org:
        return None
    if org["owner_id"] == user_id:
        return Role.OWNER
    member = db.execute(
        """SELECT role FROM organization_members
           WHERE org_id = ? AND user_id = ? AND status = ? AND active = 1""",
        (org_id, user_id, MemberStatus.ACCEPTED.value),
    ).fetchone()
    return Role(member["role"]) if member else None


def resolve_project_role(
    db: sqlite3.Connection,
    user_id: str,
    project_id: str,
) -> Role | None:
    """Effective role of a user on a project.

    The organization owner is always OWNER. Otherwise the higher of the user's
    accepted organization membership and active project membership wins.
    Returns None when the user has no relationship to the project.
    """
    project = db.execute(
        "SELECT id, org_id FROM projects WHERE id = ?", (project_id,)
    ).fetchone()
    if not project:
        raise ProjectNotFoundError(project_id)

    candidates: list[Role] = []

    if project["org_id"]:
        org_role = resolve_org_role(db, user_id, project["org_id"])
        if org_role == Role.OWNER:
            return Role.OWNER
        if org_role:
            candidates.append(org_role)

    project_member = db.execute(
        "SELECT role FROM project_members WHERE project_id = ? AND user_id = ? AND active = 1",
        (project_id, user_id),
    ).fetchone()
    if project_member:
        candidates.append(Role(project_member["role"]))

    if not candidates:
        return None
    return max(candidates, key=lambda r: r.rank)


def can(
    db: sqlite3.Connection,
    user_id: str,
    project_id: str,
    permission: Permission,
) -> bool:
    return has_permission(resolve_project_role(db, user_id, project_id), permission)


def require_permission(
    db: sqlite3.Connection,
    user_id: str,
    project_id: str,
    permission: Permission,
) -> Role:
    """Raise ForbiddenError unless the user holds ``permission`` on the project."""
    role = resolve_project_role(db, user_id, project_id)
    if not has_permission(role, permission):
        raise ForbiddenError(f"Access denied: {permission.value} requires a higher role")
    return role
