"""Project and project membership operations."""

import re
import sqlite3
from datetime import datetime

from sprintboard.core.errors import NotFoundError, ProjectNotFoundError
from sprintboard.db.models import MemberStatus, Project, ProjectMember, Role


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    org_id: str | None = None,
    description: str | None = None,
    owner_id: str | None = None,
) -> Project:
    """Create a new project with its story counter at zero.

    When ``owner_id`` is given the creator is recorded as the project OWNER.
    """
    db.execute(
        "INSERT INTO projects (id, org_id, name, description) VALUES (?, ?, ?, ?)",
        (project_id, org_id, name, description),
    )
    if owner_id:
        db.execute(
            "INSERT INTO project_members (project_id, user_id, role) VALUES (?, ?, ?)",
            (project_id, owner_id, Role.OWNER.value),
        )
    db.commit()
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection, org_id: str | None = None) -> list[Project]:
    """List all projects, optionally within one organization."""
    if org_id:
        rows = db.execute(
            "SELECT * FROM projects WHERE org_id = ? ORDER BY created_at DESC", (org_id,)
        ).fetchall()
    else:
        rows = db.execute("SELECT * FROM projects ORDER BY created_at DESC").fetchall()
    return [_row_to_project(r) for r in rows]


def update_project(
    db: sqlite3.Connection,
    project_id: str,
    **kwargs,
) -> Project | None:
    """Update project fields. The story counter is not editable here."""
    allowed = {"name", "description"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if not updates:
        return get_project(db, project_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [project_id]
    db.execute(
        f"UPDATE projects SET {set_clause}, updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now') WHERE id = ?",
        values,
    )
    db.commit()
    return get_project(db, project_id)


def delete_project(db: sqlite3.Connection, project_id: str) -> bool:
    """Delete a project together with its sprints, stories and history."""
    cur = db.execute("DELETE FROM projects WHERE id = ?", (project_id,))
    db.commit()
    return cur.rowcount > 0


# ── Members ─────────────────────────────────────────────────────────────────


def add_member(
    db: sqlite3.Connection,
    project_id: str,
    user_id: str,
    role: Role = Role.MEMBER,
) -> ProjectMember:
    """Add a user to a project.

    Projects inside an organization only accept users that are accepted
    members of that organization.
    """
    project = get_project(db, project_id)
    if not project:
        raise ProjectNotFoundError(project_id)
    if get_member(db, project_id, user_id):
        raise ValueError("User is already a member of this project")

    if project.org_id:
        org = db.execute(
            "SELECT owner_id FROM organizations WHERE id = ?", (project.org_id,)
        ).fetchone()
        org_member = db.execute(
            "SELECT status FROM organization_members WHERE org_id = ? AND user_id = ?",
            (project.org_id, user_id),
        ).fetchone()
        is_owner = org is not None and org["owner_id"] == user_id
        if not is_owner and (not org_member or org_member["status"] != MemberStatus.ACCEPTED.value):
            raise ValueError("User must be an active member of the organization first")

    db.execute(
        "INSERT INTO project_members (project_id, user_id, role) VALUES (?, ?, ?)",
        (project_id, user_id, Role(role).value),
    )
    db.commit()
    return get_member(db, project_id, user_id)


def get_member(db: sqlite3.Connection, project_id: str, user_id: str) -> ProjectMember | None:
    row = db.execute(
        "SELECT * FROM project_members WHERE project_id = ? AND user_id = ?",
        (project_id, user_id),
    ).fetchone()
    if not row:
        return None
    return _row_to_member(row)


def list_members(db: sqlite3.Connection, project_id: str) -> list[ProjectMember]:
    rows = db.execute(
        "SELECT * FROM project_members WHERE project_id = ? ORDER BY created_at DESC",
        (project_id,),
    ).fetchall()
    return [_row_to_member(r) for r in rows]


def update_member_role(
    db: sqlite3.Connection,
    project_id: str,
    user_id: str,
    role: Role,
) -> ProjectMember:
    if not get_member(db, project_id, user_id):
        raise NotFoundError(f"{user_id} is not a member of {project_id}")
    db.execute(
        """UPDATE project_members SET role = ?, updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now')
           WHERE project_id = ? AND user_id = ?""",
        (Role(role).value, project_id, user_id),
    )
    db.commit()
    return get_member(db, project_id, user_id)


def remove_member(db: sqlite3.Connection, project_id: str, user_id: str) -> bool:
    cur = db.execute(
        "DELETE FROM project_members WHERE project_id = ? AND user_id = ?",
        (project_id, user_id),
    )
    db.commit()
    return cur.rowcount > 0


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        org_id=row["org_id"],
        description=row["description"],
        story_counter=row["story_counter"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_member(row: sqlite3.Row) -> ProjectMember:
    return ProjectMember(
        id=row["id"],
        project_id=row["project_id"],
        user_id=row["user_id"],
        role=Role(row["role"]),
        active=bool(row["active"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
