"""Organization and organization membership operations."""

import sqlite3
import uuid
from datetime import datetime

from sprintboard.core.errors import NotFoundError
from sprintboard.core.projects import slugify
from sprintboard.db.models import MemberStatus, Organization, OrganizationMember, Role


def create_organization(
    db: sqlite3.Connection,
    name: str,
    owner_id: str,
    slug: str | None = None,
) -> Organization:
    """Create an organization. The creator owns it."""
    if slug and db.execute("SELECT 1 FROM organizations WHERE slug = ?", (slug,)).fetchone():
        raise ValueError(f"Organization slug already taken: {slug}")
    org_id = uuid.uuid4().hex
    db.execute(
        "INSERT INTO organizations (id, name, slug, owner_id) VALUES (?, ?, ?, ?)",
        (org_id, name, slug or _unique_slug(db, slugify(name) or "org"), owner_id),
    )
    db.commit()
    return get_organization(db, org_id)


def get_organization(db: sqlite3.Connection, org_id: str) -> Organization | None:
    row = db.execute("SELECT * FROM organizations WHERE id = ?", (org_id,)).fetchone()
    if not row:
        return None
    return _row_to_org(row)


def list_organizations(db: sqlite3.Connection, user_id: str | None = None) -> list[Organization]:
    """List organizations, or only those a user owns or has joined."""
    if user_id is None:
        rows = db.execute("SELECT * FROM organizations ORDER BY created_at DESC").fetchall()
    else:
        rows = db.execute(
            """SELECT DISTINCT o.* FROM organizations o
               LEFT JOIN organization_members m
                 ON m.org_id = o.id AND m.user_id = ? AND m.status = 'ACCEPTED' AND m.active = 1
               WHERE o.owner_id = ? OR m.id IS NOT NULL
               ORDER BY o.created_at DESC""",
            (user_id, user_id),
        ).fetchall()
    return [_row_to_org(r) for r in rows]


def invite_member(
    db: sqlite3.Connection,
    org_id: str,
    user_id: str,
    role: Role = Role.MEMBER,
    status: MemberStatus = MemberStatus.PENDING,
) -> OrganizationMember:
    """Invite a user into an organization. Pass ``status=ACCEPTED`` to add directly."""
    org = get_organization(db, org_id)
    if not org:
        raise NotFoundError(f"Organization not found: {org_id}")
    if role == Role.OWNER:
        raise ValueError("Ownership is held by the organization record, not a membership")
    if org.owner_id == user_id or get_member(db, org_id, user_id):
        raise ValueError("User is already a member of this organization")

    db.execute(
        "INSERT INTO organization_members (org_id, user_id, role, status) VALUES (?, ?, ?, ?)",
        (org_id, user_id, Role(role).value, MemberStatus(status).value),
    )
    db.commit()
    return get_member(db, org_id, user_id)


def respond_to_invite(
    db: sqlite3.Connection,
    org_id: str,
    user_id: str,
    accept: bool,
) -> OrganizationMember:
    member = get_member(db, org_id, user_id)
    if not member:
        raise NotFoundError(f"No invitation for {user_id} in {org_id}")
    status = MemberStatus.ACCEPTED if accept else MemberStatus.REJECTED
    db.execute(
        """UPDATE organization_members SET status = ?, updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now')
           WHERE org_id = ? AND user_id = ?""",
        (status.value, org_id, user_id),
    )
    db.commit()
    return get_member(db, org_id, user_id)


def get_member(db: sqlite3.Connection, org_id: str, user_id: str) -> OrganizationMember | None:
    row = db.execute(
        "SELECT * FROM organization_members WHERE org_id = ? AND user_id = ?",
        (org_id, user_id),
    ).fetchone()
    if not row:
        return None
    return _row_to_member(row)


def list_members(
    db: sqlite3.Connection,
    org_id: str,
    status: MemberStatus | None = None,
) -> list[OrganizationMember]:
    query = "SELECT * FROM organization_members WHERE org_id = ?"
    params: list = [org_id]
    if status:
        query += " AND status = ?"
        params.append(MemberStatus(status).value)
    query += " ORDER BY created_at DESC"
    return [_row_to_member(r) for r in db.execute(query, params).fetchall()]


def _unique_slug(db: sqlite3.Connection, base: str) -> str:
    candidate = base
    i = 2
    while db.execute("SELECT 1 FROM organizations WHERE slug = ?", (candidate,)).fetchone():
        candidate = f"{base}-{i}"
        i += 1
    return candidate


def _row_to_org(row: sqlite3.Row) -> Organization:
    return Organization(
        id=row["id"],
        name=row["name"],
        slug=row["slug"],
        owner_id=row["owner_id"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_member(row: sqlite3.Row) -> OrganizationMember:
    return OrganizationMember(
        id=row["id"],
        org_id=row["org_id"],
        user_id=row["user_id"],
        role=Role(row["role"]),
        status=MemberStatus(row["status"]),
        active=bool(row["active"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
