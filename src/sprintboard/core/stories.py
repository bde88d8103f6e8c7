"""Story management operations."""

import json
import logging
import sqlite3
import uuid
from datetime import datetime

from sprintboard.core.errors import (
    InvalidInputError,
    ProjectNotFoundError,
    SprintNotFoundError,
    StoryNotFoundError,
)
from sprintboard.core.slugs import DEFAULT_PREFIX, claim_next_slug
from sprintboard.db.engine import transaction
from sprintboard.db.models import Priority, Story, StoryHistory, StoryStatus

logger = logging.getLogger(__name__)

# Passed as ``sprint_id`` to list stories that belong to no sprint.
UNASSIGNED = "null"

EDITABLE_FIELDS = (
    "title",
    "description",
    "points",
    "priority",
    "status",
    "labels",
    "sprint_id",
    "due_date",
    "position",
)

# Board display order: position, then newest first, then id for a total order.
DISPLAY_ORDER = "position ASC, created_at DESC, id ASC"

MAX_ASSIGNEES = 10

# Keeps IN (...) lists under SQLite's bound-parameter limit.
_CHUNK = 500


def create_story(
    db: sqlite3.Connection,
    project_id: str,
    title: str,
    description: str | None = None,
    status: StoryStatus = StoryStatus.TODO,
    priority: Priority = Priority.MEDIUM,
    points: int | None = None,
    labels: list[str] | None = None,
    sprint_id: str | None = None,
    due_date: datetime | None = None,
    assignee_ids: list[str] | None = None,
    prefix: str = DEFAULT_PREFIX,
    actor: str | None = None,
) -> Story:
    """Create a story and give it the project's next slug.

    The counter increment, the insert and the assignee rows commit together:
    either the story exists with its slug, or neither the story nor the
    counter change.
    """
    assignee_ids = _check_assignees(assignee_ids or [])
    story_id = uuid.uuid4().hex
    with transaction(db):
        if not db.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,)).fetchone():
            raise ProjectNotFoundError(project_id)
        if sprint_id:
            _check_sprint(db, project_id, sprint_id)

        last = db.execute(
            "SELECT MAX(position) AS pos FROM stories WHERE project_id = ?", (project_id,)
        ).fetchone()
        position = (last["pos"] if last["pos"] is not None else -1) + 1

        allocation = claim_next_slug(db, project_id, prefix)
        db.execute(
            """INSERT INTO stories (id, project_id, title, description, slug, status, priority,
                                    position, points, labels, sprint_id, due_date)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                story_id,
                project_id,
                title,
                description,
                allocation.slug,
                StoryStatus(status).value,
                Priority(priority).value,
                position,
                points,
                json.dumps(labels or []),
                sprint_id,
                due_date.isoformat() if due_date else None,
            ),
        )
        _set_assignees(db, story_id, assignee_ids)

    logger.info(
        "Created story %s as %s in project %s by %s", story_id, allocation.slug, project_id, actor or "unknown"
    )
    return get_story(db, story_id)


def get_story(
    db: sqlite3.Connection,
    story_id: str,
    project_id: str | None = None,
) -> Story | None:
    """Get a story by ID, optionally requiring it to belong to ``project_id``."""
    row = db.execute("SELECT * FROM stories WHERE id = ?", (story_id,)).fetchone()
    if not row or (project_id is not None and row["project_id"] != project_id):
        return None
    return _row_to_story(row, _load_assignees(db, [story_id]).get(story_id))


def get_story_by_slug(db: sqlite3.Connection, project_id: str, slug: str) -> Story | None:
    row = db.execute(
        "SELECT * FROM stories WHERE project_id = ? AND slug = ?", (project_id, slug)
    ).fetchone()
    if not row:
        return None
    return _row_to_story(row, _load_assignees(db, [row["id"]]).get(row["id"]))


def list_stories(
    db: sqlite3.Connection,
    project_id: str,
    status: str | None = None,
    priority: str | None = None,
    sprint_id: str | None = None,
    archived: bool = False,
    search: str | None = None,
    assignee_id: str | None = None,
    limit: int | None = 50,
    offset: int = 0,
) -> tuple[list[Story], int]:
    """List stories in board display order. Returns the page and the total count."""
    where = "WHERE project_id = ? AND archived = ?"
    params: list = [project_id, int(archived)]

    if status:
        where += " AND status = ?"
        params.append(StoryStatus(status).value)

    if priority:
        where += " AND priority = ?"
        params.append(Priority(priority).value)

    if sprint_id == UNASSIGNED:
        where += " AND sprint_id IS NULL"
    elif sprint_id:
        where += " AND sprint_id = ?"
        params.append(sprint_id)

    if search:
        where += " AND (title LIKE ? OR description LIKE ?)"
        pattern = f"%{search}%"
        params.extend([pattern, pattern])

    if assignee_id:
        where += " AND id IN (SELECT story_id FROM story_assignees WHERE user_id = ?)"
        params.append(assignee_id)

    total = db.execute(f"SELECT COUNT(*) AS n FROM stories {where}", params).fetchone()["n"]

    query = f"SELECT * FROM stories {where} ORDER BY {DISPLAY_ORDER}"
    page_params = list(params)
    if limit is not None:
        query += " LIMIT ? OFFSET ?"
        page_params.extend([limit, offset])
    rows = db.execute(query, page_params).fetchall()
    assignees = _load_assignees(db, [r["id"] for r in rows])
    return [_row_to_story(r, assignees.get(r["id"])) for r in rows], total


def update_story(
    db: sqlite3.Connection,
    story_id: str,
    actor: str | None = None,
    project_id: str | None = None,
    **fields,
) -> Story:
    """Edit a single story.

    Only keys present in ``fields`` are touched; pass None to clear a nullable
    field. One history row is written per field whose value actually changed.
    ``assignee_ids`` replaces the whole assignee list.
    """
    unknown = set(fields) - set(EDITABLE_FIELDS) - {"assignee_ids"}
    if unknown:
        raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")
    assignee_ids = fields.pop("assignee_ids", None)
    if assignee_ids is not None:
        assignee_ids = _check_assignees(assignee_ids)

    with transaction(db):
        story = get_story(db, story_id, project_id)
        if not story:
            raise StoryNotFoundError(story_id)

        if fields.get("sprint_id"):
            _check_sprint(db, story.project_id, fields["sprint_id"])

        before = _story_columns(story)
        after = dict(before)
        after.update(_to_columns(fields))
        changed = {k: v for k, v in after.items() if k in fields and v != before[k]}

        if changed:
            set_parts = [f"{k} = ?" for k in changed]
            set_parts.append("updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now')")
            db.execute(
                f"UPDATE stories SET {', '.join(set_parts)} WHERE id = ?",
                list(changed.values()) + [story_id],
            )
            for key in changed:
                _log_history(
                    db, story_id, key, _from_column(key, before[key]), _from_column(key, after[key]), actor
                )

        if assignee_ids is not None and set(assignee_ids) != set(story.assignee_ids):
            db.execute("DELETE FROM story_assignees WHERE story_id = ?", (story_id,))
            _set_assignees(db, story_id, assignee_ids)
            if not changed:
                db.execute(
                    "UPDATE stories SET updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now') WHERE id = ?",
                    (story_id,),
                )
            _log_history(db, story_id, "assignees", story.assignee_ids, assignee_ids, actor)
            changed["assignees"] = assignee_ids

    if changed:
        logger.info("Updated story %s: %s", story_id, ", ".join(changed))
    return get_story(db, story_id)


def archive_story(
    db: sqlite3.Connection,
    story_id: str,
    archived: bool,
    actor: str | None = None,
    project_id: str | None = None,
) -> Story:
    """Archive or restore a story. Writes an ``archived`` history entry on change."""
    with transaction(db):
        story = get_story(db, story_id, project_id)
        if not story:
            raise StoryNotFoundError(story_id)
        if story.archived != archived:
            db.execute(
                """UPDATE stories SET archived = ?, updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now')
                   WHERE id = ?""",
                (int(archived), story_id),
            )
            _log_history(db, story_id, "archived", story.archived, archived, actor)
    return get_story(db, story_id)


def delete_story(db: sqlite3.Connection, story_id: str, project_id: str | None = None) -> bool:
    """Delete a story. Its history goes with it."""
    if not get_story(db, story_id, project_id):
        return False
    db.execute("DELETE FROM stories WHERE id = ?", (story_id,))
    db.commit()
    logger.info("Deleted story %s", story_id)
    return True


def get_story_history(db: sqlite3.Connection, story_id: str) -> list[StoryHistory]:
    """Get the change history for a story, oldest first."""
    rows = db.execute(
        "SELECT * FROM story_history WHERE story_id = ? ORDER BY created_at, id",
        (story_id,),
    ).fetchall()
    return [
        StoryHistory(
            id=r["id"],
            story_id=r["story_id"],
            field=r["field"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            changed_by=r["changed_by"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _check_sprint(db: sqlite3.Connection, project_id: str, sprint_id: str):
    row = db.execute(
        "SELECT 1 FROM sprints WHERE id = ? AND project_id = ?", (sprint_id, project_id)
    ).fetchone()
    if not row:
        raise SprintNotFoundError(sprint_id)


def _check_assignees(assignee_ids: list[str]) -> list[str]:
    assignee_ids = list(dict.fromkeys(assignee_ids))
    if len(assignee_ids) > MAX_ASSIGNEES:
        raise InvalidInputError(f"Maximum {MAX_ASSIGNEES} assignees allowed")
    return assignee_ids


def _set_assignees(db: sqlite3.Connection, story_id: str, assignee_ids: list[str]):
    db.executemany(
        "INSERT INTO story_assignees (story_id, user_id) VALUES (?, ?)",
        [(story_id, user_id) for user_id in assignee_ids],
    )


def _load_assignees(db: sqlite3.Connection, story_ids: list[str]) -> dict[str, list[str]]:
    """Assignee user ids per story, in the order they were assigned."""
    found: dict[str, list[str]] = {}
    for start in range(0, len(story_ids), _CHUNK):
        chunk = story_ids[start:start + _CHUNK]
        placeholders = ", ".join("?" for _ in chunk)
        rows = db.execute(
            f"""SELECT story_id, user_id FROM story_assignees
                WHERE story_id IN ({placeholders}) ORDER BY rowid""",
            chunk,
        ).fetchall()
        for r in rows:
            found.setdefault(r["story_id"], []).append(r["user_id"])
    return found


def _log_history(
    db: sqlite3.Connection,
    story_id: str,
    field: str,
    old_value,
    new_value,
    actor: str | None,
):
    db.execute(
        """INSERT INTO story_history (story_id, field, old_value, new_value, changed_by)
           VALUES (?, ?, ?, ?, ?)""",
        (story_id, field, _encode(old_value), _encode(new_value), actor),
    )


def _encode(value) -> str | None:
    if value is None:
        return None
    return json.dumps(value)


def _story_columns(story: Story) -> dict:
    """Column values of the editable fields, in their stored form."""
    return _to_columns({k: getattr(story, k) for k in EDITABLE_FIELDS})


def _to_columns(fields: dict) -> dict:
    cols = {}
    for key, value in fields.items():
        if value is None:
            cols[key] = None
        elif key == "status":
            cols[key] = StoryStatus(value).value
        elif key == "priority":
            cols[key] = Priority(value).value
        elif key == "labels":
            cols[key] = json.dumps(list(value))
        elif key == "due_date":
            cols[key] = value.isoformat() if isinstance(value, datetime) else str(value)
        else:
            cols[key] = value
    return cols


def _from_column(key: str, value):
    if key == "labels" and value is not None:
        return json.loads(value)
    return value


def _row_to_story(row: sqlite3.Row, assignee_ids: list[str] | None = None) -> Story:
    return Story(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"],
        slug=row["slug"],
        status=StoryStatus(row["status"]),
        priority=Priority(row["priority"]),
        position=row["position"],
        points=row["points"],
        labels=json.loads(row["labels"] or "[]"),
        sprint_id=row["sprint_id"],
        due_date=_parse_dt(row["due_date"]),
        archived=bool(row["archived"]),
        assignee_ids=assignee_ids or [],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
