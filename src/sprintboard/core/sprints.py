"""Sprint operations."""

import sqlite3
import uuid
from datetime import datetime

from sprintboard.core.errors import InvalidInputError, ProjectNotFoundError
from sprintboard.db.models import Sprint, SprintStats, SprintStatus, StoryStatus


def create_sprint(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    start_date: datetime,
    end_date: datetime,
    goal: str | None = None,
) -> Sprint:
    """Create a sprint in PLANNING status."""
    if not db.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,)).fetchone():
        raise ProjectNotFoundError(project_id)
    if end_date <= start_date:
        raise InvalidInputError("End date must be after start date")

    sprint_id = uuid.uuid4().hex
    db.execute(
        """INSERT INTO sprints (id, project_id, name, goal, start_date, end_date)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (sprint_id, project_id, name, goal, start_date.isoformat(), end_date.isoformat()),
    )
    db.commit()
    return get_sprint(db, sprint_id)


def get_sprint(db: sqlite3.Connection, sprint_id: str) -> Sprint | None:
    row = db.execute("SELECT * FROM sprints WHERE id = ?", (sprint_id,)).fetchone()
    if not row:
        return None
    return _row_to_sprint(row)


def list_sprints(
    db: sqlite3.Connection,
    project_id: str,
    status: str | None = None,
) -> list[SprintStats]:
    """List sprints newest first, with per-lane counts of active stories."""
    query = "SELECT * FROM sprints WHERE project_id = ?"
    params: list = [project_id]
    if status:
        query += " AND status = ?"
        params.append(SprintStatus(status).value)
    query += " ORDER BY start_date DESC, created_at DESC"

    result = []
    for row in db.execute(query, params).fetchall():
        counts = {
            r["status"]: r["n"]
            for r in db.execute(
                """SELECT status, COUNT(*) AS n FROM stories
                   WHERE sprint_id = ? AND archived = 0 GROUP BY status""",
                (row["id"],),
            ).fetchall()
        }
        result.append(SprintStats(
            sprint=_row_to_sprint(row),
            story_count=sum(counts.values()),
            todo_count=counts.get(StoryStatus.TODO.value, 0),
            in_progress_count=counts.get(StoryStatus.IN_PROGRESS.value, 0),
            done_count=counts.get(StoryStatus.DONE.value, 0),
        ))
    return result


def update_sprint(
    db: sqlite3.Connection,
    sprint_id: str,
    **kwargs,
) -> Sprint | None:
    """Update sprint fields."""
    sprint = get_sprint(db, sprint_id)
    if not sprint:
        return None

    allowed = {"name", "goal", "status", "start_date", "end_date"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if not updates:
        return sprint

    start = updates.get("start_date", sprint.start_date)
    end = updates.get("end_date", sprint.end_date)
    if end <= start:
        raise InvalidInputError("End date must be after start date")

    for key in ("start_date", "end_date"):
        if key in updates:
            updates[key] = updates[key].isoformat()
    if "status" in updates:
        updates["status"] = SprintStatus(updates["status"]).value

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    db.execute(
        f"UPDATE sprints SET {set_clause}, updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now') WHERE id = ?",
        list(updates.values()) + [sprint_id],
    )
    db.commit()
    return get_sprint(db, sprint_id)


def delete_sprint(db: sqlite3.Connection, sprint_id: str) -> bool:
    """Delete a sprint. Its stories stay in the project, unassigned."""
    db.execute("UPDATE stories SET sprint_id = NULL WHERE sprint_id = ?", (sprint_id,))
    cur = db.execute("DELETE FROM sprints WHERE id = ?", (sprint_id,))
    db.commit()
    return cur.rowcount > 0


def _row_to_sprint(row: sqlite3.Row) -> Sprint:
    return Sprint(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        goal=row["goal"],
        status=SprintStatus(row["status"]),
        start_date=datetime.fromisoformat(row["start_date"]),
        end_date=datetime.fromisoformat(row["end_date"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
