"""Story comments."""

import logging
import sqlite3
import uuid
from datetime import datetime

from sprintboard.core.errors import InvalidInputError, StoryNotFoundError
from sprintboard.db.models import Comment

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 10000


def add_comment(
    db: sqlite3.Connection,
    story_id: str,
    user_id: str,
    content: str,
    project_id: str | None = None,
) -> Comment:
    """Post a comment on a story, optionally requiring it to belong to ``project_id``."""
    content = content.strip()
    if not content:
        raise InvalidInputError("Comment is required")
    if len(content) > MAX_COMMENT_LENGTH:
        raise InvalidInputError(f"Comment must be less than {MAX_COMMENT_LENGTH} characters")

    story = db.execute("SELECT project_id FROM stories WHERE id = ?", (story_id,)).fetchone()
    if not story or (project_id is not None and story["project_id"] != project_id):
        raise StoryNotFoundError(story_id)

    comment_id = uuid.uuid4().hex
    db.execute(
        "INSERT INTO comments (id, story_id, user_id, content) VALUES (?, ?, ?, ?)",
        (comment_id, story_id, user_id, content),
    )
    db.commit()
    logger.info("Comment %s on story %s by %s", comment_id, story_id, user_id)
    return get_comment(db, comment_id)


def get_comment(db: sqlite3.Connection, comment_id: str) -> Comment | None:
    row = db.execute("SELECT * FROM comments WHERE id = ?", (comment_id,)).fetchone()
    if not row:
        return None
    return _row_to_comment(row)


def list_comments(db: sqlite3.Connection, story_id: str) -> list[Comment]:
    """Comments on a story, newest first."""
    rows = db.execute(
        "SELECT * FROM comments WHERE story_id = ? ORDER BY created_at DESC, rowid DESC",
        (story_id,),
    ).fetchall()
    return [_row_to_comment(r) for r in rows]


def _row_to_comment(row: sqlite3.Row) -> Comment:
    return Comment(
        id=row["id"],
        story_id=row["story_id"],
        user_id=row["user_id"],
        content=row["content"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
