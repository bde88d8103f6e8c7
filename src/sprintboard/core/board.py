"""Board ordering: lanes per status, drag planning and atomic batch reorders.

A reorder batch is the complete new (status, position) of every story whose
placement changed. The batch is validated against the project's active stories
and written in one transaction; stories outside the batch are never renumbered.
"""

import logging
import sqlite3
from collections import Counter
from dataclasses import dataclass

from sprintboard.core.errors import (
    InvalidInputError,
    MismatchError,
    ProjectNotFoundError,
    StorageError,
    StoryNotFoundError,
)
from sprintboard.core.stories import list_stories
from sprintboard.db.engine import is_busy, transaction
from sprintboard.db.models import Story, StoryStatus

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's bound-parameter limit.
_CHUNK = 500


@dataclass(frozen=True)
class ReorderItem:
    story_id: str
    status: StoryStatus
    position: int


@dataclass
class ReorderResult:
    project_id: str
    submitted: int
    updated: int


def reorder_stories(
    db: sqlite3.Connection,
    project_id: str,
    items: list[ReorderItem],
) -> ReorderResult:
    """Apply a batch of (story, status, position) placements all-or-nothing.

    Raises MismatchError if any story is repeated, unknown, archived or belongs
    to another project; nothing is written in that case. Rows whose placement
    is already as requested are left untouched.
    A write rejected by the database raises StorageError, also with nothing
    written.
    """
    if not items:
        raise InvalidInputError("At least one story is required")

    ids = [item.story_id for item in items]
    duplicates = sorted(i for i, n in Counter(ids).items() if n > 1)
    if duplicates:
        raise MismatchError("Duplicate stories in reorder batch", duplicates)

    with transaction(db):
        if not db.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,)).fetchone():
            raise ProjectNotFoundError(project_id)

        current = _load_active(db, project_id, ids)
        missing = [i for i in ids if i not in current]
        if missing:
            logger.warning("Rejected reorder in project %s: %d unknown stories", project_id, len(missing))
            raise MismatchError("Story mismatch", missing)

        changes = [
            (StoryStatus(item.status).value, item.position, item.story_id, project_id)
            for item in items
            if current[item.story_id] != (StoryStatus(item.status).value, item.position)
        ]
        if changes:
            try:
                db.executemany(
                    """UPDATE stories SET status = ?, position = ?,
                           updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now')
                       WHERE id = ? AND project_id = ?""",
                    changes,
                )
            except sqlite3.DatabaseError as e:
                if isinstance(e, sqlite3.OperationalError) and is_busy(e):
                    raise
                logger.error("Reorder of project %s failed, batch rolled back: %s", project_id, e)
                raise StorageError(f"Could not apply reorder batch: {e}") from e

    logger.info("Reordered project %s: %d submitted, %d changed", project_id, len(items), len(changes))
    return ReorderResult(project_id=project_id, submitted=len(items), updated=len(changes))


def board_columns(
    db: sqlite3.Connection,
    project_id: str,
    sprint_id: str | None = None,
) -> dict[StoryStatus, list[Story]]:
    """Active stories grouped into lanes, each in display order."""
    if not db.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,)).fetchone():
        raise ProjectNotFoundError(project_id)
    stories, _ = list_stories(db, project_id, sprint_id=sprint_id, limit=None)
    columns: dict[StoryStatus, list[Story]] = {status: [] for status in StoryStatus}
    for story in stories:
        columns[story.status].append(story)
    return columns


def plan_move(
    columns: dict[StoryStatus, list[str]],
    story_id: str,
    to_status: StoryStatus,
    to_index: int | None = None,
) -> list[ReorderItem]:
    """Apply one drag to a lane snapshot and return the full renumbered batch.

    ``columns`` maps each status to story ids in display order and is not
    modified. The story is taken out of its lane and inserted into
    ``to_status`` at ``to_index`` (end of lane when None or past the end).
    Every lane is renumbered from 0, so the result is a valid batch for
    ``reorder_stories``.
    """
    to_status = StoryStatus(to_status)
    lanes = {StoryStatus(status): list(ids) for status, ids in columns.items()}
    for status in StoryStatus:
        lanes.setdefault(status, [])

    source = next((s for s, ids in lanes.items() if story_id in ids), None)
    if source is None:
        raise StoryNotFoundError(story_id)

    lanes[source].remove(story_id)
    target = lanes[to_status]
    if to_index is None or to_index > len(target):
        to_index = len(target)
    if to_index < 0:
        raise InvalidInputError("Target index must not be negative")
    target.insert(to_index, story_id)

    return [
        ReorderItem(story_id=sid, status=status, position=index)
        for status in StoryStatus
        for index, sid in enumerate(lanes[status])
    ]


def move_story(
    db: sqlite3.Connection,
    project_id: str,
    story_id: str,
    to_status: StoryStatus,
    to_index: int | None = None,
) -> ReorderResult:
    """Move one story on the project board, renumbering every lane.

    The snapshot, plan and write share one transaction, so a concurrent
    reorder cannot slip in between reading the lanes and applying the move.
    """
    with transaction(db):
        columns = board_columns(db, project_id)
        snapshot = {status: [s.id for s in stories] for status, stories in columns.items()}
        items = plan_move(snapshot, story_id, to_status, to_index)
        return reorder_stories(db, project_id, items)


def _load_active(
    db: sqlite3.Connection,
    project_id: str,
    ids: list[str],
) -> dict[str, tuple[str, int]]:
    found = {}
    for start in range(0, len(ids), _CHUNK):
        chunk = ids[start:start + _CHUNK]
        placeholders = ", ".join("?" for _ in chunk)
        rows = db.execute(
            f"""SELECT id, status, position FROM stories
                WHERE project_id = ? AND archived = 0 AND id IN ({placeholders})""",
            [project_id, *chunk],
        ).fetchall()
        found.update({r["id"]: (r["status"], r["position"]) for r in rows})
    return found
