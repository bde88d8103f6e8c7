"""Sequential story slugs (``TK-1``, ``TK-2``, ...) backed by a per-project counter.

``projects.story_counter`` is only ever changed here. Live allocation increments
it and writes the slug in one transaction; the backfill for stories that predate
slugging walks them in creation order and stores the final counter once.
"""

import logging
import re
import sqlite3
from dataclasses import dataclass, field

from sprintboard.core.errors import (
    ConflictError,
    ProjectNotFoundError,
    SlugAlreadyAssignedError,
    StoryNotFoundError,
)
from sprintboard.db.engine import transaction

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "TK"

_PREFIX_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]*$")


@dataclass
class SlugAllocation:
    slug: str
    counter: int


@dataclass
class BackfillResult:
    project_id: str
    assigned_count: int
    final_counter: int
    assigned: list[tuple[str, str]] = field(default_factory=list)


@dataclass
class SlugCoverage:
    total_stories: int
    stories_with_slugs: int
    archived_stories: int
    projects_needing_backfill: list[str] = field(default_factory=list)

    @property
    def percent(self) -> float:
        if not self.total_stories:
            return 100.0
        return round(self.stories_with_slugs / self.total_stories * 100, 1)

    @property
    def complete(self) -> bool:
        return self.stories_with_slugs == self.total_stories


def check_prefix(prefix: str) -> str:
    if not _PREFIX_RE.match(prefix) or not prefix.isascii():
        raise ValueError(f"Invalid slug prefix: {prefix!r}")
    return prefix


def format_story_slug(number: int, prefix: str = DEFAULT_PREFIX) -> str:
    """Format a counter value as a slug, e.g. ``format_story_slug(42) == "TK-42"``."""
    if number < 1:
        raise ValueError(f"Slug numbers start at 1, got {number}")
    return f"{check_prefix(prefix)}-{number}"


def parse_story_slug(slug: str, prefix: str = DEFAULT_PREFIX) -> int | None:
    """Extract the number from a slug, or None if it is not a well-formed slug."""
    match = re.fullmatch(rf"{re.escape(prefix)}-([1-9][0-9]*)", slug)
    return int(match.group(1)) if match else None


def is_valid_story_slug(slug: str, prefix: str = DEFAULT_PREFIX) -> bool:
    return parse_story_slug(slug, prefix) is not None


def claim_next_slug(
    db: sqlite3.Connection,
    project_id: str,
    prefix: str = DEFAULT_PREFIX,
) -> SlugAllocation:
    """Increment the project's counter and return the slug for the new value.

    Must run inside ``transaction(db)``: the increment and the read of the new
    value happen under the write lock, so two callers never see the same value.
    """
    cur = db.execute(
        """UPDATE projects SET story_counter = story_counter + 1,
               updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now')
           WHERE id = ?""",
        (project_id,),
    )
    if cur.rowcount == 0:
        raise ProjectNotFoundError(project_id)
    counter = db.execute(
        "SELECT story_counter FROM projects WHERE id = ?", (project_id,)
    ).fetchone()["story_counter"]
    return SlugAllocation(slug=format_story_slug(counter, prefix), counter=counter)


def allocate_slug(
    db: sqlite3.Connection,
    project_id: str,
    story_id: str,
    prefix: str = DEFAULT_PREFIX,
) -> SlugAllocation:
    """Assign the next slug of ``project_id`` to a slug-less story.

    Raises SlugAlreadyAssignedError (nothing changes) when the story already
    has a slug, ProjectNotFoundError / StoryNotFoundError for unknown ids, and
    ConflictError when the atomic step could not be applied.
    """
    try:
        with transaction(db):
            if not db.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,)).fetchone():
                raise ProjectNotFoundError(project_id)

            story = db.execute(
                "SELECT id, project_id, slug FROM stories WHERE id = ?", (story_id,)
            ).fetchone()
            if not story or story["project_id"] != project_id:
                raise StoryNotFoundError(story_id)
            if story["slug"] is not None:
                raise SlugAlreadyAssignedError(story_id, story["slug"])

            allocation = claim_next_slug(db, project_id, prefix)
            cur = db.execute(
                "UPDATE stories SET slug = ? WHERE id = ? AND slug IS NULL",
                (allocation.slug, story_id),
            )
            if cur.rowcount != 1:
                raise ConflictError(f"Story {story_id} changed during slug allocation")
    except sqlite3.IntegrityError as e:
        logger.warning("Slug collision in project %s: %s", project_id, e)
        raise ConflictError(f"Slug collision in project {project_id}") from e

    logger.info("Assigned %s to story %s (project %s)", allocation.slug, story_id, project_id)
    return allocation


def backfill_slugs(
    db: sqlite3.Connection,
    project_id: str,
    prefix: str = DEFAULT_PREFIX,
) -> BackfillResult:
    """Give every slug-less story of a project a slug, oldest first.

    Numbering continues from the project's counter (or from the highest
    existing slug number if that is larger). The counter is written once, after
    the batch. Running it again on a fully slugged project assigns nothing.
    """
    with transaction(db):
        project = db.execute(
            "SELECT story_counter FROM projects WHERE id = ?", (project_id,)
        ).fetchone()
        if not project:
            raise ProjectNotFoundError(project_id)

        stories = db.execute(
            """SELECT id, title FROM stories WHERE project_id = ? AND slug IS NULL
               ORDER BY created_at ASC, id ASC""",
            (project_id,),
        ).fetchall()
        if not stories:
            return BackfillResult(project_id, 0, project["story_counter"])

        counter = max(project["story_counter"], _highest_issued(db, project_id, prefix))
        if counter != project["story_counter"]:
            logger.warning(
                "Project %s counter %d is behind its highest slug %d",
                project_id, project["story_counter"], counter,
            )

        assigned = []
        for story in stories:
            counter += 1
            slug = format_story_slug(counter, prefix)
            db.execute("UPDATE stories SET slug = ? WHERE id = ?", (slug, story["id"]))
            assigned.append((story["id"], slug))

        db.execute(
            """UPDATE projects SET story_counter = ?,
                   updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now')
               WHERE id = ?""",
            (counter, project_id),
        )

    logger.info("Backfilled %d slugs in project %s, counter now %d", len(assigned), project_id, counter)
    return BackfillResult(project_id, len(assigned), counter, assigned)


def backfill_all(db: sqlite3.Connection, prefix: str = DEFAULT_PREFIX) -> list[BackfillResult]:
    """Run the backfill over every project, one transaction per project."""
    project_ids = [r["id"] for r in db.execute("SELECT id FROM projects ORDER BY created_at").fetchall()]
    return [backfill_slugs(db, pid, prefix) for pid in project_ids]


def slug_coverage(db: sqlite3.Connection) -> SlugCoverage:
    """Summarize how many stories carry slugs and which projects need a backfill."""
    row = db.execute(
        """SELECT COUNT(*) AS total,
                  COUNT(slug) AS with_slugs,
                  COALESCE(SUM(archived), 0) AS archived
           FROM stories"""
    ).fetchone()
    needing = db.execute(
        """SELECT DISTINCT p.id FROM projects p JOIN stories s ON s.project_id = p.id
           WHERE s.slug IS NULL OR p.story_counter = 0
           ORDER BY p.id"""
    ).fetchall()
    return SlugCoverage(
        total_stories=row["total"],
        stories_with_slugs=row["with_slugs"],
        archived_stories=row["archived"],
        projects_needing_backfill=[r["id"] for r in needing],
    )


def _highest_issued(db: sqlite3.Connection, project_id: str, prefix: str) -> int:
    rows = db.execute(
        "SELECT slug FROM stories WHERE project_id = ? AND slug IS NOT NULL", (project_id,)
    ).fetchall()
    numbers = [n for r in rows if (n := parse_story_slug(r["slug"], prefix)) is not None]
    return max(numbers, default=0)
