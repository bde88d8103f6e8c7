"""MCP server exposing story, board and slug tools."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP
from pydantic import ValidationError

from sprintboard.config import Config, get_config
from sprintboard.core import board as board_mod
from sprintboard.core import slugs as slugs_mod
from sprintboard.core import stories as stories_mod
from sprintboard.core.errors import MismatchError, SprintboardError
from sprintboard.db.engine import init_db
from sprintboard.db.models import StoryStatus
from sprintboard.log import setup_logging
from sprintboard.schemas import ReorderRequest, StoryCreate


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    setup_logging(config.log_level)
    db = init_db(config.db_path, config.db_timeout)
    try:
        yield AppContext(db=db, config=config)
    finally:
        db.close()


mcp = FastMCP("sprintboard", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Story Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def create_story(
    ctx: Context,
    project: str,
    title: str,
    description: str | None = None,
    priority: str = "MEDIUM",
    points: int | None = None,
    labels: list[str] | None = None,
    assignee_ids: list[str] | None = None,
) -> dict:
    """Create a story. It receives the project's next slug (e.g. TK-7) and goes to the end of the board."""
    app = _ctx(ctx)
    try:
        data = StoryCreate(
            title=title, description=description, priority=priority,
            points=points, labels=labels or [], assignee_ids=assignee_ids or [],
        )
        story = stories_mod.create_story(
            app.db, project, prefix=app.config.slug_prefix, actor="mcp", **data.model_dump()
        )
    except ValidationError as e:
        return {"error": "Validation error", "details": e.errors(include_url=False, include_context=False)}
    except SprintboardError as e:
        return {"error": str(e)}
    return _story_to_dict(story)


@mcp.tool()
def list_stories(
    ctx: Context,
    project: str,
    status: str | None = None,
    archived: bool = False,
    search: str | None = None,
    assignee: str | None = None,
    limit: int = 50,
) -> dict:
    """List stories of a project in board order. Status: TODO, IN_PROGRESS or DONE."""
    app = _ctx(ctx)
    try:
        stories, total = stories_mod.list_stories(
            app.db, project, status=status, archived=archived, search=search,
            assignee_id=assignee, limit=limit,
        )
    except ValueError as e:
        return {"error": str(e)}
    return {"stories": [_story_to_dict(s) for s in stories], "total": total}


@mcp.tool()
def get_story(ctx: Context, story_ref: str, project: str | None = None) -> dict:
    """Get a story by ID, or by slug (e.g. TK-12) when the project is given."""
    app = _ctx(ctx)
    story = stories_mod.get_story(app.db, story_ref, project)
    if not story and project:
        story = stories_mod.get_story_by_slug(app.db, project, story_ref)
    if not story:
        return {"error": f"Story not found: {story_ref}"}
    return _story_to_dict(story)


# ── Board Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def reorder_stories(ctx: Context, project: str, items: list[dict]) -> dict:
    """Apply a reorder batch atomically.

    Each item is {"id": story id, "status": TODO|IN_PROGRESS|DONE, "position": int >= 0}.
    If any story is unknown, archived, repeated or from another project,
    nothing is changed and the offending ids are returned.
    """
    app = _ctx(ctx)
    try:
        request = ReorderRequest.model_validate({"items": items})
        result = board_mod.reorder_stories(app.db, project, request.to_items())
    except ValidationError as e:
        return {"error": "Validation error", "details": e.errors(include_url=False, include_context=False)}
    except MismatchError as e:
        return {"error": str(e), "story_ids": e.story_ids}
    except SprintboardError as e:
        return {"error": str(e)}
    return {"submitted": result.submitted, "updated": result.updated}


@mcp.tool()
def move_story(
    ctx: Context,
    project: str,
    story_id: str,
    status: str,
    index: int | None = None,
) -> dict:
    """Move a story into a lane at an index (end of lane if omitted); lanes are renumbered."""
    app = _ctx(ctx)
    try:
        result = board_mod.move_story(app.db, project, story_id, StoryStatus(status), index)
    except (SprintboardError, ValueError) as e:
        return {"error": str(e)}
    return {"submitted": result.submitted, "updated": result.updated}


# ── Slug Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def backfill_slugs(ctx: Context, project: str | None = None) -> dict:
    """Assign slugs to stories that have none, oldest first. All projects when none is given."""
    app = _ctx(ctx)
    prefix = app.config.slug_prefix
    try:
        if project:
            results = [slugs_mod.backfill_slugs(app.db, project, prefix)]
        else:
            results = slugs_mod.backfill_all(app.db, prefix)
    except SprintboardError as e:
        return {"error": str(e)}
    return {
        "projects": [
            {"project": r.project_id, "assigned": r.assigned_count, "counter": r.final_counter}
            for r in results
        ],
        "assigned": sum(r.assigned_count for r in results),
    }


@mcp.tool()
def slug_coverage(ctx: Context) -> dict:
    """Report how many stories carry slugs and which projects still need a backfill."""
    coverage = slugs_mod.slug_coverage(_ctx(ctx).db)
    return {
        "total_stories": coverage.total_stories,
        "stories_with_slugs": coverage.stories_with_slugs,
        "archived_stories": coverage.archived_stories,
        "percent": coverage.percent,
        "complete": coverage.complete,
        "projects_needing_backfill": coverage.projects_needing_backfill,
    }


# ── Helpers ───────────────────────────────────────────────────────────────────


def _story_to_dict(story) -> dict:
    d = {
        "id": story.id,
        "slug": story.slug,
        "title": story.title,
        "status": story.status.value,
        "priority": story.priority.value,
        "position": story.position,
        "project": story.project_id,
        "description": story.description,
    }
    if story.points is not None:
        d["points"] = story.points
    if story.labels:
        d["labels"] = story.labels
    if story.sprint_id:
        d["sprint_id"] = story.sprint_id
    if story.assignee_ids:
        d["assignee_ids"] = story.assignee_ids
    if story.archived:
        d["archived"] = True
    return d
