"""JSON API for organizations, projects, stories, sprints and the board."""

import json
import logging
from contextlib import contextmanager

import uvicorn
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from sprintboard.config import get_config
from sprintboard.core import board as board_mod
from sprintboard.core import comments as comments_mod
from sprintboard.core import organizations as orgs_mod
from sprintboard.core import projects as projects_mod
from sprintboard.core import slugs as slugs_mod
from sprintboard.core import sprints as sprints_mod
from sprintboard.core import stories as stories_mod
from sprintboard.core.errors import (
    ForbiddenError,
    InvalidInputError,
    NotFoundError,
    ProjectNotFoundError,
    SlugAlreadyAssignedError,
    SprintboardError,
    StoryNotFoundError,
)
from sprintboard.core.permissions import (
    Permission,
    has_permission,
    require_permission,
    resolve_org_role,
    resolve_project_role,
)
from sprintboard.db.engine import get_db
from sprintboard.db.models import MemberStatus, Role
from sprintboard.log import setup_logging
from sprintboard.schemas import (
    ArchiveRequest,
    CommentCreate,
    InviteResponse,
    MemberInvite,
    MemberRoleUpdate,
    MoveRequest,
    OrganizationCreate,
    ProjectCreate,
    ProjectMemberAdd,
    ReorderRequest,
    SprintCreate,
    StoryCreate,
    StoryUpdate,
)

logger = logging.getLogger(__name__)


class UnauthorizedError(SprintboardError):
    status_code = 401
    code = "unauthorized"


@contextmanager
def _db():
    config = get_config()
    with get_db(config.db_path, config.db_timeout) as db:
        yield db


def _user_id(request: Request) -> str:
    user_id = request.headers.get("x-user-id")
    if not user_id:
        raise UnauthorizedError("Unauthorized")
    return user_id


def _ok(data=None, message: str | None = None, status_code: int = 200) -> JSONResponse:
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    return JSONResponse(body, status_code=status_code)


# ── Organizations ────────────────────────────────────────────────────────────


def _require_org(db, org_id: str):
    org = orgs_mod.get_organization(db, org_id)
    if not org:
        raise NotFoundError(f"Organization not found: {org_id}")
    return org


async def api_list_organizations(request: Request):
    user_id = _user_id(request)
    with _db() as db:
        orgs = orgs_mod.list_organizations(db, user_id)
        return _ok({"organizations": [_org_dict(o) for o in orgs]})


async def api_create_organization(request: Request):
    user_id = _user_id(request)
    data = OrganizationCreate.model_validate(await request.json())
    with _db() as db:
        org = orgs_mod.create_organization(db, data.name, user_id, data.slug)
        return _ok({"organization": _org_dict(org)}, "Organization created successfully", 201)


async def api_list_org_members(request: Request):
    org_id = request.path_params["org_id"]
    user_id = _user_id(request)
    with _db() as db:
        _require_org(db, org_id)
        if resolve_org_role(db, user_id, org_id) is None:
            raise ForbiddenError("Access denied")
        status = request.query_params.get("status")
        members = orgs_mod.list_members(db, org_id, MemberStatus(status) if status else None)
        return _ok({"members": [_org_member_dict(m) for m in members]})


async def api_invite_org_member(request: Request):
    org_id = request.path_params["org_id"]
    user_id = _user_id(request)
    data = MemberInvite.model_validate(await request.json())
    with _db() as db:
        _require_org(db, org_id)
        if not has_permission(resolve_org_role(db, user_id, org_id), Permission.ORG_MANAGE_MEMBERS):
            raise ForbiddenError("Access denied")
        member = orgs_mod.invite_member(db, org_id, data.user_id, data.role)
        return _ok({"member": _org_member_dict(member)}, "Invitation sent successfully", 201)


async def api_respond_to_invite(request: Request):
    org_id = request.path_params["org_id"]
    user_id = _user_id(request)
    data = InviteResponse.model_validate(await request.json())
    with _db() as db:
        _require_org(db, org_id)
        member = orgs_mod.get_member(db, org_id, user_id)
        if not member or member.status != MemberStatus.PENDING:
            raise NotFoundError("No pending invitation")
        member = orgs_mod.respond_to_invite(db, org_id, user_id, data.accept)
        message = "Invitation accepted" if data.accept else "Invitation rejected"
        return _ok({"member": _org_member_dict(member)}, message)


# ── Projects ─────────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    user_id = _user_id(request)
    with _db() as db:
        projects = [
            p for p in projects_mod.list_projects(db, request.query_params.get("orgId"))
            if resolve_project_role(db, user_id, p.id) is not None
        ]
        return _ok({"projects": [_project_dict(p) for p in projects]})


async def api_create_project(request: Request):
    user_id = _user_id(request)
    data = ProjectCreate.model_validate(await request.json())
    with _db() as db:
        if data.org_id and not has_permission(
            resolve_org_role(db, user_id, data.org_id), Permission.PROJECT_CREATE
        ):
            raise ForbiddenError("Access denied")
        project_id = data.id or projects_mod.slugify(data.name)
        if not project_id:
            raise InvalidInputError("Project name must contain letters or digits")
        if projects_mod.get_project(db, project_id):
            return JSONResponse(
                {"success": False, "error": f"Project already exists: {project_id}"}, status_code=409
            )
        project = projects_mod.create_project(
            db, project_id, data.name, org_id=data.org_id,
            description=data.description, owner_id=user_id,
        )
        return _ok({"project": _project_dict(project)}, "Project created successfully", 201)


async def api_get_project(request: Request):
    project_id = request.path_params["project_id"]
    user_id = _user_id(request)
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.STORY_VIEW)
        return _ok({"project": _project_dict(projects_mod.get_project(db, project_id))})


async def api_list_project_members(request: Request):
    project_id = request.path_params["project_id"]
    user_id = _user_id(request)
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.PROJECT_MANAGE_MEMBERS)
        members = projects_mod.list_members(db, project_id)
        return _ok({"members": [_project_member_dict(m) for m in members]})


async def api_add_project_member(request: Request):
    project_id = request.path_params["project_id"]
    user_id = _user_id(request)
    data = ProjectMemberAdd.model_validate(await request.json())
    with _db() as db:
        role = require_permission(db, user_id, project_id, Permission.PROJECT_MANAGE_MEMBERS)
        _check_grant(role, data.role)
        member = projects_mod.add_member(db, project_id, data.user_id, data.role)
        return _ok({"member": _project_member_dict(member)}, "Member added successfully", 201)


async def api_update_project_member(request: Request):
    project_id = request.path_params["project_id"]
    member_id = request.path_params["user_id"]
    user_id = _user_id(request)
    data = MemberRoleUpdate.model_validate(await request.json())
    with _db() as db:
        role = require_permission(db, user_id, project_id, Permission.PROJECT_MANAGE_MEMBERS)
        _check_grant(role, data.role)
        member = projects_mod.update_member_role(db, project_id, member_id, data.role)
        return _ok({"member": _project_member_dict(member)}, "Member role updated successfully")


async def api_remove_project_member(request: Request):
    project_id = request.path_params["project_id"]
    member_id = request.path_params["user_id"]
    user_id = _user_id(request)
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.PROJECT_MANAGE_MEMBERS)
        if not projects_mod.remove_member(db, project_id, member_id):
            raise NotFoundError(f"{member_id} is not a member of {project_id}")
        return _ok(message="Member removed successfully")


def _check_grant(actor_role: Role, granted: Role):
    """Only an owner can hand out the owner role."""
    if granted == Role.OWNER and actor_role != Role.OWNER:
        raise ForbiddenError("Only an owner can grant the OWNER role")


# ── Stories ──────────────────────────────────────────────────────────────────


async def api_list_stories(request: Request):
    project_id = request.path_params["project_id"]
    user_id = _user_id(request)
    params = request.query_params
    limit = int(params.get("limit", "50"))
    offset = int(params.get("offset", "0"))
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.STORY_VIEW)
        stories, total = stories_mod.list_stories(
            db,
            project_id,
            status=params.get("status"),
            priority=params.get("priority"),
            sprint_id=params.get("sprintId"),
            archived=params.get("archived") == "true",
            search=params.get("search"),
            assignee_id=params.get("assigneeId"),
            limit=limit,
            offset=offset,
        )
        return _ok({
            "stories": [_story_dict(s) for s in stories],
            "total": total,
            "limit": limit,
            "offset": offset,
        })


async def api_create_story(request: Request):
    project_id = request.path_params["project_id"]
    user_id = _user_id(request)
    data = StoryCreate.model_validate(await request.json())
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.STORY_CREATE)
        story = stories_mod.create_story(
            db, project_id, prefix=get_config().slug_prefix, actor=user_id, **data.model_dump()
        )
        return _ok({"story": _story_dict(story)}, "Story created successfully", 201)


async def api_get_story(request: Request):
    project_id = request.path_params["project_id"]
    story_id = request.path_params["story_id"]
    user_id = _user_id(request)
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.STORY_VIEW)
        story = stories_mod.get_story(db, story_id, project_id)
        if not story:
            raise StoryNotFoundError(story_id)
        return _ok({"story": _story_dict(story)})


async def api_get_story_by_slug(request: Request):
    project_id = request.path_params["project_id"]
    slug = request.path_params["slug"]
    user_id = _user_id(request)
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.STORY_VIEW)
        story = stories_mod.get_story_by_slug(db, project_id, slug)
        if not story:
            raise StoryNotFoundError(slug)
        return _ok({"story": _story_dict(story)})


async def api_update_story(request: Request):
    project_id = request.path_params["project_id"]
    story_id = request.path_params["story_id"]
    user_id = _user_id(request)
    data = StoryUpdate.model_validate(await request.json())
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.STORY_EDIT)
        story = stories_mod.update_story(
            db, story_id, actor=user_id, project_id=project_id, **data.changes()
        )
        return _ok({"story": _story_dict(story)}, "Story updated successfully")


async def api_delete_story(request: Request):
    project_id = request.path_params["project_id"]
    story_id = request.path_params["story_id"]
    user_id = _user_id(request)
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.STORY_DELETE)
        if not stories_mod.delete_story(db, story_id, project_id):
            raise StoryNotFoundError(story_id)
        return _ok(message="Story deleted successfully")


async def api_archive_story(request: Request):
    project_id = request.path_params["project_id"]
    story_id = request.path_params["story_id"]
    user_id = _user_id(request)
    data = ArchiveRequest.model_validate(await request.json())
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.STORY_EDIT)
        story = stories_mod.archive_story(
            db, story_id, data.archived, actor=user_id, project_id=project_id
        )
        message = "Story archived successfully" if data.archived else "Story unarchived successfully"
        return _ok({"story": _story_dict(story)}, message)


async def api_story_history(request: Request):
    project_id = request.path_params["project_id"]
    story_id = request.path_params["story_id"]
    user_id = _user_id(request)
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.STORY_VIEW)
        if not stories_mod.get_story(db, story_id, project_id):
            raise StoryNotFoundError(story_id)
        history = stories_mod.get_story_history(db, story_id)
        return _ok({"history": [_history_dict(h) for h in history]})


async def api_allocate_slug(request: Request):
    project_id = request.path_params["project_id"]
    story_id = request.path_params["story_id"]
    user_id = _user_id(request)
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.STORY_EDIT)
        try:
            allocation = slugs_mod.allocate_slug(db, project_id, story_id, get_config().slug_prefix)
        except SlugAlreadyAssignedError as e:
            project = projects_mod.get_project(db, project_id)
            return _ok({"slug": e.slug, "counter": project.story_counter, "alreadyAssigned": True})
        return _ok({"slug": allocation.slug, "counter": allocation.counter, "alreadyAssigned": False})


async def api_list_comments(request: Request):
    project_id = request.path_params["project_id"]
    story_id = request.path_params["story_id"]
    user_id = _user_id(request)
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.STORY_VIEW)
        if not stories_mod.get_story(db, story_id, project_id):
            raise StoryNotFoundError(story_id)
        comments = comments_mod.list_comments(db, story_id)
        return _ok({"comments": [_comment_dict(c) for c in comments]})


async def api_create_comment(request: Request):
    project_id = request.path_params["project_id"]
    story_id = request.path_params["story_id"]
    user_id = _user_id(request)
    data = CommentCreate.model_validate(await request.json())
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.STORY_VIEW)
        comment = comments_mod.add_comment(db, story_id, user_id, data.content, project_id)
        return _ok({"comment": _comment_dict(comment)}, "Comment created successfully", 201)


# ── Board ────────────────────────────────────────────────────────────────────


async def api_board(request: Request):
    project_id = request.path_params["project_id"]
    user_id = _user_id(request)
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.STORY_VIEW)
        columns = board_mod.board_columns(db, project_id, request.query_params.get("sprintId"))
        return _ok({
            "columns": {
                status.value: [_story_dict(s) for s in stories]
                for status, stories in columns.items()
            }
        })


async def api_reorder_stories(request: Request):
    project_id = request.path_params["project_id"]
    user_id = _user_id(request)
    data = ReorderRequest.model_validate(await request.json())
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.BOARD_MANAGE)
        result = board_mod.reorder_stories(db, project_id, data.to_items())
        return _ok({"updated": result.updated}, "Story order updated successfully")


async def api_move_story(request: Request):
    project_id = request.path_params["project_id"]
    user_id = _user_id(request)
    data = MoveRequest.model_validate(await request.json())
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.BOARD_MANAGE)
        result = board_mod.move_story(db, project_id, data.story_id, data.status, data.index)
        return _ok({"updated": result.updated}, "Story moved successfully")


async def api_backfill_slugs(request: Request):
    project_id = request.path_params["project_id"]
    user_id = _user_id(request)
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.PROJECT_EDIT)
        result = slugs_mod.backfill_slugs(db, project_id, get_config().slug_prefix)
        return _ok({"assignedCount": result.assigned_count, "finalCounter": result.final_counter})


# ── Sprints ──────────────────────────────────────────────────────────────────


async def api_list_sprints(request: Request):
    project_id = request.path_params["project_id"]
    user_id = _user_id(request)
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.STORY_VIEW)
        stats = sprints_mod.list_sprints(db, project_id, status=request.query_params.get("status"))
        return _ok({"sprints": [_sprint_stats_dict(s) for s in stats]})


async def api_create_sprint(request: Request):
    project_id = request.path_params["project_id"]
    user_id = _user_id(request)
    data = SprintCreate.model_validate(await request.json())
    with _db() as db:
        require_permission(db, user_id, project_id, Permission.SPRINT_CREATE)
        sprint = sprints_mod.create_sprint(
            db, project_id, data.name, data.start_date, data.end_date, data.goal
        )
        return _ok({"sprint": _sprint_dict(sprint)}, "Sprint created successfully", 201)


# ── Serialization ────────────────────────────────────────────────────────────


def _iso(dt) -> str | None:
    return dt.isoformat() if dt else None


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "orgId": p.org_id,
        "description": p.description,
        "storyCounter": p.story_counter,
        "createdAt": _iso(p.created_at),
    }


def _story_dict(s) -> dict:
    return {
        "id": s.id,
        "projectId": s.project_id,
        "slug": s.slug,
        "title": s.title,
        "description": s.description,
        "status": s.status.value,
        "priority": s.priority.value,
        "position": s.position,
        "points": s.points,
        "labels": s.labels,
        "sprintId": s.sprint_id,
        "dueDate": _iso(s.due_date),
        "archived": s.archived,
        "assigneeIds": s.assignee_ids,
        "createdAt": _iso(s.created_at),
        "updatedAt": _iso(s.updated_at),
    }


def _org_dict(o) -> dict:
    return {
        "id": o.id,
        "name": o.name,
        "slug": o.slug,
        "ownerId": o.owner_id,
        "createdAt": _iso(o.created_at),
    }


def _org_member_dict(m) -> dict:
    return {
        "orgId": m.org_id,
        "userId": m.user_id,
        "role": m.role.value,
        "status": m.status.value,
        "createdAt": _iso(m.created_at),
    }


def _project_member_dict(m) -> dict:
    return {
        "projectId": m.project_id,
        "userId": m.user_id,
        "role": m.role.value,
        "createdAt": _iso(m.created_at),
    }


def _comment_dict(c) -> dict:
    return {
        "id": c.id,
        "storyId": c.story_id,
        "userId": c.user_id,
        "content": c.content,
        "createdAt": _iso(c.created_at),
        "updatedAt": _iso(c.updated_at),
    }


def _history_dict(h) -> dict:
    return {
        "id": h.id,
        "field": h.field,
        "oldValue": json.loads(h.old_value) if h.old_value is not None else None,
        "newValue": json.loads(h.new_value) if h.new_value is not None else None,
        "changedBy": h.changed_by,
        "createdAt": _iso(h.created_at),
    }


def _sprint_dict(s) -> dict:
    return {
        "id": s.id,
        "projectId": s.project_id,
        "name": s.name,
        "goal": s.goal,
        "status": s.status.value,
        "startDate": _iso(s.start_date),
        "endDate": _iso(s.end_date),
    }


def _sprint_stats_dict(stats) -> dict:
    d = _sprint_dict(stats.sprint)
    d.update({
        "storyCount": stats.story_count,
        "todoCount": stats.todo_count,
        "inProgressCount": stats.in_progress_count,
        "doneCount": stats.done_count,
    })
    return d


# ── Error handling ───────────────────────────────────────────────────────────


async def _handle_sprintboard_error(request: Request, exc: SprintboardError):
    body = {"success": False, "error": str(exc), "code": exc.code}
    story_ids = getattr(exc, "story_ids", None)
    if story_ids:
        body["storyIds"] = story_ids
    if isinstance(exc, ProjectNotFoundError):
        body["error"] = "Project not found"
    return JSONResponse(body, status_code=exc.status_code)


async def _handle_validation_error(request: Request, exc: ValidationError):
    return JSONResponse(
        {
            "success": False,
            "error": "Validation error",
            "details": exc.errors(include_url=False, include_context=False, include_input=False),
        },
        status_code=400,
    )


async def _handle_bad_request(request: Request, exc: Exception):
    return JSONResponse({"success": False, "error": f"Invalid request: {exc}"}, status_code=400)


async def _handle_unexpected(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"success": False, "error": "Internal server error"}, status_code=500)


# ── App ──────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    o = "/api/organizations/{org_id}"
    p = "/api/projects/{project_id}"
    routes = [
        Route("/api/organizations", api_list_organizations, methods=["GET"]),
        Route("/api/organizations", api_create_organization, methods=["POST"]),
        Route(f"{o}/members", api_list_org_members, methods=["GET"]),
        Route(f"{o}/members", api_invite_org_member, methods=["POST"]),
        Route(f"{o}/invitation", api_respond_to_invite, methods=["PATCH"]),
        Route("/api/projects", api_list_projects, methods=["GET"]),
        Route("/api/projects", api_create_project, methods=["POST"]),
        Route(p, api_get_project, methods=["GET"]),
        Route(f"{p}/board", api_board, methods=["GET"]),
        Route(f"{p}/board/move", api_move_story, methods=["POST"]),
        Route(f"{p}/members", api_list_project_members, methods=["GET"]),
        Route(f"{p}/members", api_add_project_member, methods=["POST"]),
        Route(f"{p}/members/{{user_id}}", api_update_project_member, methods=["PATCH"]),
        Route(f"{p}/members/{{user_id}}", api_remove_project_member, methods=["DELETE"]),
        Route(f"{p}/slugs/backfill", api_backfill_slugs, methods=["POST"]),
        Route(f"{p}/sprints", api_list_sprints, methods=["GET"]),
        Route(f"{p}/sprints", api_create_sprint, methods=["POST"]),
        Route(f"{p}/stories", api_list_stories, methods=["GET"]),
        Route(f"{p}/stories", api_create_story, methods=["POST"]),
        Route(f"{p}/stories/reorder", api_reorder_stories, methods=["PATCH"]),
        Route(f"{p}/stories/by-slug/{{slug}}", api_get_story_by_slug, methods=["GET"]),
        Route(f"{p}/stories/{{story_id}}", api_get_story, methods=["GET"]),
        Route(f"{p}/stories/{{story_id}}", api_update_story, methods=["PATCH"]),
        Route(f"{p}/stories/{{story_id}}", api_delete_story, methods=["DELETE"]),
        Route(f"{p}/stories/{{story_id}}/archive", api_archive_story, methods=["PATCH"]),
        Route(f"{p}/stories/{{story_id}}/comments", api_list_comments, methods=["GET"]),
        Route(f"{p}/stories/{{story_id}}/comments", api_create_comment, methods=["POST"]),
        Route(f"{p}/stories/{{story_id}}/history", api_story_history, methods=["GET"]),
        Route(f"{p}/stories/{{story_id}}/slug", api_allocate_slug, methods=["POST"]),
    ]
    exception_handlers = {
        SprintboardError: _handle_sprintboard_error,
        ValidationError: _handle_validation_error,
        json.JSONDecodeError: _handle_bad_request,
        ValueError: _handle_bad_request,
        Exception: _handle_unexpected,
    }
    return Starlette(routes=routes, exception_handlers=exception_handlers)


def run_server(host: str | None = None, port: int | None = None):
    config = get_config()
    setup_logging(config.log_level)
    app = create_app()
    uvicorn.run(app, host=host or config.host, port=port or config.port)
