"""CLI entry point for sprintboard."""

import json
import sys
from datetime import datetime

import click
from pydantic import ValidationError

from sprintboard.config import get_config
from sprintboard.core import board as board_mod
from sprintboard.core import comments as comments_mod
from sprintboard.core import organizations as orgs_mod
from sprintboard.core import projects as projects_mod
from sprintboard.core import slugs as slugs_mod
from sprintboard.core import sprints as sprints_mod
from sprintboard.core import stories as stories_mod
from sprintboard.core.errors import SlugAlreadyAssignedError, SprintboardError
from sprintboard.db.engine import get_db
from sprintboard.db.models import MemberStatus, Role, StoryStatus
from sprintboard.log import setup_logging
from sprintboard.schemas import (
    CommentCreate,
    MemberInvite,
    OrganizationCreate,
    ReorderRequest,
    SprintCreate,
    StoryCreate,
    StoryUpdate,
)

ROLES = [r.value for r in Role]


def _get_db():
    config = get_config()
    return get_db(config.db_path, config.db_timeout)


def _fail(message: str):
    click.echo(message, err=True)
    sys.exit(1)


@click.group()
def main():
    """sb - Sprintboard CLI"""
    setup_logging(get_config().log_level)


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("project_name")
@click.option("--id", "project_id", default=None, help="Project ID (defaults to a slug of the name)")
@click.option("--description", "-d", default=None, help="Project description")
@click.option("--org", "org_id", default=None, help="Organization ID")
def init_project(project_name, project_id, description, org_id):
    """Initialize a new project."""
    project_id = project_id or projects_mod.slugify(project_name)
    if not project_id:
        _fail("Project name must contain letters or digits")

    with _get_db() as db:
        if projects_mod.get_project(db, project_id):
            _fail(f"Project already exists: {project_id}")
        if org_id and not orgs_mod.get_organization(db, org_id):
            _fail(f"Organization not found: {org_id}")
        project = projects_mod.create_project(
            db, project_id, project_name, org_id=org_id, description=description
        )
        click.echo(f"Project created: {project.id} ({project.name})")


@main.group("project")
def project_group():
    """Manage projects."""
    pass


@project_group.command("list")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def project_list(json_output):
    """List projects."""
    with _get_db() as db:
        projects = projects_mod.list_projects(db)

        if json_output:
            click.echo(json.dumps([_project_dict(p) for p in projects], indent=2))
            return

        if not projects:
            click.echo("No projects found.")
            return

        for p in projects:
            click.echo(f"  {p.id}: {p.name} ({p.story_counter} slugs issued)")


@project_group.command("show")
@click.argument("project_id")
def project_show(project_id):
    """Show project details."""
    with _get_db() as db:
        project = projects_mod.get_project(db, project_id)
        if not project:
            _fail(f"Project not found: {project_id}")

        _, active = stories_mod.list_stories(db, project_id, limit=0)
        _, archived = stories_mod.list_stories(db, project_id, archived=True, limit=0)
        click.echo(f"Project: {project.id}")
        click.echo(f"  Name: {project.name}")
        if project.description:
            click.echo(f"  Description: {project.description}")
        click.echo(f"  Story counter: {project.story_counter}")
        click.echo(f"  Stories: {active} active, {archived} archived")


@project_group.group("member")
def project_member_group():
    """Manage project members."""
    pass


@project_member_group.command("add")
@click.argument("project_id")
@click.argument("user_id")
@click.option("--role", default="MEMBER", type=click.Choice(ROLES))
def project_member_add(project_id, user_id, role):
    """Add a user to a project."""
    with _get_db() as db:
        try:
            member = projects_mod.add_member(db, project_id, user_id, Role(role))
        except (SprintboardError, ValueError) as e:
            _fail(str(e))
        click.echo(f"Added {member.user_id} to {project_id} as {member.role.value}")


@project_member_group.command("list")
@click.argument("project_id")
def project_member_list(project_id):
    """List project members."""
    with _get_db() as db:
        if not projects_mod.get_project(db, project_id):
            _fail(f"Project not found: {project_id}")
        members = projects_mod.list_members(db, project_id)
        if not members:
            click.echo("No members.")
            return
        for m in members:
            click.echo(f"  {m.user_id} [{m.role.value}]")


@project_member_group.command("role")
@click.argument("project_id")
@click.argument("user_id")
@click.argument("role", type=click.Choice(ROLES))
def project_member_role(project_id, user_id, role):
    """Change the role of a project member."""
    with _get_db() as db:
        try:
            member = projects_mod.update_member_role(db, project_id, user_id, Role(role))
        except SprintboardError as e:
            _fail(str(e))
        click.echo(f"{member.user_id} is now {member.role.value} in {project_id}")


@project_member_group.command("remove")
@click.argument("project_id")
@click.argument("user_id")
def project_member_remove(project_id, user_id):
    """Remove a user from a project."""
    with _get_db() as db:
        if not projects_mod.remove_member(db, project_id, user_id):
            _fail(f"{user_id} is not a member of {project_id}")
        click.echo(f"Removed {user_id} from {project_id}")


# ── Organization Commands ─────────────────────────────────────────────────────


@main.group("org")
def org_group():
    """Manage organizations and invitations."""
    pass


@org_group.command("create")
@click.argument("name")
@click.option("--owner", required=True, help="Owner user ID")
@click.option("--slug", default=None, help="URL slug (defaults to a slug of the name)")
def org_create(name, owner, slug):
    """Create an organization."""
    try:
        data = OrganizationCreate(name=name, slug=slug)
    except ValidationError as e:
        _fail(_validation_message(e))

    with _get_db() as db:
        try:
            org = orgs_mod.create_organization(db, data.name, owner, data.slug)
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Organization created: {org.id} ({org.slug})")


@org_group.command("list")
@click.option("--user", "user_id", default=None, help="Only organizations this user owns or joined")
def org_list(user_id):
    """List organizations."""
    with _get_db() as db:
        orgs = orgs_mod.list_organizations(db, user_id)
        if not orgs:
            click.echo("No organizations found.")
            return
        for o in orgs:
            click.echo(f"  {o.id}: {o.name} ({o.slug}, owner {o.owner_id})")


@org_group.command("invite")
@click.argument("org_id")
@click.argument("user_id")
@click.option("--role", default="MEMBER", type=click.Choice(["ADMIN", "MEMBER", "VIEWER"]))
@click.option("--accepted", is_flag=True, help="Add directly instead of sending an invitation")
def org_invite(org_id, user_id, role, accepted):
    """Invite a user into an organization."""
    try:
        data = MemberInvite(user_id=user_id, role=role)
    except ValidationError as e:
        _fail(_validation_message(e))

    status = MemberStatus.ACCEPTED if accepted else MemberStatus.PENDING
    with _get_db() as db:
        try:
            member = orgs_mod.invite_member(db, org_id, data.user_id, data.role, status)
        except (SprintboardError, ValueError) as e:
            _fail(str(e))
        click.echo(f"{member.user_id} is {member.status.value} in {org_id} as {member.role.value}")


@org_group.command("respond")
@click.argument("org_id")
@click.argument("user_id")
@click.option("--reject", is_flag=True, help="Reject instead of accepting")
def org_respond(org_id, user_id, reject):
    """Answer a pending invitation on behalf of USER_ID."""
    with _get_db() as db:
        member = orgs_mod.get_member(db, org_id, user_id)
        if not member or member.status != MemberStatus.PENDING:
            _fail(f"No pending invitation for {user_id} in {org_id}")
        member = orgs_mod.respond_to_invite(db, org_id, user_id, not reject)
        click.echo(f"Invitation {member.status.value.lower()}")


@org_group.command("members")
@click.argument("org_id")
@click.option("--status", default=None, type=click.Choice([s.value for s in MemberStatus]))
def org_members(org_id, status):
    """List organization members and invitations."""
    with _get_db() as db:
        org = orgs_mod.get_organization(db, org_id)
        if not org:
            _fail(f"Organization not found: {org_id}")
        click.echo(f"  {org.owner_id} [OWNER]")
        for m in orgs_mod.list_members(db, org_id, MemberStatus(status) if status else None):
            click.echo(f"  {m.user_id} [{m.role.value}] {m.status.value}")


# ── Story Commands ────────────────────────────────────────────────────────────


@main.group("story")
def story_group():
    """Manage stories."""
    pass


@story_group.command("add")
@click.argument("title")
@click.option("--project", required=True, help="Project ID")
@click.option("--description", "-d", default=None, help="Story description")
@click.option("--priority", "-p", default="MEDIUM", type=click.Choice(["LOW", "MEDIUM", "HIGH"]))
@click.option("--points", default=None, type=int, help="Story points")
@click.option("--label", "labels", multiple=True, help="Label (repeatable)")
@click.option("--sprint", default=None, help="Sprint ID")
@click.option("--assignee", "assignees", multiple=True, help="Assignee user ID (repeatable)")
def story_add(title, project, description, priority, points, labels, sprint, assignees):
    """Create a new story."""
    try:
        data = StoryCreate(
            title=title,
            description=description,
            priority=priority,
            points=points,
            labels=list(labels),
            sprint_id=sprint,
            assignee_ids=list(assignees),
        )
    except ValidationError as e:
        _fail(_validation_message(e))

    with _get_db() as db:
        try:
            story = stories_mod.create_story(
                db, project, prefix=get_config().slug_prefix, actor="cli", **data.model_dump()
            )
        except SprintboardError as e:
            _fail(str(e))
        click.echo(f"Created story: {story.slug}")
        click.echo(f"  ID: {story.id}")
        click.echo(f"  Title: {story.title}")
        click.echo(f"  Status: {story.status.value}")


@story_group.command("list")
@click.option("--project", required=True, help="Project ID")
@click.option("--status", default=None, type=click.Choice([s.value for s in StoryStatus]))
@click.option("--archived", is_flag=True, help="List archived stories instead")
@click.option("--search", default=None, help="Match title or description")
@click.option("--assignee", default=None, help="Only stories assigned to this user")
@click.option("--limit", default=50, type=int)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def story_list(project, status, archived, search, assignee, limit, json_output):
    """List stories in board order."""
    with _get_db() as db:
        stories, total = stories_mod.list_stories(
            db, project, status=status, archived=archived, search=search,
            assignee_id=assignee, limit=limit,
        )

        if json_output:
            click.echo(json.dumps([_story_dict(s) for s in stories], indent=2))
            return

        if not stories:
            click.echo("No stories found.")
            return

        for s in stories:
            slug = s.slug or "(no slug)"
            click.echo(f"  {slug} [{s.status.value}] #{s.position} {s.title}")
        if total > len(stories):
            click.echo(f"  ... {total - len(stories)} more")


@story_group.command("show")
@click.argument("ref")
@click.option("--project", default=None, help="Project ID (required when REF is a slug)")
def story_show(ref, project):
    """Show story details. REF is a story ID or, with --project, a slug."""
    with _get_db() as db:
        story = stories_mod.get_story(db, ref)
        if not story and project:
            story = stories_mod.get_story_by_slug(db, project, ref)
        if not story:
            _fail(f"Story not found: {ref}")

        click.echo(f"Story: {story.slug or story.id}")
        click.echo(f"  ID: {story.id}")
        click.echo(f"  Title: {story.title}")
        click.echo(f"  Status: {story.status.value}")
        click.echo(f"  Priority: {story.priority.value}")
        click.echo(f"  Position: {story.position}")
        click.echo(f"  Project: {story.project_id}")
        if story.description:
            click.echo(f"  Description: {story.description}")
        if story.points is not None:
            click.echo(f"  Points: {story.points}")
        if story.labels:
            click.echo(f"  Labels: {', '.join(story.labels)}")
        if story.sprint_id:
            click.echo(f"  Sprint: {story.sprint_id}")
        if story.assignee_ids:
            click.echo(f"  Assignees: {', '.join(story.assignee_ids)}")
        if story.archived:
            click.echo("  Archived: yes")


@story_group.command("edit")
@click.argument("story_id")
@click.option("--title", default=None)
@click.option("--description", "-d", default=None)
@click.option("--status", default=None, type=click.Choice([s.value for s in StoryStatus]))
@click.option("--priority", "-p", default=None, type=click.Choice(["LOW", "MEDIUM", "HIGH"]))
@click.option("--points", default=None, type=int)
@click.option("--sprint", default=None, help="Sprint ID, or 'null' to unassign")
def story_edit(story_id, title, description, status, priority, points, sprint):
    """Edit fields of a story."""
    given = {
        "title": title,
        "description": description,
        "status": status,
        "priority": priority,
        "points": points,
        "sprint_id": sprint,
    }
    try:
        data = StoryUpdate(**{k: v for k, v in given.items() if v is not None})
    except ValidationError as e:
        _fail(_validation_message(e))

    changes = data.changes()
    if not changes:
        _fail("Nothing to change.")

    with _get_db() as db:
        try:
            story = stories_mod.update_story(db, story_id, actor="cli", **changes)
        except SprintboardError as e:
            _fail(str(e))
        click.echo(f"Updated {story.slug or story.id}: {', '.join(changes)}")


@story_group.command("archive")
@click.argument("story_id")
@click.option("--restore", is_flag=True, help="Unarchive instead")
def story_archive(story_id, restore):
    """Archive (or restore) a story."""
    with _get_db() as db:
        try:
            story = stories_mod.archive_story(db, story_id, not restore, actor="cli")
        except SprintboardError as e:
            _fail(str(e))
        state = "archived" if story.archived else "restored"
        click.echo(f"Story {story.slug or story.id} {state}")


@story_group.command("history")
@click.argument("story_id")
def story_history(story_id):
    """Show the change history of a story."""
    with _get_db() as db:
        if not stories_mod.get_story(db, story_id):
            _fail(f"Story not found: {story_id}")

        history = stories_mod.get_story_history(db, story_id)
        if not history:
            click.echo("No changes recorded.")
            return

        for h in history:
            who = h.changed_by or "unknown"
            click.echo(f"  {h.created_at:%Y-%m-%d %H:%M:%S} {who}: {h.field} {h.old_value} -> {h.new_value}")


@story_group.command("slug")
@click.argument("story_id")
@click.option("--project", required=True, help="Project ID")
def story_slug(story_id, project):
    """Assign the next slug to a story that has none."""
    with _get_db() as db:
        try:
            allocation = slugs_mod.allocate_slug(db, project, story_id, get_config().slug_prefix)
        except SlugAlreadyAssignedError as e:
            click.echo(f"Already assigned: {e.slug}")
            return
        except SprintboardError as e:
            _fail(str(e))
        click.echo(f"Assigned {allocation.slug}")


@story_group.command("assign")
@click.argument("story_id")
@click.argument("user_ids", nargs=-1)
def story_assign(story_id, user_ids):
    """Replace the assignees of a story. Pass no USER_IDS to clear them."""
    try:
        data = StoryUpdate(assignee_ids=list(user_ids))
    except ValidationError as e:
        _fail(_validation_message(e))

    with _get_db() as db:
        try:
            story = stories_mod.update_story(db, story_id, actor="cli", **data.changes())
        except SprintboardError as e:
            _fail(str(e))
        who = ", ".join(story.assignee_ids) or "nobody"
        click.echo(f"{story.slug or story.id} assigned to {who}")


@story_group.command("comment")
@click.argument("story_id")
@click.argument("content")
@click.option("--user", "user_id", required=True, help="Author user ID")
def story_comment(story_id, content, user_id):
    """Comment on a story."""
    try:
        data = CommentCreate(content=content)
    except ValidationError as e:
        _fail(_validation_message(e))

    with _get_db() as db:
        try:
            comment = comments_mod.add_comment(db, story_id, user_id, data.content)
        except SprintboardError as e:
            _fail(str(e))
        click.echo(f"Comment added: {comment.id}")


@story_group.command("comments")
@click.argument("story_id")
def story_comments(story_id):
    """Show the comments on a story, newest first."""
    with _get_db() as db:
        if not stories_mod.get_story(db, story_id):
            _fail(f"Story not found: {story_id}")

        comments = comments_mod.list_comments(db, story_id)
        if not comments:
            click.echo("No comments.")
            return

        for c in comments:
            click.echo(f"  {c.created_at:%Y-%m-%d %H:%M:%S} {c.user_id}: {c.content}")


# ── Board Commands ────────────────────────────────────────────────────────────


@main.group("board")
def board_group():
    """Inspect and reorder the board."""
    pass


@board_group.command("show")
@click.option("--project", required=True, help="Project ID")
@click.option("--sprint", default=None, help="Only stories of this sprint ('null' for none)")
def board_show(project, sprint):
    """Show the board lanes in display order."""
    with _get_db() as db:
        try:
            columns = board_mod.board_columns(db, project, sprint)
        except SprintboardError as e:
            _fail(str(e))

        for status, stories in columns.items():
            click.echo(f"{status.value} ({len(stories)})")
            for s in stories:
                click.echo(f"  {s.position:>3} {s.slug or s.id} {s.title}")


@board_group.command("reorder")
@click.option("--project", required=True, help="Project ID")
@click.argument("items_json")
def board_reorder(project, items_json):
    """Apply a reorder batch.

    ITEMS_JSON is a list of {"id", "status", "position"} objects, or "-" to
    read it from stdin.
    """
    raw = sys.stdin.read() if items_json == "-" else items_json
    try:
        request = ReorderRequest.model_validate({"items": json.loads(raw)})
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON: {e}")
    except ValidationError as e:
        _fail(_validation_message(e))

    with _get_db() as db:
        try:
            result = board_mod.reorder_stories(db, project, request.to_items())
        except SprintboardError as e:
            ids = getattr(e, "story_ids", None)
            _fail(f"{e}: {', '.join(ids)}" if ids else str(e))
        click.echo(f"Reordered {result.submitted} stories ({result.updated} changed)")


@board_group.command("move")
@click.argument("story_id")
@click.option("--project", required=True, help="Project ID")
@click.option("--to", "to_status", required=True, type=click.Choice([s.value for s in StoryStatus]))
@click.option("--index", default=None, type=click.IntRange(min=0), help="Target index (default: end)")
def board_move(story_id, project, to_status, index):
    """Move a story to a lane and index."""
    with _get_db() as db:
        try:
            result = board_mod.move_story(db, project, story_id, StoryStatus(to_status), index)
        except SprintboardError as e:
            _fail(str(e))
        click.echo(f"Moved {story_id} to {to_status} ({result.updated} stories renumbered)")


# ── Slug Commands ─────────────────────────────────────────────────────────────


@main.group("slugs")
def slugs_group():
    """Slug maintenance."""
    pass


@slugs_group.command("backfill")
@click.option("--project", default=None, help="Only this project (default: all)")
@click.option("--dry-run", is_flag=True, help="Only report what needs a backfill")
def slugs_backfill(project, dry_run):
    """Assign slugs to stories created before slugs existed."""
    prefix = get_config().slug_prefix
    with _get_db() as db:
        if dry_run:
            coverage = slugs_mod.slug_coverage(db)
            missing = coverage.total_stories - coverage.stories_with_slugs
            click.echo(f"{missing} stories without a slug")
            for pid in coverage.projects_needing_backfill:
                click.echo(f"  {pid}")
            return

        try:
            if project:
                results = [slugs_mod.backfill_slugs(db, project, prefix)]
            else:
                results = slugs_mod.backfill_all(db, prefix)
        except SprintboardError as e:
            _fail(str(e))

        for r in results:
            click.echo(f"  {r.project_id}: {r.assigned_count} assigned, counter {r.final_counter}")
        click.echo(f"Backfilled {sum(r.assigned_count for r in results)} stories")


@slugs_group.command("check")
def slugs_check():
    """Report slug coverage. Exits 1 when any story lacks a slug."""
    with _get_db() as db:
        coverage = slugs_mod.slug_coverage(db)

    click.echo(f"Total stories: {coverage.total_stories}")
    click.echo(f"Stories with slugs: {coverage.stories_with_slugs} ({coverage.percent}%)")
    click.echo(f"Archived stories: {coverage.archived_stories}")
    if coverage.projects_needing_backfill:
        click.echo(f"Projects needing backfill: {', '.join(coverage.projects_needing_backfill)}")
    if not coverage.complete:
        sys.exit(1)


# ── Sprint Commands ───────────────────────────────────────────────────────────


@main.group("sprint")
def sprint_group():
    """Manage sprints."""
    pass


@sprint_group.command("add")
@click.argument("name")
@click.option("--project", required=True, help="Project ID")
@click.option("--start", required=True, type=click.DateTime(), help="Start date")
@click.option("--end", required=True, type=click.DateTime(), help="End date")
@click.option("--goal", default=None, help="Sprint goal")
def sprint_add(name, project, start, end, goal):
    """Create a sprint."""
    try:
        data = SprintCreate(name=name, start_date=start, end_date=end, goal=goal)
    except ValidationError as e:
        _fail(_validation_message(e))

    with _get_db() as db:
        try:
            sprint = sprints_mod.create_sprint(
                db, project, data.name, data.start_date, data.end_date, data.goal
            )
        except SprintboardError as e:
            _fail(str(e))
        click.echo(f"Created sprint: {sprint.id} ({sprint.name})")


@sprint_group.command("list")
@click.option("--project", required=True, help="Project ID")
def sprint_list(project):
    """List sprints with story counts."""
    with _get_db() as db:
        stats = sprints_mod.list_sprints(db, project)
        if not stats:
            click.echo("No sprints found.")
            return
        for st in stats:
            s = st.sprint
            click.echo(
                f"  {s.id}: {s.name} [{s.status.value}] {_date(s.start_date)} -> {_date(s.end_date)}"
                f" ({st.done_count}/{st.story_count} done)"
            )


# ── Server Commands ───────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the JSON API."""
    from sprintboard.web.app import run_server

    config = get_config()
    click.echo(f"Serving API at http://{host or config.host}:{port or config.port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from sprintboard.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _validation_message(e: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in e.errors()
    )


def _date(dt: datetime | None) -> str:
    return dt.strftime("%Y-%m-%d") if dt else "?"


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "story_counter": p.story_counter,
    }


def _story_dict(s) -> dict:
    return {
        "id": s.id,
        "slug": s.slug,
        "title": s.title,
        "status": s.status.value,
        "priority": s.priority.value,
        "position": s.position,
        "points": s.points,
        "labels": s.labels,
        "sprint_id": s.sprint_id,
        "assignee_ids": s.assignee_ids,
        "archived": s.archived,
    }


if __name__ == "__main__":
    main()
