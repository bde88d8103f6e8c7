"""Tests for story management operations."""

import json
import logging
import tempfile
from datetime import datetime
from pathlib import Path

import pytest

from sprintboard.core import projects as projects_mod
from sprintboard.core import sprints as sprints_mod
from sprintboard.core import stories as stories_mod
from sprintboard.core.errors import (
    InvalidInputError,
    ProjectNotFoundError,
    SprintNotFoundError,
    StoryNotFoundError,
)
from sprintboard.db.engine import init_db
from sprintboard.db.models import Priority, StoryStatus


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.create_project(conn, "test", "Test Project")
        yield conn
        conn.close()


@pytest.fixture
def sprint(db):
    return sprints_mod.create_sprint(
        db, "test", "Sprint 1", datetime(2024, 1, 1), datetime(2024, 1, 14)
    )


class TestSlugify:
    def test_basic(self):
        assert projects_mod.slugify("Hello World") == "hello-world"

    def test_special_chars(self):
        assert projects_mod.slugify("Auth: Login & Signup!") == "auth-login-signup"

    def test_truncation(self):
        assert len(projects_mod.slugify("a" * 100)) <= 60


class TestStoryCRUD:
    def test_create_story(self, db):
        story = stories_mod.create_story(db, "test", "Build login page", points=3, labels=["auth"])
        assert story.title == "Build login page"
        assert story.slug == "TK-1"
        assert story.status == StoryStatus.TODO
        assert story.priority == Priority.MEDIUM
        assert story.points == 3
        assert story.labels == ["auth"]
        assert story.archived is False
        assert story.created_at is not None

    def test_create_records_actor(self, db, caplog):
        with caplog.at_level(logging.INFO, logger="sprintboard"):
            story = stories_mod.create_story(db, "test", "Logged story", actor="alice")
        assert f"Created story {story.id} as TK-1 in project test by alice" in caplog.text

    def test_new_stories_go_to_end(self, db):
        s1 = stories_mod.create_story(db, "test", "First story")
        s2 = stories_mod.create_story(db, "test", "Second story")
        assert (s1.position, s2.position) == (0, 1)

    def test_custom_prefix(self, db):
        story = stories_mod.create_story(db, "test", "Engineering story", prefix="ENG")
        assert story.slug == "ENG-1"

    def test_create_in_sprint(self, db, sprint):
        story = stories_mod.create_story(db, "test", "Sprint story", sprint_id=sprint.id)
        assert story.sprint_id == sprint.id

    def test_create_with_foreign_sprint(self, db):
        projects_mod.create_project(db, "other", "Other")
        foreign = sprints_mod.create_sprint(
            db, "other", "Their sprint", datetime(2024, 1, 1), datetime(2024, 1, 14)
        )
        with pytest.raises(SprintNotFoundError):
            stories_mod.create_story(db, "test", "Misplaced story", sprint_id=foreign.id)
        assert projects_mod.get_project(db, "test").story_counter == 0

    def test_get_story(self, db):
        created = stories_mod.create_story(db, "test", "My story")
        story = stories_mod.get_story(db, created.id)
        assert story is not None
        assert story.title == "My story"

    def test_get_story_scoped_to_project(self, db):
        projects_mod.create_project(db, "other", "Other")
        created = stories_mod.create_story(db, "test", "My story")
        assert stories_mod.get_story(db, created.id, "other") is None

    def test_get_nonexistent_story(self, db):
        assert stories_mod.get_story(db, "nonexistent") is None

    def test_get_by_slug(self, db):
        stories_mod.create_story(db, "test", "First story")
        second = stories_mod.create_story(db, "test", "Second story")
        assert stories_mod.get_story_by_slug(db, "test", "TK-2").id == second.id
        assert stories_mod.get_story_by_slug(db, "test", "TK-9") is None

    def test_delete_story(self, db):
        story = stories_mod.create_story(db, "test", "Doomed story")
        assert stories_mod.delete_story(db, story.id)
        assert stories_mod.get_story(db, story.id) is None
        assert not stories_mod.delete_story(db, story.id)

    def test_delete_keeps_counter(self, db):
        story = stories_mod.create_story(db, "test", "Doomed story")
        stories_mod.delete_story(db, story.id)
        assert stories_mod.create_story(db, "test", "Next story").slug == "TK-2"


class TestListStories:
    def test_list_with_total(self, db):
        for i in range(5):
            stories_mod.create_story(db, "test", f"Story {i}")
        stories, total = stories_mod.list_stories(db, "test", limit=2, offset=1)
        assert total == 5
        assert [s.position for s in stories] == [1, 2]

    def test_filter_by_status_and_priority(self, db):
        a = stories_mod.create_story(db, "test", "Story A", priority=Priority.HIGH)
        stories_mod.create_story(db, "test", "Story B", status=StoryStatus.DONE)
        stories, total = stories_mod.list_stories(db, "test", status="TODO", priority="HIGH")
        assert total == 1
        assert stories[0].id == a.id

    def test_filter_unassigned_sprint(self, db, sprint):
        stories_mod.create_story(db, "test", "In sprint", sprint_id=sprint.id)
        loose = stories_mod.create_story(db, "test", "Backlog item")
        stories, _ = stories_mod.list_stories(db, "test", sprint_id=stories_mod.UNASSIGNED)
        assert [s.id for s in stories] == [loose.id]

    def test_search(self, db):
        stories_mod.create_story(db, "test", "Login page", description="OAuth flow")
        stories_mod.create_story(db, "test", "Billing page")
        _, total = stories_mod.list_stories(db, "test", search="oauth")
        assert total == 1

    def test_archived_excluded_by_default(self, db):
        story = stories_mod.create_story(db, "test", "Old story")
        stories_mod.archive_story(db, story.id, True)
        assert stories_mod.list_stories(db, "test")[1] == 0
        assert stories_mod.list_stories(db, "test", archived=True)[1] == 1

    def test_invalid_status_filter(self, db):
        with pytest.raises(ValueError):
            stories_mod.list_stories(db, "test", status="BLOCKED")


class TestUpdateStory:
    def test_update_writes_history_per_field(self, db):
        story = stories_mod.create_story(db, "test", "Story A", labels=["ui"])
        updated = stories_mod.update_story(
            db, story.id, actor="alice", title="Story A v2", labels=["ui", "api"], points=None
        )
        assert updated.title == "Story A v2"
        assert updated.labels == ["ui", "api"]

        history = stories_mod.get_story_history(db, story.id)
        fields = {h.field: h for h in history}
        assert set(fields) == {"title", "labels"}
        assert json.loads(fields["labels"].old_value) == ["ui"]
        assert json.loads(fields["labels"].new_value) == ["ui", "api"]
        assert fields["title"].changed_by == "alice"

    def test_unchanged_values_write_no_history(self, db):
        story = stories_mod.create_story(db, "test", "Story A")
        stories_mod.update_story(db, story.id, title="Story A", status="TODO")
        assert stories_mod.get_story_history(db, story.id) == []

    def test_clear_nullable_field(self, db, sprint):
        story = stories_mod.create_story(db, "test", "Story A", sprint_id=sprint.id)
        updated = stories_mod.update_story(db, story.id, sprint_id=None)
        assert updated.sprint_id is None

    def test_update_unknown_field(self, db):
        story = stories_mod.create_story(db, "test", "Story A")
        with pytest.raises(ValueError):
            stories_mod.update_story(db, story.id, slug="TK-99")

    def test_update_missing_story(self, db):
        with pytest.raises(StoryNotFoundError):
            stories_mod.update_story(db, "missing", title="Whatever")

    def test_update_does_not_touch_slug(self, db):
        story = stories_mod.create_story(db, "test", "Story A")
        updated = stories_mod.update_story(db, story.id, status=StoryStatus.DONE)
        assert updated.slug == "TK-1"


class TestAssignees:
    def test_create_with_assignees(self, db):
        story = stories_mod.create_story(db, "test", "Shared story", assignee_ids=["bob", "amy", "bob"])
        assert story.assignee_ids == ["bob", "amy"]
        assert stories_mod.get_story_by_slug(db, "test", "TK-1").assignee_ids == ["bob", "amy"]

    def test_too_many_assignees(self, db):
        users = [f"user{i}" for i in range(stories_mod.MAX_ASSIGNEES + 1)]
        with pytest.raises(InvalidInputError):
            stories_mod.create_story(db, "test", "Crowded story", assignee_ids=users)
        assert projects_mod.get_project(db, "test").story_counter == 0

    def test_filter_by_assignee(self, db):
        mine = stories_mod.create_story(db, "test", "Bob's story", assignee_ids=["bob"])
        stories_mod.create_story(db, "test", "Amy's story", assignee_ids=["amy"])
        stories_mod.create_story(db, "test", "Nobody's story")

        stories, total = stories_mod.list_stories(db, "test", assignee_id="bob")
        assert total == 1
        assert [s.id for s in stories] == [mine.id]
        assert stories[0].assignee_ids == ["bob"]

    def test_replace_assignees_logs_history(self, db):
        story = stories_mod.create_story(db, "test", "Story A", assignee_ids=["bob"])
        updated = stories_mod.update_story(db, story.id, actor="alice", assignee_ids=["amy", "carl"])
        assert updated.assignee_ids == ["amy", "carl"]

        [entry] = stories_mod.get_story_history(db, story.id)
        assert entry.field == "assignees"
        assert json.loads(entry.old_value) == ["bob"]
        assert json.loads(entry.new_value) == ["amy", "carl"]
        assert entry.changed_by == "alice"

    def test_same_assignees_write_no_history(self, db):
        story = stories_mod.create_story(db, "test", "Story A", assignee_ids=["bob", "amy"])
        stories_mod.update_story(db, story.id, assignee_ids=["amy", "bob"])
        assert stories_mod.get_story_history(db, story.id) == []

    def test_clear_assignees(self, db):
        story = stories_mod.create_story(db, "test", "Story A", assignee_ids=["bob"])
        assert stories_mod.update_story(db, story.id, assignee_ids=[]).assignee_ids == []

    def test_delete_story_drops_assignees(self, db):
        story = stories_mod.create_story(db, "test", "Story A", assignee_ids=["bob"])
        stories_mod.delete_story(db, story.id)
        rows = db.execute("SELECT * FROM story_assignees").fetchall()
        assert rows == []


class TestArchiveStory:
    def test_archive_and_restore(self, db):
        story = stories_mod.create_story(db, "test", "Story A")
        assert stories_mod.archive_story(db, story.id, True, actor="bob").archived is True
        assert stories_mod.archive_story(db, story.id, False, actor="bob").archived is False

        history = stories_mod.get_story_history(db, story.id)
        assert [(h.field, h.new_value) for h in history] == [("archived", "true"), ("archived", "false")]

    def test_archive_twice_logs_once(self, db):
        story = stories_mod.create_story(db, "test", "Story A")
        stories_mod.archive_story(db, story.id, True)
        stories_mod.archive_story(db, story.id, True)
        assert len(stories_mod.get_story_history(db, story.id)) == 1

    def test_archive_keeps_slug(self, db):
        story = stories_mod.create_story(db, "test", "Story A")
        assert stories_mod.archive_story(db, story.id, True).slug == "TK-1"


class TestProjects:
    def test_create_project_starts_counter_at_zero(self, db):
        project = projects_mod.create_project(db, "fresh", "Fresh", owner_id="alice")
        assert project.story_counter == 0
        assert projects_mod.get_member(db, "fresh", "alice").role.value == "OWNER"

    def test_create_story_in_missing_project(self, db):
        with pytest.raises(ProjectNotFoundError):
            stories_mod.create_story(db, "nope", "Orphan")

    def test_update_project_ignores_counter(self, db):
        stories_mod.create_story(db, "test", "Story A")
        project = projects_mod.update_project(db, "test", name="Renamed", story_counter=0)
        assert project.name == "Renamed"
        assert project.story_counter == 1

    def test_delete_project_cascades(self, db):
        story = stories_mod.create_story(db, "test", "Story A")
        assert projects_mod.delete_project(db, "test")
        assert stories_mod.get_story(db, story.id) is None
