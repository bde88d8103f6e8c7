"""Tests for story slug allocation and backfill."""

import sqlite3
import tempfile
import threading
from pathlib import Path

import pytest

from sprintboard.core import projects as projects_mod
from sprintboard.core import slugs as slugs_mod
from sprintboard.core import stories as stories_mod
from sprintboard.core.errors import (
    ProjectNotFoundError,
    SlugAlreadyAssignedError,
    StoryNotFoundError,
)
from sprintboard.db.engine import init_db


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "test.db"


@pytest.fixture
def db(db_path):
    """Create a temporary SQLite database with one empty project."""
    conn = init_db(db_path)
    projects_mod.create_project(conn, "p1", "Project One")
    yield conn
    conn.close()


def _insert_legacy_story(db, project_id, story_id, title, created_at):
    """A story as written before slugs existed: slug NULL, counter untouched."""
    db.execute(
        "INSERT INTO stories (id, project_id, title, created_at) VALUES (?, ?, ?, ?)",
        (story_id, project_id, title, created_at),
    )
    db.commit()


def _counter(db, project_id):
    return projects_mod.get_project(db, project_id).story_counter


class TestSlugFormat:
    def test_format(self):
        assert slugs_mod.format_story_slug(1) == "TK-1"
        assert slugs_mod.format_story_slug(42) == "TK-42"

    def test_format_custom_prefix(self):
        assert slugs_mod.format_story_slug(7, "ENG") == "ENG-7"

    def test_format_rejects_zero(self):
        with pytest.raises(ValueError):
            slugs_mod.format_story_slug(0)

    def test_format_rejects_bad_prefix(self):
        with pytest.raises(ValueError):
            slugs_mod.format_story_slug(1, "T K")

    def test_parse(self):
        assert slugs_mod.parse_story_slug("TK-12") == 12
        assert slugs_mod.parse_story_slug("TK-0") is None
        assert slugs_mod.parse_story_slug("TK-012") is None
        assert slugs_mod.parse_story_slug("XX-3") is None
        assert slugs_mod.parse_story_slug("TK-3a") is None

    def test_is_valid(self):
        assert slugs_mod.is_valid_story_slug("TK-1")
        assert not slugs_mod.is_valid_story_slug("tk-1")


class TestSlugOnCreate:
    def test_sequential_slugs(self, db):
        stories = [stories_mod.create_story(db, "p1", f"Story {i}") for i in range(1, 4)]
        assert [s.slug for s in stories] == ["TK-1", "TK-2", "TK-3"]
        assert _counter(db, "p1") == 3

    def test_projects_count_independently(self, db):
        projects_mod.create_project(db, "p2", "Project Two")
        stories_mod.create_story(db, "p1", "First in one")
        stories_mod.create_story(db, "p1", "Second in one")
        s = stories_mod.create_story(db, "p2", "First in two")
        assert s.slug == "TK-1"
        assert _counter(db, "p1") == 2
        assert _counter(db, "p2") == 1

    def test_unknown_project_leaves_nothing(self, db):
        with pytest.raises(ProjectNotFoundError):
            stories_mod.create_story(db, "missing", "Orphan story")
        assert db.execute("SELECT COUNT(*) FROM stories").fetchone()[0] == 0

    def test_failed_insert_rolls_back_counter(self, db):
        # A title of None violates NOT NULL after the counter was incremented.
        with pytest.raises(sqlite3.IntegrityError):
            stories_mod.create_story(db, "p1", None)
        assert _counter(db, "p1") == 0


class TestAllocateSlug:
    def test_allocate_for_legacy_story(self, db):
        _insert_legacy_story(db, "p1", "s1", "Old story", "2024-01-01 10:00:00.000")
        allocation = slugs_mod.allocate_slug(db, "p1", "s1")
        assert allocation.slug == "TK-1"
        assert allocation.counter == 1
        assert stories_mod.get_story(db, "s1").slug == "TK-1"

    def test_already_assigned_is_noop(self, db):
        story = stories_mod.create_story(db, "p1", "Has a slug")
        with pytest.raises(SlugAlreadyAssignedError) as exc:
            slugs_mod.allocate_slug(db, "p1", story.id)
        assert exc.value.slug == "TK-1"
        assert _counter(db, "p1") == 1
        assert stories_mod.get_story(db, story.id).slug == "TK-1"

    def test_unknown_project(self, db):
        with pytest.raises(ProjectNotFoundError):
            slugs_mod.allocate_slug(db, "missing", "s1")

    def test_unknown_story(self, db):
        with pytest.raises(StoryNotFoundError):
            slugs_mod.allocate_slug(db, "p1", "nope")
        assert _counter(db, "p1") == 0

    def test_story_of_other_project(self, db):
        projects_mod.create_project(db, "p2", "Project Two")
        _insert_legacy_story(db, "p2", "s2", "Foreign story", "2024-01-01 10:00:00.000")
        with pytest.raises(StoryNotFoundError):
            slugs_mod.allocate_slug(db, "p1", "s2")
        assert _counter(db, "p1") == 0
        assert stories_mod.get_story(db, "s2").slug is None


class TestConcurrentAllocation:
    def test_parallel_creates_get_distinct_slugs(self, db, db_path):
        workers, per_worker = 8, 10
        conns = [init_db(db_path, timeout=30) for _ in range(workers)]
        errors = []

        def create_many(conn):
            try:
                for i in range(per_worker):
                    stories_mod.create_story(conn, "p1", f"Parallel story {i}")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=create_many, args=(c,)) for c in conns]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        for c in conns:
            c.close()

        assert errors == []
        total = workers * per_worker
        slugs = {r["slug"] for r in db.execute("SELECT slug FROM stories").fetchall()}
        assert slugs == {f"TK-{n}" for n in range(1, total + 1)}
        assert _counter(db, "p1") == total

    def test_parallel_allocate_same_story_assigns_once(self, db, db_path):
        _insert_legacy_story(db, "p1", "s1", "Contended story", "2024-01-01 10:00:00.000")
        conns = [init_db(db_path, timeout=30) for _ in range(6)]
        outcomes = []

        def allocate(conn):
            try:
                outcomes.append(slugs_mod.allocate_slug(conn, "p1", "s1").slug)
            except SlugAlreadyAssignedError as e:
                outcomes.append(("already", e.slug))

        threads = [threading.Thread(target=allocate, args=(c,)) for c in conns]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        for c in conns:
            c.close()

        assert outcomes.count("TK-1") == 1
        assert outcomes.count(("already", "TK-1")) == 5
        assert _counter(db, "p1") == 1


class TestBackfill:
    def test_backfill_in_creation_order(self, db):
        _insert_legacy_story(db, "p1", "b", "Second", "2024-01-02 00:00:00.000")
        _insert_legacy_story(db, "p1", "a", "First", "2024-01-01 00:00:00.000")
        _insert_legacy_story(db, "p1", "c", "Third", "2024-01-03 00:00:00.000")

        result = slugs_mod.backfill_slugs(db, "p1")
        assert result.assigned_count == 3
        assert result.final_counter == 3
        assert result.assigned == [("a", "TK-1"), ("b", "TK-2"), ("c", "TK-3")]
        assert _counter(db, "p1") == 3

    def test_backfill_includes_archived(self, db):
        _insert_legacy_story(db, "p1", "a", "Archived one", "2024-01-01 00:00:00.000")
        db.execute("UPDATE stories SET archived = 1 WHERE id = 'a'")
        db.commit()
        result = slugs_mod.backfill_slugs(db, "p1")
        assert result.assigned == [("a", "TK-1")]

    def test_backfill_is_idempotent(self, db):
        _insert_legacy_story(db, "p1", "a", "Old story", "2024-01-01 00:00:00.000")
        slugs_mod.backfill_slugs(db, "p1")
        again = slugs_mod.backfill_slugs(db, "p1")
        assert again.assigned_count == 0
        assert again.final_counter == 1

    def test_backfill_continues_after_live_slugs(self, db):
        stories_mod.create_story(db, "p1", "Live story")
        _insert_legacy_story(db, "p1", "old", "Old story", "2023-01-01 00:00:00.000")
        result = slugs_mod.backfill_slugs(db, "p1")
        assert result.assigned == [("old", "TK-2")]
        assert _counter(db, "p1") == 2

    def test_backfill_repairs_counter_behind_slugs(self, db):
        _insert_legacy_story(db, "p1", "x", "Has slug", "2024-01-01 00:00:00.000")
        db.execute("UPDATE stories SET slug = 'TK-5' WHERE id = 'x'")
        db.commit()
        _insert_legacy_story(db, "p1", "y", "No slug", "2024-01-02 00:00:00.000")

        result = slugs_mod.backfill_slugs(db, "p1")
        assert result.assigned == [("y", "TK-6")]
        assert _counter(db, "p1") == 6

    def test_live_creation_after_backfill(self, db):
        _insert_legacy_story(db, "p1", "a", "Old story", "2024-01-01 00:00:00.000")
        slugs_mod.backfill_slugs(db, "p1")
        story = stories_mod.create_story(db, "p1", "New story")
        assert story.slug == "TK-2"

    def test_backfill_unknown_project(self, db):
        with pytest.raises(ProjectNotFoundError):
            slugs_mod.backfill_slugs(db, "missing")

    def test_backfill_all(self, db):
        projects_mod.create_project(db, "p2", "Project Two")
        _insert_legacy_story(db, "p1", "a", "One", "2024-01-01 00:00:00.000")
        _insert_legacy_story(db, "p2", "b", "Two", "2024-01-01 00:00:00.000")
        _insert_legacy_story(db, "p2", "c", "Three", "2024-01-02 00:00:00.000")

        results = {r.project_id: r for r in slugs_mod.backfill_all(db)}
        assert results["p1"].assigned_count == 1
        assert results["p2"].assigned == [("b", "TK-1"), ("c", "TK-2")]

    def test_coverage(self, db):
        stories_mod.create_story(db, "p1", "Live story")
        projects_mod.create_project(db, "p2", "Project Two")
        _insert_legacy_story(db, "p2", "old", "Old story", "2024-01-01 00:00:00.000")

        coverage = slugs_mod.slug_coverage(db)
        assert coverage.total_stories == 2
        assert coverage.stories_with_slugs == 1
        assert coverage.percent == 50.0
        assert not coverage.complete
        assert coverage.projects_needing_backfill == ["p2"]

        slugs_mod.backfill_all(db)
        coverage = slugs_mod.slug_coverage(db)
        assert coverage.complete
        assert coverage.projects_needing_backfill == []


class TestLegacyMigration:
    def test_migrates_pre_slug_database(self, db_path):
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(db_path))
        conn.executescript(
            """
            CREATE TABLE projects (
                id TEXT PRIMARY KEY, org_id TEXT, name TEXT NOT NULL, description TEXT,
                created_at TEXT, updated_at TEXT
            );
            CREATE TABLE stories (
                id TEXT PRIMARY KEY, project_id TEXT NOT NULL, title TEXT NOT NULL,
                description TEXT, status TEXT DEFAULT 'TODO', priority TEXT DEFAULT 'MEDIUM',
                position INTEGER NOT NULL DEFAULT 0, points INTEGER, labels TEXT DEFAULT '[]',
                sprint_id TEXT, due_date TEXT, created_at TEXT, updated_at TEXT
            );
            INSERT INTO projects (id, name, created_at) VALUES ('legacy', 'Legacy', '2023-01-01 00:00:00');
            INSERT INTO stories (id, project_id, title, created_at)
                VALUES ('s2', 'legacy', 'Later', '2023-02-01 00:00:00'),
                       ('s1', 'legacy', 'Earlier', '2023-01-15 00:00:00');
            """
        )
        conn.close()

        db = init_db(db_path)
        try:
            assert _counter(db, "legacy") == 0
            assert stories_mod.get_story(db, "s1").slug is None
            assert stories_mod.get_story(db, "s1").archived is False

            result = slugs_mod.backfill_slugs(db, "legacy")
            assert result.assigned == [("s1", "TK-1"), ("s2", "TK-2")]
        finally:
            db.close()
