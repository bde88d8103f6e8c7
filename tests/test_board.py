"""Tests for board lanes, move planning and atomic reorders."""

import tempfile
from pathlib import Path

import pytest

from sprintboard.core import board as board_mod
from sprintboard.core import projects as projects_mod
from sprintboard.core import stories as stories_mod
from sprintboard.core.board import ReorderItem
from sprintboard.core.errors import (
    InvalidInputError,
    MismatchError,
    ProjectNotFoundError,
    StorageError,
    StoryNotFoundError,
)
from sprintboard.db.engine import init_db
from sprintboard.db.models import StoryStatus

TODO = StoryStatus.TODO
IN_PROGRESS = StoryStatus.IN_PROGRESS
DONE = StoryStatus.DONE


@pytest.fixture
def db():
    """Create a temporary SQLite database with two projects."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.create_project(conn, "p1", "Project One")
        projects_mod.create_project(conn, "p2", "Project Two")
        yield conn
        conn.close()


def _placement(db, story_id):
    story = stories_mod.get_story(db, story_id)
    return story.status, story.position


def _snapshot(db, project_id):
    rows = db.execute(
        "SELECT id, status, position, updated_at FROM stories WHERE project_id = ? ORDER BY id",
        (project_id,),
    ).fetchall()
    return [tuple(r) for r in rows]


class TestReorder:
    def test_moves_two_stories_into_done(self, db):
        a = stories_mod.create_story(db, "p1", "Story A")
        b = stories_mod.create_story(db, "p1", "Story B")
        c = stories_mod.create_story(db, "p1", "Story C")
        stories_mod.update_story(db, a.id, status=TODO, position=1)
        stories_mod.update_story(db, b.id, status=IN_PROGRESS, position=1)
        untouched = _placement(db, c.id)

        result = board_mod.reorder_stories(db, "p1", [
            ReorderItem(a.id, DONE, 1),
            ReorderItem(b.id, DONE, 2),
        ])

        assert result.updated == 2
        assert _placement(db, a.id) == (DONE, 1)
        assert _placement(db, b.id) == (DONE, 2)
        assert _placement(db, c.id) == untouched

    def test_identity_batch_writes_nothing(self, db):
        a = stories_mod.create_story(db, "p1", "Story A")
        b = stories_mod.create_story(db, "p1", "Story B")
        before = _snapshot(db, "p1")

        result = board_mod.reorder_stories(db, "p1", [
            ReorderItem(a.id, a.status, a.position),
            ReorderItem(b.id, b.status, b.position),
        ])

        assert result.submitted == 2
        assert result.updated == 0
        assert _snapshot(db, "p1") == before

    def test_one_unknown_id_rejects_whole_batch(self, db):
        stories = [stories_mod.create_story(db, "p1", f"Story {i}") for i in range(3)]
        before = _snapshot(db, "p1")
        items = [ReorderItem(s.id, DONE, i + 10) for i, s in enumerate(stories)]
        items.append(ReorderItem("does-not-exist", DONE, 0))

        with pytest.raises(MismatchError) as exc:
            board_mod.reorder_stories(db, "p1", items)

        assert exc.value.story_ids == ["does-not-exist"]
        assert _snapshot(db, "p1") == before

    def test_foreign_story_is_mismatch(self, db):
        mine = stories_mod.create_story(db, "p1", "Mine")
        theirs = stories_mod.create_story(db, "p2", "Theirs")

        with pytest.raises(MismatchError) as exc:
            board_mod.reorder_stories(db, "p1", [
                ReorderItem(mine.id, DONE, 0),
                ReorderItem(theirs.id, DONE, 1),
            ])

        assert exc.value.story_ids == [theirs.id]
        assert _placement(db, mine.id) == (TODO, 0)
        assert _placement(db, theirs.id) == (TODO, 0)

    def test_archived_story_is_mismatch(self, db):
        a = stories_mod.create_story(db, "p1", "Active")
        b = stories_mod.create_story(db, "p1", "Archived")
        stories_mod.archive_story(db, b.id, True)

        with pytest.raises(MismatchError):
            board_mod.reorder_stories(db, "p1", [
                ReorderItem(a.id, DONE, 0),
                ReorderItem(b.id, DONE, 1),
            ])
        assert _placement(db, a.id) == (TODO, 0)

    def test_duplicate_ids_are_mismatch(self, db):
        a = stories_mod.create_story(db, "p1", "Story A")

        with pytest.raises(MismatchError) as exc:
            board_mod.reorder_stories(db, "p1", [
                ReorderItem(a.id, DONE, 0),
                ReorderItem(a.id, IN_PROGRESS, 1),
            ])

        assert exc.value.story_ids == [a.id]
        assert _placement(db, a.id) == (TODO, 0)

    def test_empty_batch(self, db):
        with pytest.raises(InvalidInputError):
            board_mod.reorder_stories(db, "p1", [])

    def test_unknown_project(self, db):
        with pytest.raises(ProjectNotFoundError):
            board_mod.reorder_stories(db, "missing", [ReorderItem("x", TODO, 0)])

    def test_reorder_does_not_touch_slugs(self, db):
        a = stories_mod.create_story(db, "p1", "Story A")
        board_mod.reorder_stories(db, "p1", [ReorderItem(a.id, DONE, 5)])
        assert stories_mod.get_story(db, a.id).slug == a.slug
        assert projects_mod.get_project(db, "p1").story_counter == 1

    def test_large_batch(self, db):
        stories = [stories_mod.create_story(db, "p1", f"Story {i:04d}") for i in range(600)]
        items = [ReorderItem(s.id, IN_PROGRESS, i) for i, s in enumerate(reversed(stories))]

        result = board_mod.reorder_stories(db, "p1", items)

        assert result.updated == 600
        assert _placement(db, stories[0].id) == (IN_PROGRESS, 599)

    def test_storage_failure_rolls_back_batch(self, db):
        a = stories_mod.create_story(db, "p1", "Story A")
        b = stories_mod.create_story(db, "p1", "Story B")
        db.execute(
            f"""CREATE TRIGGER fail_second_story BEFORE UPDATE ON stories
                WHEN OLD.id = '{b.id}'
                BEGIN SELECT RAISE(ABORT, 'disk says no'); END"""
        )
        db.commit()

        with pytest.raises(StorageError) as exc:
            board_mod.reorder_stories(db, "p1", [
                ReorderItem(a.id, DONE, 0),
                ReorderItem(b.id, DONE, 1),
            ])

        assert "disk says no" in str(exc.value)
        assert not db.in_transaction
        assert _placement(db, a.id) == (TODO, 0)
        assert _placement(db, b.id) == (TODO, 1)

    def test_storage_failure_during_move(self, db):
        a = stories_mod.create_story(db, "p1", "Story A")
        b = stories_mod.create_story(db, "p1", "Story B")
        c = stories_mod.create_story(db, "p1", "Story C")
        db.execute(
            f"""CREATE TRIGGER fail_last_story BEFORE UPDATE ON stories
                WHEN OLD.id = '{c.id}'
                BEGIN SELECT RAISE(ABORT, 'disk says no'); END"""
        )
        db.commit()

        with pytest.raises(StorageError):
            board_mod.move_story(db, "p1", a.id, IN_PROGRESS, 0)

        assert not db.in_transaction
        assert _placement(db, a.id) == (TODO, 0)
        assert _placement(db, b.id) == (TODO, 1)
        assert _placement(db, c.id) == (TODO, 2)


class TestBoardColumns:
    def test_lanes_in_display_order(self, db):
        a = stories_mod.create_story(db, "p1", "Story A")
        b = stories_mod.create_story(db, "p1", "Story B")
        c = stories_mod.create_story(db, "p1", "Story C")
        board_mod.reorder_stories(db, "p1", [
            ReorderItem(a.id, TODO, 2),
            ReorderItem(b.id, TODO, 0),
            ReorderItem(c.id, DONE, 0),
        ])

        columns = board_mod.board_columns(db, "p1")

        assert list(columns) == [TODO, IN_PROGRESS, DONE]
        assert [s.id for s in columns[TODO]] == [b.id, a.id]
        assert columns[IN_PROGRESS] == []
        assert [s.id for s in columns[DONE]] == [c.id]

    def test_archived_stories_hidden(self, db):
        a = stories_mod.create_story(db, "p1", "Story A")
        stories_mod.archive_story(db, a.id, True)
        columns = board_mod.board_columns(db, "p1")
        assert all(lane == [] for lane in columns.values())

    def test_position_ties_newest_first(self, db):
        older = stories_mod.create_story(db, "p1", "Older story")
        newer = stories_mod.create_story(db, "p1", "Newer story")
        db.execute("UPDATE stories SET created_at = '2024-01-01 00:00:00.000' WHERE id = ?", (older.id,))
        db.execute("UPDATE stories SET created_at = '2024-06-01 00:00:00.000' WHERE id = ?", (newer.id,))
        db.commit()
        board_mod.reorder_stories(db, "p1", [
            ReorderItem(older.id, TODO, 0),
            ReorderItem(newer.id, TODO, 0),
        ])

        columns = board_mod.board_columns(db, "p1")
        assert [s.id for s in columns[TODO]] == [newer.id, older.id]

    def test_unknown_project(self, db):
        with pytest.raises(ProjectNotFoundError):
            board_mod.board_columns(db, "missing")


class TestPlanMove:
    def test_move_within_lane(self):
        columns = {TODO: ["a", "b", "c"]}
        items = board_mod.plan_move(columns, "c", TODO, 0)
        assert [(i.story_id, i.position) for i in items if i.status == TODO] == [
            ("c", 0), ("a", 1), ("b", 2),
        ]
        assert columns[TODO] == ["a", "b", "c"]

    def test_move_across_lanes(self):
        columns = {TODO: ["a", "b"], IN_PROGRESS: ["x"], DONE: []}
        items = board_mod.plan_move(columns, "a", IN_PROGRESS, 1)
        placed = {i.story_id: (i.status, i.position) for i in items}
        assert placed == {
            "b": (TODO, 0),
            "x": (IN_PROGRESS, 0),
            "a": (IN_PROGRESS, 1),
        }

    def test_index_past_end_appends(self):
        items = board_mod.plan_move({TODO: ["a"], DONE: ["x", "y"]}, "a", DONE, 99)
        assert [i.story_id for i in items if i.status == DONE] == ["x", "y", "a"]

    def test_negative_index(self):
        with pytest.raises(InvalidInputError):
            board_mod.plan_move({TODO: ["a"]}, "a", DONE, -1)

    def test_unknown_story(self):
        with pytest.raises(StoryNotFoundError):
            board_mod.plan_move({TODO: ["a"]}, "zzz", DONE)


class TestMoveStory:
    def test_move_renumbers_lanes(self, db):
        a = stories_mod.create_story(db, "p1", "Story A")
        b = stories_mod.create_story(db, "p1", "Story B")
        c = stories_mod.create_story(db, "p1", "Story C")

        board_mod.move_story(db, "p1", c.id, IN_PROGRESS)
        board_mod.move_story(db, "p1", a.id, IN_PROGRESS, 0)

        columns = board_mod.board_columns(db, "p1")
        assert [(s.id, s.position) for s in columns[TODO]] == [(b.id, 0)]
        assert [(s.id, s.position) for s in columns[IN_PROGRESS]] == [(a.id, 0), (c.id, 1)]

    def test_move_unknown_story_changes_nothing(self, db):
        stories_mod.create_story(db, "p1", "Story A")
        before = _snapshot(db, "p1")
        with pytest.raises(StoryNotFoundError):
            board_mod.move_story(db, "p1", "missing", DONE)
        assert _snapshot(db, "p1") == before
