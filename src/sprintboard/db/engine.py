"""SQLite database connection management, schema initialization and transactions."""

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path

from sprintboard.core.errors import ConflictError

logger = logging.getLogger(__name__)

_NOW = "(strftime('%Y-%m-%d %H:%M:%f', 'now'))"

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS organizations (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    owner_id TEXT NOT NULL,
    created_at TEXT DEFAULT {_NOW},
    updated_at TEXT DEFAULT {_NOW}
);

CREATE TABLE IF NOT EXISTS organization_members (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    org_id TEXT NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    role TEXT DEFAULT 'MEMBER' CHECK (role IN ('ADMIN', 'MEMBER', 'VIEWER')),
    status TEXT DEFAULT 'PENDING' CHECK (status IN ('PENDING', 'ACCEPTED', 'REJECTED')),
    active INTEGER DEFAULT 1,
    created_at TEXT DEFAULT {_NOW},
    updated_at TEXT DEFAULT {_NOW},
    UNIQUE(org_id, user_id)
);

CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    org_id TEXT REFERENCES organizations(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    description TEXT,
    story_counter INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT {_NOW},
    updated_at TEXT DEFAULT {_NOW}
);

CREATE TABLE IF NOT EXISTS project_members (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    role TEXT DEFAULT 'MEMBER' CHECK (role IN ('OWNER', 'ADMIN', 'MEMBER', 'VIEWER')),
    active INTEGER DEFAULT 1,
    created_at TEXT DEFAULT {_NOW},
    updated_at TEXT DEFAULT {_NOW},
    UNIQUE(project_id, user_id)
);

CREATE TABLE IF NOT EXISTS sprints (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    goal TEXT,
    status TEXT DEFAULT 'PLANNING' CHECK (status IN ('PLANNING', 'ACTIVE', 'COMPLETED', 'CANCELLED')),
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    created_at TEXT DEFAULT {_NOW},
    updated_at TEXT DEFAULT {_NOW}
);

CREATE TABLE IF NOT EXISTS stories (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT,
    slug TEXT,
    status TEXT DEFAULT 'TODO' CHECK (status IN ('TODO', 'IN_PROGRESS', 'DONE')),
    priority TEXT DEFAULT 'MEDIUM' CHECK (priority IN ('LOW', 'MEDIUM', 'HIGH')),
    position INTEGER NOT NULL DEFAULT 0,
    points INTEGER,
    labels TEXT DEFAULT '[]',
    sprint_id TEXT REFERENCES sprints(id) ON DELETE SET NULL,
    due_date TEXT,
    archived INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT {_NOW},
    updated_at TEXT DEFAULT {_NOW}
);

CREATE TABLE IF NOT EXISTS story_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    story_id TEXT NOT NULL REFERENCES stories(id) ON DELETE CASCADE,
    field TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    changed_by TEXT,
    created_at TEXT DEFAULT {_NOW}
);

CREATE TABLE IF NOT EXISTS story_assignees (
    story_id TEXT NOT NULL REFERENCES stories(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    created_at TEXT DEFAULT {_NOW},
    PRIMARY KEY (story_id, user_id)
);

CREATE TABLE IF NOT EXISTS comments (
    id TEXT PRIMARY KEY,
    story_id TEXT NOT NULL REFERENCES stories(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT DEFAULT {_NOW},
    updated_at TEXT DEFAULT {_NOW}
);
"""

# Columns added after the first release. Databases created before slugs existed
# lack them; their stories keep slug = NULL until backfilled.
_ADDED_COLUMNS = [
    ("projects", "story_counter", "INTEGER NOT NULL DEFAULT 0"),
    ("stories", "slug", "TEXT"),
    ("stories", "archived", "INTEGER NOT NULL DEFAULT 0"),
]

_INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_stories_project_slug ON stories(project_id, slug);
CREATE INDEX IF NOT EXISTS idx_stories_board ON stories(project_id, status, position);
CREATE INDEX IF NOT EXISTS idx_story_history_story ON story_history(story_id);
CREATE INDEX IF NOT EXISTS idx_story_assignees_user ON story_assignees(user_id);
CREATE INDEX IF NOT EXISTS idx_comments_story ON comments(story_id, created_at);
"""


def _run_migrations(conn: sqlite3.Connection):
    """Run schema migrations idempotently."""
    for table, column, decl in _ADDED_COLUMNS:
        existing = {r["name"] for r in conn.execute(f"PRAGMA table_info({table})")}
        if column not in existing:
            logger.info("Migrating: adding %s.%s", table, column)
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")

    conn.executescript(_INDEXES)
    conn.commit()


def init_db(db_path: Path, timeout: float = 5.0) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    _run_migrations(conn)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path, timeout: float = 5.0):
    """Context manager for database connections."""
    conn = init_db(db_path, timeout)
    try:
        yield conn
    finally:
        conn.close()


def is_busy(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


@contextmanager
def transaction(db: sqlite3.Connection):
    """Run the enclosed statements as one atomic unit.

    The outermost call takes the database write lock up front (BEGIN IMMEDIATE)
    so read-compute-write sequences inside it cannot interleave with another
    writer. Nested calls become savepoints of the enclosing transaction.
    Any exception, including cancellation, rolls the unit back. Lock timeouts
    surface as ConflictError; the caller may retry the whole operation.
    """
    if db.in_transaction:
        name = f"sb_{uuid.uuid4().hex}"
        db.execute(f"SAVEPOINT {name}")
        try:
            yield db
        except BaseException:
            db.execute(f"ROLLBACK TO SAVEPOINT {name}")
            db.execute(f"RELEASE SAVEPOINT {name}")
            raise
        db.execute(f"RELEASE SAVEPOINT {name}")
        return

    try:
        db.execute("BEGIN IMMEDIATE")
    except sqlite3.OperationalError as e:
        if is_busy(e):
            logger.warning("Could not acquire write lock: %s", e)
            raise ConflictError("Database is busy, retry the operation") from e
        raise

    try:
        yield db
        db.commit()
    except sqlite3.OperationalError as e:
        db.rollback()
        if is_busy(e):
            logger.warning("Transaction aborted by lock contention: %s", e)
            raise ConflictError("Database is busy, retry the operation") from e
        raise
    except BaseException:
        db.rollback()
        raise
