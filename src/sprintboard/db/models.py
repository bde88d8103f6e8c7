"""Data models for sprintboard."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class StoryStatus(str, Enum):
    """Board lanes, in display order."""

    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class SprintStatus(str, Enum):
    PLANNING = "PLANNING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class MemberStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class Role(str, Enum):
    """Membership roles, highest first."""

    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"
    VIEWER = "VIEWER"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]


_ROLE_RANK = {Role.OWNER: 3, Role.ADMIN: 2, Role.MEMBER: 1, Role.VIEWER: 0}


@dataclass
class Organization:
    id: str
    name: str
    slug: str
    owner_id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class OrganizationMember:
    id: int | None = None
    org_id: str = ""
    user_id: str = ""
    role: Role = Role.MEMBER
    status: MemberStatus = MemberStatus.PENDING
    active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Project:
    id: str
    name: str
    org_id: str | None = None
    description: str | None = None
    story_counter: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ProjectMember:
    id: int | None = None
    project_id: str = ""
    user_id: str = ""
    role: Role = Role.MEMBER
    active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Sprint:
    id: str
    project_id: str
    name: str
    start_date: datetime
    end_date: datetime
    goal: str | None = None
    status: SprintStatus = SprintStatus.PLANNING
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class SprintStats:
    sprint: Sprint
    story_count: int = 0
    todo_count: int = 0
    in_progress_count: int = 0
    done_count: int = 0


@dataclass
class Story:
    id: str
    project_id: str
    title: str
    description: str | None = None
    slug: str | None = None
    status: StoryStatus = StoryStatus.TODO
    priority: Priority = Priority.MEDIUM
    position: int = 0
    points: int | None = None
    labels: list[str] = field(default_factory=list)
    sprint_id: str | None = None
    due_date: datetime | None = None
    archived: bool = False
    assignee_ids: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class StoryHistory:
    id: int | None = None
    story_id: str = ""
    field: str = ""
    old_value: str | None = None
    new_value: str | None = None
    changed_by: str | None = None
    created_at: datetime | None = None


@dataclass
class Comment:
    id: str
    story_id: str
    user_id: str
    content: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
