"""Pydantic request schemas for the web API, CLI and MCP tools.

Responses are camelCase, so every request model accepts the camelCase key
as well as the Python field name.
"""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from sprintboard.core.board import ReorderItem
from sprintboard.core.stories import MAX_ASSIGNEES
from sprintboard.db.models import Priority, Role, StoryStatus


def _blank_to_none(value: Any) -> Any:
    if value == "" or value == "null":
        return None
    return value


def _unique(values: List[str]) -> List[str]:
    return list(dict.fromkeys(values))


class RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StoryCreate(RequestModel):
    """Fields accepted when creating a story."""

    title: str = Field(..., min_length=3, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    points: Optional[int] = Field(None, ge=0, le=100)
    priority: Priority = Priority.MEDIUM
    status: StoryStatus = StoryStatus.TODO
    labels: List[str] = Field(default_factory=list)
    sprint_id: Optional[str] = None
    due_date: Optional[datetime] = None
    assignee_ids: List[str] = Field(default_factory=list, max_length=MAX_ASSIGNEES)

    @field_validator("title")
    @classmethod
    def strip_title(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 3:
            raise ValueError("Story title must be at least 3 characters")
        return value

    @field_validator("description", mode="before")
    @classmethod
    def normalize_description(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
        return value or None

    @field_validator("points", "sprint_id", "due_date", mode="before")
    @classmethod
    def blank_is_none(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("assignee_ids")
    @classmethod
    def dedupe_assignees(cls, value: List[str]) -> List[str]:
        return _unique(value)


class StoryUpdate(RequestModel):
    """Partial update. Only fields present in the payload are applied."""

    title: Optional[str] = Field(None, min_length=3, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    points: Optional[int] = Field(None, ge=0, le=100)
    priority: Optional[Priority] = None
    status: Optional[StoryStatus] = None
    labels: Optional[List[str]] = None
    sprint_id: Optional[str] = None
    due_date: Optional[datetime] = None
    position: Optional[int] = Field(None, ge=0)
    assignee_ids: Optional[List[str]] = Field(None, max_length=MAX_ASSIGNEES)

    @field_validator("description", mode="before")
    @classmethod
    def normalize_description(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
        return value or None

    @field_validator("points", "sprint_id", "due_date", mode="before")
    @classmethod
    def blank_is_none(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("assignee_ids")
    @classmethod
    def dedupe_assignees(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _unique(value) if value is not None else None

    @model_validator(mode="after")
    def required_fields_not_cleared(self) -> "StoryUpdate":
        for name in ("title", "priority", "status", "labels", "position", "assignee_ids"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


class ReorderItemIn(RequestModel):
    id: str = Field(..., min_length=1)
    status: StoryStatus
    position: int = Field(..., ge=0)


class ReorderRequest(RequestModel):
    """The complete new placement of every story whose lane or position changed."""

    items: List[ReorderItemIn] = Field(..., min_length=1)

    def to_items(self) -> list[ReorderItem]:
        return [ReorderItem(story_id=i.id, status=i.status, position=i.position) for i in self.items]


class MoveRequest(RequestModel):
    story_id: str = Field(..., min_length=1)
    status: StoryStatus
    index: Optional[int] = Field(None, ge=0)


class ArchiveRequest(RequestModel):
    archived: StrictBool


class CommentCreate(RequestModel):
    content: str = Field(..., min_length=1, max_length=10000)

    @field_validator("content")
    @classmethod
    def strip_content(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Comment is required")
        return value


class SprintCreate(RequestModel):
    name: str = Field(..., min_length=3, max_length=100)
    goal: Optional[str] = Field(None, max_length=500)
    start_date: datetime
    end_date: datetime

    @model_validator(mode="after")
    def end_after_start(self) -> "SprintCreate":
        if self.end_date <= self.start_date:
            raise ValueError("End date must be after start date")
        return self


class ProjectCreate(RequestModel):
    name: str = Field(..., min_length=1, max_length=100)
    id: Optional[str] = Field(None, min_length=1, max_length=60)
    description: Optional[str] = Field(None, max_length=1000)
    org_id: Optional[str] = None


# ── Membership ───────────────────────────────────────────────────────────────


class OrganizationCreate(RequestModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: Optional[str] = Field(None, min_length=1, max_length=60, pattern=r"^[a-z0-9-]+$")


class MemberInvite(RequestModel):
    user_id: str = Field(..., min_length=1)
    role: Role = Role.MEMBER

    @field_validator("role")
    @classmethod
    def not_owner(cls, value: Role) -> Role:
        if value == Role.OWNER:
            raise ValueError("Organizations have a single owner")
        return value


class InviteResponse(RequestModel):
    accept: StrictBool


class ProjectMemberAdd(RequestModel):
    user_id: str = Field(..., min_length=1)
    role: Role = Role.MEMBER


class MemberRoleUpdate(RequestModel):
    role: Role
