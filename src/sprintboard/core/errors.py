"""Error taxonomy shared by the core, the web API and the CLI."""


class SprintboardError(Exception):
    """Base class for all sprintboard failures."""

    status_code = 500
    code = "error"


class NotFoundError(SprintboardError):
    status_code = 404
    code = "not_found"


class ProjectNotFoundError(NotFoundError):
    def __init__(self, project_id: str):
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


class StoryNotFoundError(NotFoundError):
    def __init__(self, story_id: str):
        super().__init__(f"Story not found: {story_id}")
        self.story_id = story_id


class SprintNotFoundError(NotFoundError):
    def __init__(self, sprint_id: str):
        super().__init__(f"Sprint not found in this project: {sprint_id}")
        self.sprint_id = sprint_id


class SlugAlreadyAssignedError(SprintboardError):
    """The story already carries a slug. Nothing was changed."""

    status_code = 409
    code = "already_assigned"

    def __init__(self, story_id: str, slug: str):
        super().__init__(f"Story {story_id} already has slug {slug}")
        self.story_id = story_id
        self.slug = slug


class ConflictError(SprintboardError):
    """The atomic unit could not be applied because of a concurrent writer."""

    status_code = 409
    code = "conflict"


class MismatchError(SprintboardError):
    """A reorder batch names stories that are unknown, foreign, archived or repeated."""

    status_code = 400
    code = "story_mismatch"

    def __init__(self, message: str = "Story mismatch", story_ids: list[str] | None = None):
        super().__init__(message)
        self.story_ids = story_ids or []


class ForbiddenError(SprintboardError):
    status_code = 403
    code = "forbidden"


class InvalidInputError(SprintboardError):
    status_code = 400
    code = "validation_error"


class StorageError(SprintboardError):
    """The database rejected a write. The enclosing unit was rolled back."""

    code = "storage_error"
