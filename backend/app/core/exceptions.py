class PrototypeStudioError(Exception):
    """Base exception for Prototype Studio."""

    pass


class ConfigError(PrototypeStudioError):
    """Raised when provider credentials or endpoints are not configured."""

    pass


class ValidationError(PrototypeStudioError):
    """Raised when caller input is missing or invalid. Never retried."""

    def __init__(self, message: str, fields: list[str] | None = None):
        self.fields = fields or []
        super().__init__(message)


class NotFoundError(PrototypeStudioError):
    """Raised when a referenced prototype does not exist."""

    def __init__(self, resource: str, resource_id: object):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")


class ConflictError(PrototypeStudioError):
    """Raised when an operation would break the lineage, e.g. deleting a parent."""

    def __init__(self, message: str, children_count: int = 0):
        self.children_count = children_count
        super().__init__(message)


class LineageError(PrototypeStudioError):
    """Raised when parent/version are assigned more than once."""

    pass


class ProviderError(PrototypeStudioError):
    """Raised on a non-2xx, rejected or malformed provider response.

    transient marks failures worth another poll (network errors, 429, 5xx).
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
        transient: bool = False,
    ):
        self.status_code = status_code
        self.body = body
        self.transient = transient
        super().__init__(message)


class JobFailedError(ProviderError):
    """Raised when the provider reports FAILURE for a job."""

    def __init__(self, task_id: str, failure_reason: str | None):
        self.task_id = task_id
        self.failure_reason = failure_reason
        super().__init__(f"Task failed: {failure_reason or 'Unknown error'}")


class JobTimeoutError(PrototypeStudioError, TimeoutError):
    """Raised when a job stays non-terminal for the whole polling budget."""

    def __init__(self, task_id: str, attempts: int, waited_seconds: float):
        self.task_id = task_id
        self.attempts = attempts
        self.waited_seconds = waited_seconds
        super().__init__(
            f"Task {task_id} timeout after {attempts} polls ({waited_seconds:g} seconds)"
        )


class JobCancelledError(PrototypeStudioError):
    """Raised when the caller cancels an in-flight job wait."""

    pass


class StorageError(PrototypeStudioError):
    """Raised when persistence fails.

    image_url carries the already generated image so the work is not lost.
    """

    def __init__(self, message: str, image_url: str | None = None):
        self.image_url = image_url
        super().__init__(message)
