"""Error taxonomy for the pipeline and its HTTP surface."""

_NON_RETRYABLE_STATUSES = frozenset({400, 403, 404})


class PipelineError(Exception):
    """Base class for failures raised while executing a job.

    *status* is the upstream HTTP status when there is one; *retry_after* is the
    provider's hint in seconds.
    """

    def __init__(
        self, message: str, status: int | None = None, retry_after: float | None = None
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.status not in _NON_RETRYABLE_STATUSES


class GenerationError(PipelineError):
    """The AI provider call failed or returned nothing usable."""


class OutputParseError(PipelineError):
    """A stage's input or output could not be parsed into the expected shape."""

    @property
    def retryable(self) -> bool:
        return False


class JobNotReady(Exception):
    """The job was not READY when a worker tried to claim it."""


class StaleAttemptError(Exception):
    """A result arrived for an attempt that is no longer IN_PROGRESS."""


class NotFoundError(Exception):
    pass


class BatchActionError(Exception):
    """An operator batch action cannot be applied in the current state."""


class MailDeliveryError(Exception):
    pass


class ConfigurationError(PipelineError):
    """The pipeline is missing configuration it needs (API keys, prompt files)."""

    @property
    def retryable(self) -> bool:
        return False


class InvalidUploadError(ValueError):
    """A spreadsheet upload has no rows that can be grouped into batches."""
