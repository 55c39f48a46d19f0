"""Error taxonomy for the transcoding orchestrator."""

from __future__ import annotations


class TranscoderError(Exception):
  """Base class for orchestrator failures."""


class JobValidationError(TranscoderError):
  """Raised when a job record fails validation at enqueue time."""

  def __init__(self, message: str, fields: list[dict[str, str]] | None = None) -> None:
    super().__init__(message)
    self.fields = list(fields or [])


class NotFoundError(TranscoderError):
  """Raised when a referenced asset, job or provider job does not exist."""

  def __init__(self, resource_type: str, resource_id: str | None = None) -> None:
    message = f"{resource_type} not found" if resource_id is None else f"{resource_type} not found: {resource_id}"
    super().__init__(message)
    self.resource_type = resource_type
    self.resource_id = resource_id


class ProviderError(TranscoderError):
  """Base class for transcoding provider failures."""


class ProviderUnavailableError(ProviderError):
  """Raised on transient provider failures (network, 5xx, malformed responses)."""


class ProviderJobFailedError(ProviderError):
  """Raised when the provider reports ERROR or CANCELED for a job."""

  def __init__(self, message: str, *, provider_job_id: str | None = None, provider_state: str | None = None) -> None:
    super().__init__(message)
    self.provider_job_id = provider_job_id
    self.provider_state = provider_state


class PollingTimeoutError(ProviderError):
  """Raised when a provider job does not reach a terminal state within the polling ceiling."""

  def __init__(self, message: str, *, provider_job_id: str | None = None, elapsed_seconds: float | None = None) -> None:
    super().__init__(message)
    self.provider_job_id = provider_job_id
    self.elapsed_seconds = elapsed_seconds


class JobStalledError(TranscoderError):
  """Raised when a queue entry exceeded the tolerated number of stalls."""


class JobCanceledError(TranscoderError):
  """Raised when a job is canceled while it is being processed."""


class LeaseRevokedError(TranscoderError):
  """Raised inside a worker whose claim on a queue entry is no longer valid."""


class QueueShutdownError(TranscoderError):
  """Raised when work is submitted to a queue that is shutting down."""


_NON_RETRYABLE = (JobValidationError, NotFoundError, JobCanceledError, LeaseRevokedError, QueueShutdownError)


def is_retryable(exc: BaseException) -> bool:
  """Return whether a failed attempt may be rescheduled by the retry policy."""
  # Data-integrity faults and explicit cancellation never benefit from another attempt.
  return not isinstance(exc, _NON_RETRYABLE)
