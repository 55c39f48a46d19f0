"""Per-attempt state machine: submit to the provider and poll to a terminal state."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from enum import Enum

from transcoder.core.exceptions import JobCanceledError, LeaseRevokedError, NotFoundError, PollingTimeoutError, ProviderJobFailedError
from transcoder.jobs.cancellation import CANCELED_FAILURE_MESSAGE, CancellationToken
from transcoder.jobs.models import JobRecord, TranscodeOutput, TranscodeResult
from transcoder.jobs.progress import ProgressReporter
from transcoder.jobs.reconciler import StatusReconciler
from transcoder.providers.contracts import ProviderJobHandle, ProviderJobStatus, ProviderState, ResolutionSpec, TranscodeRequest, TranscodingProvider
from transcoder.storage.assets_repo import AssetRepository

logger = logging.getLogger(__name__)

PROGRESS_STARTED = 10
PROGRESS_ASSET_MARKED = 20
PROGRESS_SUBMITTED = 30
PROGRESS_POLL_SPAN = 60
PROGRESS_FINALIZING = 95
PROGRESS_DONE = 100

DEFAULT_PROVIDER_FAILURE_MESSAGE = "Transcoding provider job failed"


class PollingState(str, Enum):
  NOT_SUBMITTED = "NOT_SUBMITTED"
  SUBMITTED = "SUBMITTED"
  POLLING = "POLLING"
  COMPLETE = "COMPLETE"
  FAILED = "FAILED"
  TIMED_OUT = "TIMED_OUT"


def scale_provider_progress(provider_progress: float) -> int:
  """Map provider progress 0-100 into the 30-90 band of overall job progress."""
  clamped = max(0.0, min(100.0, float(provider_progress)))
  return round(PROGRESS_SUBMITTED + clamped * (PROGRESS_POLL_SPAN / 100))


def build_transcode_request(job: JobRecord) -> TranscodeRequest:
  return TranscodeRequest(
    source_location=job.source_location,
    output_prefix=job.output_prefix,
    job_name=job.job_name,
    resolutions=[ResolutionSpec(name=rung.name, width=rung.width, height=rung.height, bitrate=rung.bitrate, max_bitrate=rung.max_bitrate) for rung in job.resolution_profile],
    segment_duration_seconds=job.segment_duration_seconds,
    generate_thumbnail=job.generate_thumbnail,
    metadata={**job.metadata, "asset_id": job.asset_id, "original_file_name": job.original_file_name, "requested_by": job.requested_by},
  )


class ProviderPollingLoop:
  """Runs one attempt of a transcode job to COMPLETE, FAILED or TIMED_OUT."""

  def __init__(
    self,
    *,
    provider: TranscodingProvider,
    asset_repo: AssetRepository,
    reconciler: StatusReconciler,
    poll_interval_seconds: float = 30.0,
    poll_timeout_seconds: float = 30 * 60.0,
    heartbeat_interval_seconds: float = 15.0,
    clock: Callable[[], float] = time.monotonic,
  ) -> None:
    self._provider = provider
    self._asset_repo = asset_repo
    self._reconciler = reconciler
    self._poll_interval = poll_interval_seconds
    self._poll_timeout = poll_timeout_seconds
    self._heartbeat_interval = max(heartbeat_interval_seconds, 0.001)
    self._clock = clock

  async def run(self, job: JobRecord, reporter: ProgressReporter, token: CancellationToken) -> TranscodeResult:
    """Execute one attempt; raises on any non-successful outcome."""
    started = self._clock()
    state = PollingState.NOT_SUBMITTED
    handle: ProviderJobHandle | None = None
    await reporter.report(PROGRESS_STARTED, "Attempt started.")

    asset = await self._asset_repo.find_by_id(job.asset_id)
    if asset is None:
      raise NotFoundError("Video asset", job.asset_id)

    try:
      await self._reconciler.mark_in_progress(job.asset_id)
      await reporter.report(PROGRESS_ASSET_MARKED, "Asset marked in progress.")

      token.raise_if_set()
      handle = await self._provider.submit(build_transcode_request(job))
      state = PollingState.SUBMITTED
      logger.info("Job %s submitted to provider as %s", job.job_id, handle.provider_job_id)
      await self._reconciler.mark_in_progress(job.asset_id, provider_job_id=handle.provider_job_id)
      await reporter.report(PROGRESS_SUBMITTED, f"Submitted to provider as {handle.provider_job_id}.")

      state = PollingState.POLLING
      result = await self._poll(job, handle, reporter, token)
      state = PollingState.COMPLETE

    except (ProviderJobFailedError, PollingTimeoutError):
      # Already reconciled where the terminal state was detected.
      raise

    except LeaseRevokedError:
      # Another attempt owns the entry now; leave asset state to it.
      logger.warning("Job %s attempt lost its lease in state %s; stopping", job.job_id, state.value)
      raise

    except JobCanceledError:
      logger.info("Job %s canceled in state %s", job.job_id, state.value)
      if handle is not None:
        await self._cancel_provider_job(handle.provider_job_id)
      await self._reconciler.apply_failure(job.asset_id, CANCELED_FAILURE_MESSAGE)
      raise

    except Exception as exc:
      logger.error("Job %s failed in state %s: %s", job.job_id, state.value, exc)
      await self._reconciler.apply_failure(job.asset_id, str(exc) or type(exc).__name__)
      raise

    elapsed_ms = int((self._clock() - started) * 1000)
    logger.info("Job %s finished in %d ms", job.job_id, elapsed_ms)
    return TranscodeResult(asset_id=result.asset_id, provider_job_id=result.provider_job_id, outputs=result.outputs, streaming_urls=result.streaming_urls, manifest_url=result.manifest_url, processing_time_ms=elapsed_ms)

  async def _poll(self, job: JobRecord, handle: ProviderJobHandle, reporter: ProgressReporter, token: CancellationToken) -> TranscodeResult:
    submitted_at = self._clock()
    deadline = submitted_at + self._poll_timeout
    provider_job_id = handle.provider_job_id

    while self._clock() < deadline:
      token.raise_if_set()
      status = await self._fetch_status(job, provider_job_id)

      if status is not None:
        handle.state = status.state
        if status.state == ProviderState.COMPLETE:
          return await self._complete(job, handle, status, reporter)
        if status.state in (ProviderState.ERROR, ProviderState.CANCELED):
          message = status.error_message or DEFAULT_PROVIDER_FAILURE_MESSAGE
          logger.error("Provider job %s for %s ended %s: %s", provider_job_id, job.job_id, status.state.value, message)
          await self._reconciler.apply_failure(job.asset_id, message)
          raise ProviderJobFailedError(message, provider_job_id=provider_job_id, provider_state=status.state.value)
        if status.progress is not None:
          handle.progress = status.progress
          await reporter.report(scale_provider_progress(status.progress))
        else:
          await reporter.heartbeat()

      remaining = deadline - self._clock()
      if remaining <= 0:
        break
      await self._sleep(min(self._poll_interval, remaining), reporter, token)

    elapsed = self._clock() - submitted_at
    message = f"Transcoding timed out after {self._poll_timeout / 60:g} minutes waiting for provider job {provider_job_id}"
    logger.error("Job %s: %s", job.job_id, message)
    await self._reconciler.apply_failure(job.asset_id, message)
    raise PollingTimeoutError(message, provider_job_id=provider_job_id, elapsed_seconds=elapsed)

  async def _fetch_status(self, job: JobRecord, provider_job_id: str) -> ProviderJobStatus | None:
    """Poll once; transient errors are logged and swallowed so the loop keeps going."""
    try:
      return await self._provider.get_status(provider_job_id)
    except NotFoundError:
      raise
    except Exception as exc:  # noqa: BLE001
      logger.warning("Error polling provider job %s for %s; will retry: %s", provider_job_id, job.job_id, exc)
      return None

  async def _complete(self, job: JobRecord, handle: ProviderJobHandle, status: ProviderJobStatus, reporter: ProgressReporter) -> TranscodeResult:
    await reporter.report(PROGRESS_FINALIZING, "Provider reported completion.")
    outputs = [TranscodeOutput(resolution=item.resolution, url=item.url, bitrate=item.bitrate, file_size=item.file_size) for item in status.outputs]
    result = await self._reconciler.apply_completion(job, provider_job_id=handle.provider_job_id, outputs=outputs)
    await reporter.report(PROGRESS_DONE, "Asset updated.")
    return result

  async def _sleep(self, seconds: float, reporter: ProgressReporter, token: CancellationToken) -> None:
    """Cancellable wait between polls, heartbeating so a healthy wait never looks stalled."""
    wake_at = self._clock() + seconds
    while True:
      remaining = wake_at - self._clock()
      if remaining <= 0:
        return
      if await token.wait(min(remaining, self._heartbeat_interval)):
        token.raise_if_set()
      await reporter.heartbeat()

  async def _cancel_provider_job(self, provider_job_id: str) -> None:
    try:
      await self._provider.cancel(provider_job_id)
    except Exception as exc:  # noqa: BLE001
      logger.warning("Best-effort provider cancel of %s failed: %s", provider_job_id, exc)
