"""Best-effort dispatch of outcome events to a notification sink."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from transcoder.jobs.models import JobRecord, TranscodeResult
from transcoder.notifications.contracts import NotificationEvent, NotificationProviderError, NotificationSink

logger = logging.getLogger(__name__)


class Notifier:
  """Fires events at a sink in the background; failures are logged, never raised."""

  def __init__(self, *, sink: NotificationSink) -> None:
    self._sink = sink
    self._pending: set[asyncio.Task[None]] = set()

  @property
  def pending(self) -> int:
    return len(self._pending)

  def publish(self, event: NotificationEvent) -> None:
    """Schedule delivery without blocking the caller."""
    task = asyncio.create_task(self._deliver(event))
    self._pending.add(task)
    task.add_done_callback(self._pending.discard)
    task.add_done_callback(self._log_task_error)

  async def _deliver(self, event: NotificationEvent) -> None:
    try:
      await self._sink.notify(event)
    except NotificationProviderError as exc:
      # Provider-level errors are often expected (e.g. endpoint down); skip the traceback.
      logger.error("Notification %s for job %s failed (provider error): %s", event.event_type, event.job_id, exc)
    except Exception as exc:  # noqa: BLE001
      logger.error("Notification %s for job %s failed: %s", event.event_type, event.job_id, exc, exc_info=True)

  @staticmethod
  def _log_task_error(task: asyncio.Task[None]) -> None:
    """Log background task exceptions to avoid silent delivery failures."""
    if task.cancelled():
      return
    try:
      _ = task.result()
    except Exception as exc:  # noqa: BLE001
      logger.error("Background notification task failed: %s", exc, exc_info=True)

  async def drain(self, timeout: float) -> None:
    """Wait for in-flight deliveries, cancelling whatever is left after `timeout`."""
    if not self._pending:
      return
    pending = set(self._pending)
    _done, still_pending = await asyncio.wait(pending, timeout=timeout)
    for task in still_pending:
      task.cancel()
    if still_pending:
      logger.warning("Dropped %d undelivered notification(s) at shutdown", len(still_pending))
      await asyncio.gather(*still_pending, return_exceptions=True)

  def notify_completed(self, *, job: JobRecord, result: TranscodeResult, attempts: int) -> None:
    """Tell the uploader their video is ready."""
    self.publish(
      NotificationEvent(
        event_type="transcode.completed",
        job_id=job.job_id,
        asset_id=job.asset_id,
        recipient_id=job.requested_by,
        occurred_at=_now_iso(),
        data={
          "original_file_name": job.original_file_name,
          "manifest_url": result.manifest_url,
          "resolutions": [output.resolution for output in result.outputs],
          "processing_time_ms": result.processing_time_ms,
          "attempts": attempts,
        },
      )
    )

  def notify_failed(self, *, job: JobRecord, reason: str, attempts: int) -> None:
    """Tell the uploader processing gave up."""
    self.publish(
      NotificationEvent(
        event_type="transcode.failed",
        job_id=job.job_id,
        asset_id=job.asset_id,
        recipient_id=job.requested_by,
        occurred_at=_now_iso(),
        data={"original_file_name": job.original_file_name, "error_message": reason, "attempts": attempts},
      )
    )


def _now_iso() -> str:
  return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
