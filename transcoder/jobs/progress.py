"""Progress reporting from a running attempt back to its queue entry."""

from __future__ import annotations

from transcoder.jobs.queue import ClaimedJob, TranscodeQueue


class ProgressReporter:
  """Report progress and heartbeats for one claimed attempt.

  Every call proves the attempt is alive. Calls made after the entry was
  reassigned raise `LeaseRevokedError` so a stale attempt stops writing.
  """

  def __init__(self, *, queue: TranscodeQueue, claimed: ClaimedJob) -> None:
    self._queue = queue
    self._entry_id = claimed.entry_id
    self._lease_id = claimed.lease_id
    self._last_progress = 0

  @property
  def last_progress(self) -> int:
    return self._last_progress

  async def report(self, progress: int, message: str | None = None) -> None:
    """Publish a progress percentage in [0, 100]."""
    self._last_progress = max(0, min(100, int(progress)))
    await self._queue.update_progress(self._entry_id, self._lease_id, self._last_progress, message)

  async def heartbeat(self) -> None:
    await self._queue.heartbeat(self._entry_id, self._lease_id)
