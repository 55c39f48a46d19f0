"""Transcode queue with priority dispatch, retry policy, retention and write-through persistence."""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from transcoder.core.exceptions import JobStalledError, JobValidationError, LeaseRevokedError, NotFoundError, QueueShutdownError, is_retryable
from transcoder.jobs.cancellation import CANCELED_FAILURE_MESSAGE, CancellationToken
from transcoder.jobs.models import JobOptions, JobRecord, QueueEntry, QueueState, QueueStats, TranscodeResult
from transcoder.jobs.validation import validate_job_data
from transcoder.storage.queue_repo import QueueEntryRepository
from transcoder.utils.ids import generate_job_id, generate_lease_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
  """Bounded attempts with exponential backoff between them."""

  max_attempts: int = 3
  base_delay_seconds: float = 5.0

  def delay_for(self, attempt: int) -> float:
    """Delay before the next attempt after `attempt` failed (1-based)."""
    return self.base_delay_seconds * (2 ** (max(attempt, 1) - 1))


@dataclass(frozen=True)
class ClaimedJob:
  """A waiting entry handed to exactly one worker, identified by its lease."""

  entry_id: str
  lease_id: str
  job: JobRecord
  attempt: int
  token: CancellationToken


@dataclass(frozen=True)
class StallOutcome:
  """What the stall detector did with one silent active entry."""

  entry_id: str
  job: JobRecord
  state: QueueState
  attempts_made: int
  error: str | None = None
  canceled: bool = False


@dataclass(frozen=True)
class QueueCounters:
  """Lifetime outcome counters, unaffected by pruning."""

  completed: int
  failed: int
  processing_ms_total: int


@dataclass(frozen=True)
class RestoreReport:
  """Result of reloading persisted entries at startup."""

  restored: int
  requeued: int
  canceled: list[JobRecord] = field(default_factory=list)


def _utcnow() -> datetime:
  return datetime.now(UTC)


class TranscodeQueue:
  """Owns every queue entry; all state transitions happen under one lock.

  When a store is configured every transition is written through before the
  lock is released, and `restore` reloads the entries after a restart.
  Heartbeats stay in memory.
  """

  def __init__(
    self,
    *,
    retry_policy: RetryPolicy | None = None,
    default_priority: int = 7,
    retain_completed: int = 50,
    retain_failed: int = 100,
    default_segment_duration: int = 6,
    default_generate_thumbnail: bool = True,
    store: QueueEntryRepository | None = None,
    clock: Callable[[], float] = time.monotonic,
  ) -> None:
    self._retry_policy = retry_policy or RetryPolicy()
    self._default_priority = default_priority
    self._retain_completed = retain_completed
    self._retain_failed = retain_failed
    self._default_segment_duration = default_segment_duration
    self._default_generate_thumbnail = default_generate_thumbnail
    self._store = store
    self._clock = clock
    self._lock = asyncio.Lock()
    self._wakeup = asyncio.Event()
    self._entries: dict[str, QueueEntry] = {}
    self._tokens: dict[str, CancellationToken] = {}
    self._completed_order: deque[str] = deque()
    self._failed_order: deque[str] = deque()
    self._sequence = itertools.count()
    self._dirty: set[str] = set()
    self._removed: set[str] = set()
    self._closed = False
    self._completed_total = 0
    self._failed_total = 0
    self._processing_ms_total = 0

  @property
  def retry_policy(self) -> RetryPolicy:
    return self._retry_policy

  @property
  def closed(self) -> bool:
    return self._closed

  async def restore(self) -> RestoreReport:
    """Reload persisted entries; attempts left active by a previous process are requeued."""
    if self._store is None:
      return RestoreReport(restored=0, requeued=0)
    persisted = await self._store.load_entries()

    async with self._lock:
      now = self._clock()
      wall_now = _utcnow()
      restored = 0
      requeued = 0
      canceled: list[JobRecord] = []
      for entry in sorted(persisted, key=lambda item: item.sequence):
        if entry.entry_id in self._entries:
          continue
        entry.lease_id = None
        entry.last_heartbeat = None
        self._entries[entry.entry_id] = entry
        restored += 1
        if entry.state == "active" and entry.cancel_requested:
          entry.worker_id = None
          self._fail_locked(entry, CANCELED_FAILURE_MESSAGE, retryable=False)
          canceled.append(entry.job)
        elif entry.state == "active":
          # The owning worker died with the process; this is not a failed attempt.
          entry.state = "waiting"
          entry.worker_id = None
          entry.add_log("Recovered after restart; requeued.")
          self._dirty.add(entry.entry_id)
          requeued += 1
        elif entry.state == "delayed":
          remaining = (entry.due_at - wall_now).total_seconds() if entry.due_at is not None else 0.0
          entry.ready_at = now + max(remaining, 0.0)

      tracked = set(self._completed_order) | set(self._failed_order)
      terminal = sorted((entry for entry in self._entries.values() if entry.state in ("completed", "failed") and entry.entry_id not in tracked), key=lambda item: item.finished_at or item.enqueued_at)
      for entry in terminal:
        if entry.state == "completed":
          self._retain_locked(entry.entry_id, self._completed_order, self._retain_completed)
        else:
          self._retain_locked(entry.entry_id, self._failed_order, self._retain_failed)

      if self._entries:
        self._sequence = itertools.count(max(entry.sequence for entry in self._entries.values()) + 1)
      await self._flush_locked()
      self._wakeup.set()

    logger.info("Restored %d persisted queue entries; %d in-flight attempt(s) requeued", restored, requeued)
    return RestoreReport(restored=restored, requeued=requeued, canceled=canceled)

  async def enqueue(self, job_data: Mapping[str, Any] | JobRecord, options: JobOptions | None = None) -> str:
    """Validate and admit a job; returns the queue entry id (equal to the job id)."""
    options = options or JobOptions()
    if self._closed:
      raise QueueShutdownError("Transcode queue is shut down; not accepting new jobs.")

    # Reject bad options with the same error type as bad job data.
    priority = self._default_priority if options.priority is None else options.priority
    if priority < 0:
      raise JobValidationError("Priority must be zero or positive.", [{"field": "priority", "message": "must be >= 0"}])
    if options.delay_seconds < 0:
      raise JobValidationError("Delay must be zero or positive.", [{"field": "delay_seconds", "message": "must be >= 0"}])
    max_attempts = self._retry_policy.max_attempts if options.max_attempts is None else options.max_attempts
    if max_attempts < 1:
      raise JobValidationError("Max attempts must be at least 1.", [{"field": "max_attempts", "message": "must be >= 1"}])

    record = validate_job_data(job_data, job_id=options.job_id or "", default_segment_duration=self._default_segment_duration, default_generate_thumbnail=self._default_generate_thumbnail)
    if not record.job_id:
      record = dataclasses.replace(record, job_id=generate_job_id(record.asset_id))

    async with self._lock:
      if record.job_id in self._entries:
        raise JobValidationError(f"Job id already queued: {record.job_id}", [{"field": "job_id", "message": "already exists"}])

      entry = QueueEntry(entry_id=record.job_id, job=record, state="waiting", priority=priority, max_attempts=max_attempts, sequence=next(self._sequence), enqueued_at=_utcnow())
      if options.delay_seconds > 0:
        entry.state = "delayed"
        self._schedule_locked(entry, options.delay_seconds)
      entry.add_log(f"Enqueued with priority {priority}.")
      self._entries[entry.entry_id] = entry
      self._dirty.add(entry.entry_id)
      try:
        await self._flush_locked()
      except Exception:
        # Not admitted unless persisted.
        del self._entries[entry.entry_id]
        self._dirty.discard(entry.entry_id)
        raise
      self._wakeup.set()

    logger.info("Transcode job %s queued for asset %s (priority=%d, delay=%.1fs)", record.job_id, record.asset_id, priority, options.delay_seconds)
    return record.job_id

  async def get(self, entry_id: str) -> QueueEntry | None:
    """Return a snapshot of an entry, or None when unknown or pruned."""
    async with self._lock:
      self._promote_due_locked()
      await self._flush_locked()
      entry = self._entries.get(entry_id)
      if entry is None:
        return None
      return dataclasses.replace(entry, logs=list(entry.logs))

  async def cancel(self, entry_id: str) -> QueueState:
    """Remove a pending entry or flag an active one; returns the state seen at cancel time."""
    async with self._lock:
      self._promote_due_locked()
      entry = self._entries.get(entry_id)
      if entry is None:
        raise NotFoundError("Job", entry_id)

      state = entry.state
      if state in ("waiting", "delayed"):
        del self._entries[entry_id]
        self._removed.add(entry_id)
        logger.info("Transcode job %s canceled while %s; removed from queue", entry_id, state)
      elif state == "active":
        # Cooperative: the polling loop notices at its next poll boundary.
        entry.cancel_requested = True
        entry.add_log("Cancellation requested.")
        self._dirty.add(entry_id)
        token = self._tokens.get(entry.lease_id or "")
        if token is not None:
          token.cancel("canceled")
        logger.info("Transcode job %s cancellation requested while active", entry_id)
      else:
        logger.info("Transcode job %s already %s; cancel is a no-op", entry_id, state)
      await self._flush_locked()
      return state

  async def stats(self) -> QueueStats:
    async with self._lock:
      self._promote_due_locked()
      await self._flush_locked()
      counts = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}
      for entry in self._entries.values():
        counts[entry.state] += 1
      return QueueStats(**counts)

  async def counters(self) -> QueueCounters:
    async with self._lock:
      return QueueCounters(completed=self._completed_total, failed=self._failed_total, processing_ms_total=self._processing_ms_total)

  async def active_entry_ids(self) -> list[str]:
    async with self._lock:
      return [entry.entry_id for entry in self._entries.values() if entry.state == "active"]

  async def claim(self, worker_id: str) -> ClaimedJob | None:
    """Atomically move the next waiting entry to active for one worker."""
    async with self._lock:
      if self._closed:
        return None
      self._promote_due_locked()
      waiting = [entry for entry in self._entries.values() if entry.state == "waiting"]
      if not waiting:
        await self._flush_locked()
        return None

      # Higher priority first, then FIFO by enqueue order.
      entry = min(waiting, key=lambda item: (-item.priority, item.sequence))
      lease_id = generate_lease_id()
      token = CancellationToken()
      entry.state = "active"
      entry.lease_id = lease_id
      entry.worker_id = worker_id
      entry.last_heartbeat = self._clock()
      entry.processed_at = _utcnow()
      entry.add_log(f"Attempt {entry.attempts_made + 1}/{entry.max_attempts} claimed by {worker_id}.")
      self._tokens[lease_id] = token
      self._dirty.add(entry.entry_id)
      await self._flush_locked()
      return ClaimedJob(entry_id=entry.entry_id, lease_id=lease_id, job=entry.job, attempt=entry.attempts_made + 1, token=token)

  async def wait_for_work(self, timeout: float) -> None:
    """Sleep until something is enqueued or becomes due, bounded by `timeout`."""
    async with self._lock:
      next_due = self._next_due_in_locked()
    if next_due is not None:
      timeout = min(timeout, next_due)
    try:
      await asyncio.wait_for(self._wakeup.wait(), timeout=max(timeout, 0.0))
    except TimeoutError:
      pass
    self._wakeup.clear()

  def wake_waiters(self) -> None:
    self._wakeup.set()

  async def update_progress(self, entry_id: str, lease_id: str, progress: int, message: str | None = None) -> None:
    """Record attempt progress; doubles as a heartbeat for stall detection."""
    async with self._lock:
      entry = self._owned_entry_locked(entry_id, lease_id)
      entry.progress = max(0, min(100, int(progress)))
      entry.last_heartbeat = self._clock()
      if message:
        entry.add_log(message)
      self._dirty.add(entry_id)
      await self._flush_locked()
    logger.debug("Transcode job %s progress=%d", entry_id, progress)

  async def heartbeat(self, entry_id: str, lease_id: str) -> None:
    async with self._lock:
      entry = self._owned_entry_locked(entry_id, lease_id)
      entry.last_heartbeat = self._clock()

  async def complete(self, entry_id: str, lease_id: str, result: TranscodeResult) -> bool:
    """Mark an active entry completed; returns False for a stale lease."""
    async with self._lock:
      entry = self._entries.get(entry_id)
      if entry is None or entry.state != "active" or entry.lease_id != lease_id:
        logger.warning("Ignoring completion of %s from stale lease %s", entry_id, lease_id)
        return False
      self._release_lease_locked(entry)
      entry.state = "completed"
      entry.progress = 100
      entry.result = result
      entry.last_error = None
      entry.finished_at = _utcnow()
      entry.add_log("Completed.")
      self._completed_total += 1
      self._processing_ms_total += int(result.processing_time_ms or 0)
      self._dirty.add(entry_id)
      self._retain_locked(entry_id, self._completed_order, self._retain_completed)
      await self._flush_locked()
    return True

  async def fail(self, entry_id: str, lease_id: str, error: BaseException) -> QueueState | None:
    """Record a failed attempt and apply the retry policy.

    Returns the resulting state (`delayed` or `failed`), or None when the lease
    is stale and the report was ignored.
    """
    async with self._lock:
      entry = self._entries.get(entry_id)
      if entry is None or entry.state != "active" or entry.lease_id != lease_id:
        logger.warning("Ignoring failure of %s from stale lease %s: %s", entry_id, lease_id, error)
        return None
      self._release_lease_locked(entry)
      state = self._fail_locked(entry, str(error) or type(error).__name__, retryable=is_retryable(error) and not entry.cancel_requested)
      await self._flush_locked()
      return state

  async def abandon(self, entry_id: str, lease_id: str, reason: str) -> bool:
    """Fail an active entry permanently without retry (used during shutdown)."""
    async with self._lock:
      entry = self._entries.get(entry_id)
      if entry is None or entry.state != "active" or entry.lease_id != lease_id:
        return False
      self._release_lease_locked(entry)
      self._fail_locked(entry, reason, retryable=False)
      await self._flush_locked()
    return True

  async def promote_delayed(self) -> int:
    """Move due delayed entries back to waiting; returns how many moved."""
    async with self._lock:
      promoted = self._promote_due_locked()
      await self._flush_locked()
      return promoted

  async def find_stalled(self, *, stall_interval: float) -> list[str]:
    """Ids of active entries whose worker has been silent longer than `stall_interval`."""
    async with self._lock:
      return self._find_stalled_locked(stall_interval)

  async def requeue_stalled(self, entry_id: str, *, max_stalled_count: int) -> StallOutcome | None:
    """Revoke the lease of one stalled entry and requeue or fail it."""
    async with self._lock:
      entry = self._entries.get(entry_id)
      if entry is None or entry.state != "active":
        return None
      outcome = self._requeue_stalled_locked(entry, max_stalled_count)
      await self._flush_locked()
      return outcome

  async def handle_stalled(self, *, stall_interval: float, max_stalled_count: int) -> list[StallOutcome]:
    """Requeue or fail every stalled entry in one atomic pass."""
    async with self._lock:
      outcomes = [self._requeue_stalled_locked(self._entries[entry_id], max_stalled_count) for entry_id in self._find_stalled_locked(stall_interval)]
      await self._flush_locked()
      return outcomes

  async def close(self) -> None:
    """Stop dispatch; persisted entries stay for the next process."""
    async with self._lock:
      self._closed = True
      self._wakeup.set()

  async def _flush_locked(self) -> None:
    saved = [self._entries[entry_id] for entry_id in self._dirty if entry_id in self._entries]
    removed = [entry_id for entry_id in self._removed if entry_id not in self._entries]
    if self._store is not None:
      if saved:
        await self._store.save_entries(saved)
      if removed:
        await self._store.delete_entries(removed)
    # Pending writes survive a store error and go out with the next transition.
    self._dirty.clear()
    self._removed.clear()

  def _owned_entry_locked(self, entry_id: str, lease_id: str) -> QueueEntry:
    entry = self._entries.get(entry_id)
    if entry is None or entry.state != "active" or entry.lease_id != lease_id:
      raise LeaseRevokedError(f"Lease {lease_id} no longer owns queue entry {entry_id}.")
    return entry

  def _release_lease_locked(self, entry: QueueEntry) -> CancellationToken | None:
    token = self._tokens.pop(entry.lease_id or "", None)
    entry.lease_id = None
    entry.worker_id = None
    entry.last_heartbeat = None
    return token

  def _schedule_locked(self, entry: QueueEntry, delay: float) -> None:
    entry.ready_at = self._clock() + delay
    entry.due_at = _utcnow() + timedelta(seconds=delay)

  def _fail_locked(self, entry: QueueEntry, message: str, *, retryable: bool) -> QueueState:
    entry.attempts_made += 1
    entry.last_error = message
    self._dirty.add(entry.entry_id)
    if retryable and entry.attempts_made < entry.max_attempts:
      delay = self._retry_policy.delay_for(entry.attempts_made)
      entry.state = "delayed"
      self._schedule_locked(entry, delay)
      entry.add_log(f"Attempt {entry.attempts_made} failed: {message}. Retrying in {delay:g}s.")
      logger.warning("Transcode job %s attempt %d/%d failed; retrying in %gs: %s", entry.entry_id, entry.attempts_made, entry.max_attempts, delay, message)
      return "delayed"

    entry.state = "failed"
    entry.finished_at = _utcnow()
    entry.add_log(f"Attempt {entry.attempts_made} failed permanently: {message}")
    logger.error("Transcode job %s failed after %d attempt(s): %s", entry.entry_id, entry.attempts_made, message)
    self._failed_total += 1
    self._retain_locked(entry.entry_id, self._failed_order, self._retain_failed)
    return "failed"

  def _find_stalled_locked(self, stall_interval: float) -> list[str]:
    now = self._clock()
    return [entry.entry_id for entry in self._entries.values() if entry.state == "active" and entry.last_heartbeat is not None and now - entry.last_heartbeat > stall_interval]

  def _requeue_stalled_locked(self, entry: QueueEntry, max_stalled_count: int) -> StallOutcome:
    # The old attempt loses ownership whichever way this goes.
    token = self._release_lease_locked(entry)
    if token is not None:
      token.cancel("revoked")
    entry.stalled_count += 1
    self._dirty.add(entry.entry_id)

    if entry.cancel_requested:
      # A canceled job is never handed to another worker.
      logger.info("Transcode job %s stalled after cancellation; failing it", entry.entry_id)
      state = self._fail_locked(entry, CANCELED_FAILURE_MESSAGE, retryable=False)
      return StallOutcome(entry_id=entry.entry_id, job=entry.job, state=state, attempts_made=entry.attempts_made, error=CANCELED_FAILURE_MESSAGE, canceled=True)

    if entry.stalled_count > max_stalled_count:
      logger.error("Transcode job %s stalled %d times; failing attempt", entry.entry_id, entry.stalled_count)
      entry.stalled_count = 0
      message = str(JobStalledError("Job stalled more than the allowable limit."))
      state = self._fail_locked(entry, message, retryable=True)
      return StallOutcome(entry_id=entry.entry_id, job=entry.job, state=state, attempts_made=entry.attempts_made, error=message)

    # A first stall is treated as an infrastructure hiccup and costs no attempt.
    logger.warning("Transcode job %s stalled; requeued without consuming an attempt", entry.entry_id)
    entry.state = "waiting"
    entry.add_log("Stalled; requeued.")
    self._wakeup.set()
    return StallOutcome(entry_id=entry.entry_id, job=entry.job, state="waiting", attempts_made=entry.attempts_made)

  def _retain_locked(self, entry_id: str, order: deque[str], limit: int) -> None:
    order.append(entry_id)
    # Lazy eviction: only terminal entries are pruned, oldest first.
    while len(order) > limit:
      evicted = order.popleft()
      entry = self._entries.get(evicted)
      if entry is not None and entry.state in ("completed", "failed"):
        del self._entries[evicted]
        self._removed.add(evicted)

  def _promote_due_locked(self) -> int:
    now = self._clock()
    promoted = 0
    for entry in self._entries.values():
      if entry.state == "delayed" and entry.ready_at is not None and entry.ready_at <= now:
        entry.state = "waiting"
        entry.ready_at = None
        entry.due_at = None
        self._dirty.add(entry.entry_id)
        promoted += 1
    if promoted:
      self._wakeup.set()
    return promoted

  def _next_due_in_locked(self) -> float | None:
    due = [entry.ready_at for entry in self._entries.values() if entry.state == "delayed" and entry.ready_at is not None]
    if not due:
      return None
    return max(min(due) - self._clock(), 0.0)
