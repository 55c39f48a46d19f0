"""Public facade over the queue, worker pool and notifier."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from transcoder.jobs.models import JobOptions, JobRecord, JobStatusView, QueueState, QueueStats
from transcoder.jobs.queue import RestoreReport, TranscodeQueue
from transcoder.jobs.worker import WorkerPool
from transcoder.notifications.service import Notifier

logger = logging.getLogger(__name__)

NOTIFICATION_DRAIN_SECONDS = 5.0


@dataclass(frozen=True)
class HealthThresholds:
  """Limits beyond which the queue is reported unhealthy."""

  max_waiting: int = 1000
  max_failed: int = 100
  min_success_rate: float = 0.95


@dataclass(frozen=True)
class QueueHealth:
  """Point-in-time health report for operators."""

  healthy: bool
  stats: QueueStats
  completed_total: int
  failed_total: int
  success_rate: float
  average_processing_time_ms: float | None
  issues: list[str] = field(default_factory=list)


class QueueSupervisor:
  """Owns the orchestrator lifecycle: start, enqueue, inspect, cancel, shut down."""

  def __init__(
    self,
    *,
    queue: TranscodeQueue,
    pool: WorkerPool,
    notifier: Notifier,
    shutdown_grace_seconds: float = 30.0,
    health_thresholds: HealthThresholds | None = None,
    closers: list[Callable[[], Awaitable[None]]] | None = None,
  ) -> None:
    self._queue = queue
    self._pool = pool
    self._notifier = notifier
    self._shutdown_grace = shutdown_grace_seconds
    self._thresholds = health_thresholds or HealthThresholds()
    self._closers = list(closers or [])
    self._shutdown_task: asyncio.Task[None] | None = None
    self._shutdown_requested = asyncio.Event()

  @property
  def queue(self) -> TranscodeQueue:
    return self._queue

  @property
  def is_shut_down(self) -> bool:
    return self._shutdown_task is not None and self._shutdown_task.done()

  async def recover(self) -> RestoreReport:
    """Reload persisted queue entries; call once before `start`."""
    return await self._pool.recover()

  def start(self) -> None:
    self._pool.start()

  async def enqueue(self, job_data: Mapping[str, Any] | JobRecord, options: JobOptions | None = None) -> str:
    """Validate and admit a transcode job; returns its id."""
    return await self._queue.enqueue(job_data, options)

  async def get_job_status(self, job_id: str) -> JobStatusView | None:
    entry = await self._queue.get(job_id)
    if entry is None:
      return None
    failure_reason = entry.last_error if entry.state in ("failed", "delayed") else None
    return JobStatusView(
      job_id=entry.entry_id,
      status=entry.state,
      progress=entry.progress,
      attempts_made=entry.attempts_made,
      job=entry.job,
      result=entry.result,
      failure_reason=failure_reason,
      processed_at=entry.processed_at,
      finished_at=entry.finished_at,
    )

  async def cancel_job(self, job_id: str) -> QueueState:
    """Cancel a queued or running job; raises `NotFoundError` for unknown ids."""
    return await self._queue.cancel(job_id)

  async def get_queue_stats(self) -> QueueStats:
    return await self._queue.stats()

  async def get_queue_health(self) -> QueueHealth:
    """Summarize counts and lifetime outcomes against the health thresholds."""
    stats = await self._queue.stats()
    counters = await self._queue.counters()
    finished = counters.completed + counters.failed
    # An idle queue with no history is healthy.
    success_rate = counters.completed / finished if finished else 1.0
    average_ms = counters.processing_ms_total / counters.completed if counters.completed else None

    issues: list[str] = []
    if stats.waiting > self._thresholds.max_waiting:
      issues.append(f"High number of waiting jobs: {stats.waiting}")
    if stats.failed > self._thresholds.max_failed:
      issues.append(f"High number of failed jobs: {stats.failed}")
    if finished and success_rate < self._thresholds.min_success_rate:
      issues.append(f"Low success rate: {success_rate * 100:.1f}%")

    return QueueHealth(
      healthy=not issues,
      stats=stats,
      completed_total=counters.completed,
      failed_total=counters.failed,
      success_rate=success_rate,
      average_processing_time_ms=average_ms,
      issues=issues,
    )

  async def shutdown(self) -> None:
    """Stop the orchestrator; concurrent and repeated calls share one shutdown."""
    if self._shutdown_task is None:
      self._shutdown_requested.set()
      self._shutdown_task = asyncio.create_task(self._shutdown())
    await asyncio.shield(self._shutdown_task)

  def request_shutdown(self) -> None:
    """Signal-handler friendly trigger; schedules shutdown without awaiting it."""
    if self._shutdown_task is None:
      logger.info("Shutdown requested")
      self._shutdown_requested.set()
      self._shutdown_task = asyncio.create_task(self._shutdown())

  async def wait_closed(self) -> None:
    """Block until a shutdown has been requested and has finished."""
    await self._shutdown_requested.wait()
    if self._shutdown_task is None:
      raise RuntimeError("Shutdown was requested without a shutdown task.")
    await asyncio.shield(self._shutdown_task)

  async def _shutdown(self) -> None:
    logger.info("Shutting down transcode orchestrator")
    # Closing first rejects new work and stops claims; active attempts keep running.
    await self._queue.close()
    await self._pool.stop(self._shutdown_grace)
    await self._notifier.drain(NOTIFICATION_DRAIN_SECONDS)

    for close in self._closers:
      try:
        await close()
      except Exception:  # noqa: BLE001
        logger.warning("Error releasing resource during shutdown", exc_info=True)
    logger.info("Transcode orchestrator shut down")
