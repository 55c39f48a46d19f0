"""Bounded pool of workers that claim queue entries and run the polling loop."""

from __future__ import annotations

import asyncio
import logging

from transcoder.core.exceptions import JobCanceledError, LeaseRevokedError
from transcoder.jobs.cancellation import CANCELED_FAILURE_MESSAGE
from transcoder.jobs.models import TranscodeResult
from transcoder.jobs.polling import ProviderPollingLoop
from transcoder.jobs.progress import ProgressReporter
from transcoder.jobs.queue import ClaimedJob, RestoreReport, TranscodeQueue
from transcoder.jobs.reconciler import StatusReconciler

logger = logging.getLogger(__name__)

SHUTDOWN_FAILURE_MESSAGE = "Transcoding interrupted by orchestrator shutdown"
STALLED_FAILURE_MESSAGE = "Job stalled more than the allowable limit."
ABANDON_TIMEOUT_SECONDS = 5.0


class WorkerPool:
  """Runs up to `concurrency` attempts at once and reports their outcomes to the queue."""

  def __init__(
    self,
    *,
    queue: TranscodeQueue,
    polling_loop: ProviderPollingLoop,
    reconciler: StatusReconciler,
    concurrency: int = 2,
    stall_interval_seconds: float = 30.0,
    max_stalled_count: int = 1,
    idle_wait_seconds: float = 1.0,
  ) -> None:
    if concurrency < 1:
      raise ValueError("Worker concurrency must be at least 1.")
    self._queue = queue
    self._polling_loop = polling_loop
    self._reconciler = reconciler
    self._concurrency = concurrency
    self._stall_interval = stall_interval_seconds
    self._max_stalled_count = max_stalled_count
    self._idle_wait = idle_wait_seconds
    self._worker_tasks: list[asyncio.Task[None]] = []
    self._maintenance_tasks: list[asyncio.Task[None]] = []
    self._inflight: dict[str, ClaimedJob] = {}
    self._stop_event = asyncio.Event()
    self._stopping = False

  @property
  def running(self) -> bool:
    return bool(self._worker_tasks) and not self._stopping

  @property
  def inflight(self) -> int:
    return len(self._inflight)

  def start(self) -> None:
    if self._worker_tasks:
      return
    for index in range(self._concurrency):
      worker_id = f"worker-{index + 1}"
      self._worker_tasks.append(asyncio.create_task(self._run_worker(worker_id), name=f"transcoder-{worker_id}"))
    self._maintenance_tasks = [
      asyncio.create_task(self._monitor_stalls(), name="transcoder-stall-monitor"),
      asyncio.create_task(self._promote_delayed(), name="transcoder-delayed-promoter"),
    ]
    logger.info("Worker pool started with %d worker(s)", self._concurrency)

  async def stop(self, grace_seconds: float) -> None:
    """Stop claiming, let in-flight attempts finish within the grace period, then abandon the rest."""
    if not self._worker_tasks or self._stopping:
      return
    self._stopping = True
    self._stop_event.set()
    self._queue.wake_waiters()
    logger.info("Worker pool stopping; %d attempt(s) in flight, grace %gs", len(self._inflight), grace_seconds)

    _done, pending = await asyncio.wait(self._worker_tasks, timeout=max(grace_seconds, 0.0))
    if pending:
      # Workers record their own abandonment when the token fires.
      for claimed in list(self._inflight.values()):
        claimed.token.cancel("shutdown")
      _done, pending = await asyncio.wait(pending, timeout=ABANDON_TIMEOUT_SECONDS)
      for task in pending:
        task.cancel()
      await asyncio.gather(*pending, return_exceptions=True)

    for task in self._maintenance_tasks:
      task.cancel()
    await asyncio.gather(*self._maintenance_tasks, return_exceptions=True)
    logger.info("Worker pool stopped")

  async def _run_worker(self, worker_id: str) -> None:
    while not self._stopping:
      try:
        claimed = await self._queue.claim(worker_id)
      except Exception:  # noqa: BLE001
        logger.error("Worker %s could not claim work", worker_id, exc_info=True)
        await self._queue.wait_for_work(self._idle_wait)
        continue
      if claimed is None:
        if self._queue.closed:
          break
        await self._queue.wait_for_work(self._idle_wait)
        continue

      self._inflight[claimed.lease_id] = claimed
      try:
        await self._execute(claimed, worker_id)
      except Exception:  # noqa: BLE001
        # Keep the worker alive; the stall monitor reclaims the entry if needed.
        logger.error("Worker %s crashed while handling %s", worker_id, claimed.entry_id, exc_info=True)
      finally:
        self._inflight.pop(claimed.lease_id, None)

  async def _execute(self, claimed: ClaimedJob, worker_id: str) -> None:
    logger.info("Worker %s processing %s (attempt %d)", worker_id, claimed.entry_id, claimed.attempt)
    reporter = ProgressReporter(queue=self._queue, claimed=claimed)
    job_task = asyncio.create_task(self._polling_loop.run(claimed.job, reporter, claimed.token))
    revoked_task = asyncio.create_task(claimed.token.wait_revoked())

    try:
      done, _pending = await asyncio.wait({job_task, revoked_task}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
      job_task.cancel()
      revoked_task.cancel()
      raise
    finally:
      revoked_task.cancel()

    if job_task not in done:
      job_task.cancel()
      await asyncio.gather(job_task, return_exceptions=True)
      await self._handle_revoked(claimed)
      return

    try:
      result = job_task.result()
    except LeaseRevokedError:
      await self._handle_revoked(claimed)
    except Exception as exc:  # noqa: BLE001
      await self._handle_failure(claimed, exc)
    else:
      await self._handle_success(claimed, result)

  async def _handle_success(self, claimed: ClaimedJob, result: TranscodeResult) -> None:
    if not await self._queue.complete(claimed.entry_id, claimed.lease_id, result):
      return
    logger.info("Transcode job %s completed (asset %s, %s ms)", claimed.entry_id, claimed.job.asset_id, result.processing_time_ms)
    self._reconciler.notify_completed(claimed.job, result, attempts=claimed.attempt)

  async def _handle_failure(self, claimed: ClaimedJob, exc: Exception) -> None:
    state = await self._queue.fail(claimed.entry_id, claimed.lease_id, exc)
    if state != "failed":
      return
    if isinstance(exc, JobCanceledError):
      return
    self._reconciler.notify_failed(claimed.job, str(exc) or type(exc).__name__, attempts=claimed.attempt)

  async def _handle_revoked(self, claimed: ClaimedJob) -> None:
    token = claimed.token
    if token.revoke_reason != "shutdown" and not self._stopping:
      logger.warning("Attempt %d of %s lost its lease (%s); abandoned", claimed.attempt, claimed.entry_id, token.reason)
      return

    # A cancel that never reached a poll boundary still ends as a cancellation.
    message = CANCELED_FAILURE_MESSAGE if token.cancel_requested else SHUTDOWN_FAILURE_MESSAGE
    if not await self._queue.abandon(claimed.entry_id, claimed.lease_id, message):
      return
    logger.warning("Transcode job %s abandoned at shutdown: %s", claimed.entry_id, message)
    await self._reconciler.apply_failure(claimed.job.asset_id, message)
    if not token.cancel_requested:
      self._reconciler.notify_failed(claimed.job, message, attempts=claimed.attempt)

  async def _monitor_stalls(self) -> None:
    while not self._stopping:
      try:
        await asyncio.wait_for(self._stop_event.wait(), timeout=self._stall_interval)
        return
      except TimeoutError:
        pass
      try:
        await self.check_stalled()
      except Exception:  # noqa: BLE001
        logger.error("Stall check failed", exc_info=True)

  async def _promote_delayed(self) -> None:
    while not self._stopping:
      try:
        await asyncio.wait_for(self._stop_event.wait(), timeout=self._idle_wait)
        return
      except TimeoutError:
        pass
      try:
        if await self._queue.promote_delayed():
          self._queue.wake_waiters()
      except Exception:  # noqa: BLE001
        logger.error("Delayed promotion failed", exc_info=True)

  async def check_stalled(self) -> None:
    """Run one stall-detection pass and reconcile entries it failed."""
    outcomes = await self._queue.handle_stalled(stall_interval=self._stall_interval, max_stalled_count=self._max_stalled_count)
    for outcome in outcomes:
      if outcome.state == "waiting":
        continue
      # Delayed entries are failed attempts too; the asset reflects them until the retry starts.
      message = outcome.error or STALLED_FAILURE_MESSAGE
      await self._reconciler.apply_failure(outcome.job.asset_id, message)
      if outcome.state == "failed" and not outcome.canceled:
        self._reconciler.notify_failed(outcome.job, message, attempts=outcome.attempts_made)

  async def recover(self) -> RestoreReport:
    """Reload persisted entries before the workers start and settle canceled attempts."""
    report = await self._queue.restore()
    for job in report.canceled:
      await self._reconciler.apply_failure(job.asset_id, CANCELED_FAILURE_MESSAGE)
    return report
