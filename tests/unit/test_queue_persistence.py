from __future__ import annotations

import pytest

from transcoder.jobs.cancellation import CANCELED_FAILURE_MESSAGE
from transcoder.jobs.models import JobOptions, TranscodeResult
from transcoder.jobs.queue import TranscodeQueue


class ManualClock:
  def __init__(self) -> None:
    self.now = 500.0

  def __call__(self) -> float:
    return self.now

  def advance(self, seconds: float) -> None:
    self.now += seconds


def _result(asset_id: str) -> TranscodeResult:
  return TranscodeResult(asset_id=asset_id, provider_job_id="prov-1", outputs=(), streaming_urls={"720p": "u"}, manifest_url="u", processing_time_ms=10)


@pytest.mark.anyio
async def test_transitions_are_written_through(queue_store, job_data) -> None:
  queue = TranscodeQueue(store=queue_store)
  job_id = await queue.enqueue(job_data())
  assert queue_store.entries[job_id].state == "waiting"

  claimed = await queue.claim("worker-1")
  assert queue_store.entries[job_id].state == "active"
  assert queue_store.entries[job_id].worker_id == "worker-1"

  await queue.update_progress(job_id, claimed.lease_id, 40, "Polling.")
  assert queue_store.entries[job_id].progress == 40

  await queue.complete(job_id, claimed.lease_id, _result("asset-1"))
  stored = queue_store.entries[job_id]
  assert stored.state == "completed"
  assert stored.result.streaming_urls == {"720p": "u"}


@pytest.mark.anyio
async def test_restart_restores_pending_work_and_requeues_in_flight(queue_store, job_data) -> None:
  first = TranscodeQueue(store=queue_store)
  running = await first.enqueue(job_data("asset-1"))
  waiting = await first.enqueue(job_data("asset-2"))
  delayed = await first.enqueue(job_data("asset-3"), JobOptions(delay_seconds=60))
  claimed = await first.claim("worker-1")
  assert claimed.entry_id == running

  clock = ManualClock()
  second = TranscodeQueue(store=queue_store, clock=clock)
  report = await second.restore()

  assert (report.restored, report.requeued, report.canceled) == (3, 1, [])
  stats = await second.stats()
  assert (stats.waiting, stats.active, stats.delayed) == (2, 0, 1)
  assert queue_store.entries[running].state == "waiting"

  # The interrupted attempt keeps its place in line and its attempt budget.
  later = await second.enqueue(job_data("asset-4"))
  order = [(await second.claim("worker-2")).entry_id for _ in range(3)]
  assert order == [running, waiting, later]
  assert (await second.get(running)).attempts_made == 0

  assert await second.promote_delayed() == 0
  clock.advance(61)
  assert await second.promote_delayed() == 1
  assert (await second.claim("worker-2")).entry_id == delayed


@pytest.mark.anyio
async def test_restart_fails_active_entry_that_was_canceled(queue_store, job_data) -> None:
  first = TranscodeQueue(store=queue_store)
  job_id = await first.enqueue(job_data())
  await first.claim("worker-1")
  await first.cancel(job_id)

  second = TranscodeQueue(store=queue_store)
  report = await second.restore()

  assert [job.job_id for job in report.canceled] == [job_id]
  entry = await second.get(job_id)
  assert entry.state == "failed"
  assert entry.last_error == CANCELED_FAILURE_MESSAGE
  assert await second.claim("worker-2") is None
  assert queue_store.entries[job_id].state == "failed"


@pytest.mark.anyio
async def test_entry_is_not_admitted_when_it_cannot_be_persisted(queue_store, job_data) -> None:
  queue = TranscodeQueue(store=queue_store)
  queue_store.save_error = RuntimeError("database unavailable")

  with pytest.raises(RuntimeError):
    await queue.enqueue(job_data())

  queue_store.save_error = None
  assert (await queue.stats()).total == 0
  assert queue_store.entries == {}


@pytest.mark.anyio
async def test_removed_and_pruned_entries_leave_the_store(queue_store, job_data) -> None:
  queue = TranscodeQueue(store=queue_store, retain_completed=1)
  canceled = await queue.enqueue(job_data("asset-1"), JobOptions(delay_seconds=30))
  await queue.cancel(canceled)
  assert canceled not in queue_store.entries

  done = []
  for asset_id in ("asset-2", "asset-3"):
    job_id = await queue.enqueue(job_data(asset_id))
    claimed = await queue.claim("worker-1")
    await queue.complete(job_id, claimed.lease_id, _result(asset_id))
    done.append(job_id)

  assert list(queue_store.entries) == [done[1]]


@pytest.mark.anyio
async def test_restore_applies_retention_to_history(queue_store, job_data) -> None:
  first = TranscodeQueue(store=queue_store)
  done = []
  for asset_id in ("asset-1", "asset-2", "asset-3"):
    job_id = await first.enqueue(job_data(asset_id))
    claimed = await first.claim("worker-1")
    await first.complete(job_id, claimed.lease_id, _result(asset_id))
    done.append(job_id)

  second = TranscodeQueue(store=queue_store, retain_completed=2)
  await second.restore()

  assert await second.get(done[0]) is None
  assert (await second.get(done[2])).state == "completed"
  assert sorted(queue_store.entries) == sorted(done[1:])


@pytest.mark.anyio
async def test_queue_without_store_restores_nothing(job_data) -> None:
  queue = TranscodeQueue()
  await queue.enqueue(job_data())
  report = await queue.restore()
  assert (report.restored, report.requeued) == (0, 0)
