from __future__ import annotations

import asyncio

import pytest

from transcoder.core.exceptions import JobCanceledError, LeaseRevokedError
from transcoder.jobs.cancellation import CancellationToken
from transcoder.jobs.progress import ProgressReporter
from transcoder.jobs.queue import TranscodeQueue


@pytest.mark.anyio
async def test_token_wait_times_out_when_not_cancelled() -> None:
  token = CancellationToken()
  assert await token.wait(0.01) is False
  token.raise_if_set()


@pytest.mark.anyio
async def test_caller_cancel_maps_to_job_canceled() -> None:
  token = CancellationToken()
  token.cancel("canceled")

  assert token.reason == "canceled"
  assert token.revoke_reason is None
  assert await token.wait(5.0) is True
  with pytest.raises(JobCanceledError):
    token.raise_if_set()


@pytest.mark.anyio
async def test_shutdown_after_cancel_still_revokes() -> None:
  token = CancellationToken()
  token.cancel("canceled")
  token.cancel("shutdown")
  token.cancel("revoked")

  await asyncio.wait_for(token.wait_revoked(), timeout=1.0)
  assert token.cancel_requested
  assert token.revoke_reason == "shutdown"
  assert token.reason == "shutdown"
  with pytest.raises(LeaseRevokedError):
    token.raise_if_set()


@pytest.mark.anyio
async def test_revocation_releases_revoked_waiters() -> None:
  token = CancellationToken()
  token.cancel("revoked")

  await token.wait_revoked()
  with pytest.raises(LeaseRevokedError):
    token.raise_if_set()


@pytest.mark.anyio
async def test_reporter_writes_progress_and_log_lines(job_data) -> None:
  queue = TranscodeQueue()
  job_id = await queue.enqueue(job_data())
  claimed = await queue.claim("worker-1")
  reporter = ProgressReporter(queue=queue, claimed=claimed)

  await reporter.report(30, "Submitted.")
  await reporter.heartbeat()

  entry = await queue.get(job_id)
  assert reporter.last_progress == 30
  assert entry.progress == 30
  assert entry.logs[-1] == "Submitted."


@pytest.mark.anyio
async def test_reporter_for_revoked_lease_raises(job_data) -> None:
  queue = TranscodeQueue()
  job_id = await queue.enqueue(job_data())
  claimed = await queue.claim("worker-1")
  reporter = ProgressReporter(queue=queue, claimed=claimed)
  await queue.abandon(job_id, claimed.lease_id, "gone")

  with pytest.raises(LeaseRevokedError):
    await reporter.report(50)
  with pytest.raises(LeaseRevokedError):
    await reporter.heartbeat()
