"""Shared fixtures: in-memory collaborators and a fast-clock orchestrator factory."""

from __future__ import annotations

import asyncio
import copy
import dataclasses
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import pytest

from transcoder.core.exceptions import NotFoundError
from transcoder.jobs.models import QueueEntry
from transcoder.jobs.polling import ProviderPollingLoop
from transcoder.jobs.queue import RetryPolicy, TranscodeQueue
from transcoder.jobs.reconciler import StatusReconciler
from transcoder.jobs.supervisor import QueueSupervisor
from transcoder.jobs.worker import WorkerPool
from transcoder.notifications.contracts import NotificationEvent
from transcoder.notifications.service import Notifier
from transcoder.providers.contracts import ProviderJobHandle, ProviderJobStatus, ProviderOutput, ProviderState, TranscodeRequest
from transcoder.storage.assets_repo import Asset, AssetStatus


@pytest.fixture
def anyio_backend():
  return "asyncio"


class InMemoryAssetRepository:
  """Dict-backed asset store that records every status write."""

  def __init__(self, assets: list[Asset] | None = None) -> None:
    self.assets: dict[str, Asset] = {asset.asset_id: asset for asset in assets or []}
    self.updates: list[tuple[str, AssetStatus, dict[str, Any]]] = []

  async def find_by_id(self, asset_id: str) -> Asset | None:
    return self.assets.get(asset_id)

  async def update_processing_status(self, asset_id: str, status: AssetStatus, details: Mapping[str, Any] | None = None) -> None:
    current = self.assets.get(asset_id)
    if current is None:
      raise NotFoundError("Video asset", asset_id)
    self.updates.append((asset_id, status, dict(details or {})))
    self.assets[asset_id] = dataclasses.replace(current, processing_status=status, **dict(details or {}))

  def statuses(self, asset_id: str) -> list[str]:
    return [status for updated_id, status, _details in self.updates if updated_id == asset_id]


class FakeProvider:
  """Scripted provider: each poll pops the next status (or exception); the last one repeats."""

  def __init__(self, script: list[ProviderJobStatus | Exception] | None = None) -> None:
    self.script: list[ProviderJobStatus | Exception] = list(script or [completed_status()])
    self.submitted: list[TranscodeRequest] = []
    self.canceled: list[str] = []
    self.status_calls = 0
    self.submit_error: Exception | None = None
    self.poll_delay = 0.0

  async def submit(self, request: TranscodeRequest) -> ProviderJobHandle:
    if self.submit_error is not None:
      raise self.submit_error
    self.submitted.append(request)
    return ProviderJobHandle(provider_job_id=f"prov-{len(self.submitted)}")

  async def get_status(self, provider_job_id: str) -> ProviderJobStatus:
    self.status_calls += 1
    if self.poll_delay:
      await asyncio.sleep(self.poll_delay)
    item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
    if isinstance(item, Exception):
      raise item
    return ProviderJobStatus(provider_job_id=provider_job_id, state=item.state, progress=item.progress, outputs=list(item.outputs), error_message=item.error_message)

  async def cancel(self, provider_job_id: str) -> None:
    self.canceled.append(provider_job_id)


class InMemoryQueueStore:
  """Queue entry store that keeps deep copies, so restored entries share nothing with the writer."""

  def __init__(self) -> None:
    self.entries: dict[str, QueueEntry] = {}
    self.save_error: Exception | None = None
    self.saves = 0

  async def load_entries(self) -> list[QueueEntry]:
    return [copy.deepcopy(entry) for entry in sorted(self.entries.values(), key=lambda item: item.sequence)]

  async def save_entries(self, entries: Sequence[QueueEntry]) -> None:
    if self.save_error is not None:
      raise self.save_error
    self.saves += 1
    for entry in entries:
      self.entries[entry.entry_id] = copy.deepcopy(entry)

  async def delete_entries(self, entry_ids: Sequence[str]) -> None:
    for entry_id in entry_ids:
      self.entries.pop(entry_id, None)


class RecordingSink:
  """Captures delivered events; optionally fails every delivery."""

  def __init__(self, error: Exception | None = None) -> None:
    self.events: list[NotificationEvent] = []
    self.error = error

  async def notify(self, event: NotificationEvent) -> None:
    if self.error is not None:
      raise self.error
    self.events.append(event)


DEFAULT_OUTPUTS = [
  ProviderOutput(resolution="1080p", url="https://cdn.test/a/1080p/index.m3u8", bitrate=5_000_000),
  ProviderOutput(resolution="720p", url="https://cdn.test/a/720p/index.m3u8", bitrate=3_000_000),
  ProviderOutput(resolution="480p", url="https://cdn.test/a/480p/index.m3u8", bitrate=1_500_000),
  ProviderOutput(resolution="360p", url="https://cdn.test/a/360p/index.m3u8", bitrate=800_000),
]


def progress_status(progress: float, state: ProviderState = ProviderState.IN_PROGRESS) -> ProviderJobStatus:
  return ProviderJobStatus(provider_job_id="", state=state, progress=progress)


def completed_status(outputs: list[ProviderOutput] | None = None) -> ProviderJobStatus:
  return ProviderJobStatus(provider_job_id="", state=ProviderState.COMPLETE, progress=100.0, outputs=list(DEFAULT_OUTPUTS if outputs is None else outputs))


def error_status(message: str | None = "Codec not supported", state: ProviderState = ProviderState.ERROR) -> ProviderJobStatus:
  return ProviderJobStatus(provider_job_id="", state=state, error_message=message)


def make_job_data(asset_id: str = "asset-1", **overrides: Any) -> dict[str, Any]:
  data: dict[str, Any] = {
    "asset_id": asset_id,
    "source_location": f"uploads/{asset_id}/source.mp4",
    "output_prefix": f"renditions/{asset_id}/",
    "requested_by": "user-42",
    "original_file_name": "holiday.mp4",
    "file_size": 10_485_760,
  }
  data.update(overrides)
  return data


@pytest.fixture
def status_factory():
  """Expose the status builders to test modules."""
  return {"progress": progress_status, "completed": completed_status, "error": error_status, "outputs": DEFAULT_OUTPUTS}


@pytest.fixture
def job_data() -> Callable[..., dict[str, Any]]:
  return make_job_data


@pytest.fixture
def asset_repo() -> InMemoryAssetRepository:
  return InMemoryAssetRepository([Asset(asset_id=f"asset-{index}") for index in range(1, 11)])


@pytest.fixture
def provider() -> FakeProvider:
  return FakeProvider([progress_status(50), completed_status()])


@pytest.fixture
def sink() -> RecordingSink:
  return RecordingSink()


@pytest.fixture
def queue_store() -> InMemoryQueueStore:
  return InMemoryQueueStore()


@dataclasses.dataclass
class Orchestrator:
  """Every wired component, so tests can reach past the supervisor."""

  supervisor: QueueSupervisor
  queue: TranscodeQueue
  pool: WorkerPool
  loop: ProviderPollingLoop
  reconciler: StatusReconciler
  notifier: Notifier


@pytest.fixture
def build_orchestrator(asset_repo, provider, sink):
  """Factory for a fully wired orchestrator with millisecond-scale timings."""

  def _build(
    *,
    concurrency: int = 2,
    max_attempts: int = 3,
    backoff_base_seconds: float = 0.01,
    poll_interval_seconds: float = 0.01,
    poll_timeout_seconds: float = 5.0,
    stall_interval_seconds: float = 5.0,
    max_stalled_count: int = 1,
    shutdown_grace_seconds: float = 1.0,
    store: InMemoryQueueStore | None = None,
  ) -> Orchestrator:
    queue = TranscodeQueue(retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay_seconds=backoff_base_seconds), store=store)
    notifier = Notifier(sink=sink)
    reconciler = StatusReconciler(asset_repo=asset_repo, notifier=notifier)
    loop = ProviderPollingLoop(
      provider=provider,
      asset_repo=asset_repo,
      reconciler=reconciler,
      poll_interval_seconds=poll_interval_seconds,
      poll_timeout_seconds=poll_timeout_seconds,
      heartbeat_interval_seconds=min(poll_interval_seconds, stall_interval_seconds / 2),
    )
    pool = WorkerPool(
      queue=queue,
      polling_loop=loop,
      reconciler=reconciler,
      concurrency=concurrency,
      stall_interval_seconds=stall_interval_seconds,
      max_stalled_count=max_stalled_count,
      idle_wait_seconds=0.01,
    )
    supervisor = QueueSupervisor(queue=queue, pool=pool, notifier=notifier, shutdown_grace_seconds=shutdown_grace_seconds)
    return Orchestrator(supervisor=supervisor, queue=queue, pool=pool, loop=loop, reconciler=reconciler, notifier=notifier)

  return _build


async def wait_for_status(supervisor: QueueSupervisor, job_id: str, statuses: set[str], timeout: float = 5.0):
  """Poll the supervisor until the job reaches one of `statuses`."""
  deadline = asyncio.get_running_loop().time() + timeout
  while True:
    view = await supervisor.get_job_status(job_id)
    if view is not None and view.status in statuses:
      return view
    if asyncio.get_running_loop().time() > deadline:
      raise AssertionError(f"Job {job_id} did not reach {statuses}; last view: {view}")
    await asyncio.sleep(0.005)


@pytest.fixture
def wait_for():
  return wait_for_status
