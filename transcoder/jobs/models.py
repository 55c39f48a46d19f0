"""Domain models for queued transcoding jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

QueueState = Literal["waiting", "active", "completed", "failed", "delayed"]
QUEUE_STATES: tuple[QueueState, ...] = ("waiting", "active", "completed", "failed", "delayed")

MAX_TRACKED_LOGS = 100


@dataclass(frozen=True)
class ResolutionProfile:
  """One rung of the output resolution ladder."""

  name: str
  width: int
  height: int
  bitrate: int
  max_bitrate: int


DEFAULT_RESOLUTION_LADDER: tuple[ResolutionProfile, ...] = (
  ResolutionProfile(name="1080p", width=1920, height=1080, bitrate=5_000_000, max_bitrate=7_500_000),
  ResolutionProfile(name="720p", width=1280, height=720, bitrate=3_000_000, max_bitrate=4_500_000),
  ResolutionProfile(name="480p", width=854, height=480, bitrate=1_500_000, max_bitrate=2_250_000),
  ResolutionProfile(name="360p", width=640, height=360, bitrate=800_000, max_bitrate=1_200_000),
)


@dataclass(frozen=True)
class JobRecord:
  """Immutable description of one transcode request."""

  job_id: str
  asset_id: str
  source_location: str
  output_prefix: str
  job_name: str
  requested_by: str
  original_file_name: str
  file_size: int
  resolution_profile: tuple[ResolutionProfile, ...] = DEFAULT_RESOLUTION_LADDER
  segment_duration_seconds: int = 6
  generate_thumbnail: bool = True
  metadata: dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class JobOptions:
  """Per-enqueue overrides; unset values fall back to queue defaults."""

  priority: int | None = None
  delay_seconds: float = 0.0
  max_attempts: int | None = None
  job_id: str | None = None


@dataclass(frozen=True)
class TranscodeOutput:
  """One rendition produced by the provider."""

  resolution: str
  url: str
  bitrate: int
  file_size: int | None = None


@dataclass(frozen=True)
class TranscodeResult:
  """Return value of a successful polling loop run."""

  asset_id: str
  provider_job_id: str
  outputs: tuple[TranscodeOutput, ...]
  streaming_urls: dict[str, str]
  manifest_url: str | None
  processing_time_ms: int | None = None


@dataclass
class QueueEntry:
  """Mutable lifecycle wrapper around a job record, owned by the queue."""

  entry_id: str
  job: JobRecord
  state: QueueState
  priority: int
  max_attempts: int
  sequence: int
  enqueued_at: datetime
  attempts_made: int = 0
  progress: int = 0
  last_error: str | None = None
  result: TranscodeResult | None = None
  processed_at: datetime | None = None
  finished_at: datetime | None = None
  ready_at: float | None = None
  due_at: datetime | None = None
  lease_id: str | None = None
  worker_id: str | None = None
  last_heartbeat: float | None = None
  stalled_count: int = 0
  cancel_requested: bool = False
  logs: list[str] = field(default_factory=list)

  def add_log(self, message: str) -> None:
    """Append a log line while preserving the rolling window."""

    self.logs.append(message)
    if len(self.logs) > MAX_TRACKED_LOGS:
      self.logs = self.logs[-MAX_TRACKED_LOGS:]


@dataclass(frozen=True)
class QueueStats:
  """Per-state entry counts."""

  waiting: int = 0
  active: int = 0
  completed: int = 0
  failed: int = 0
  delayed: int = 0

  @property
  def total(self) -> int:
    return self.waiting + self.active + self.completed + self.failed + self.delayed


@dataclass(frozen=True)
class JobStatusView:
  """Caller-facing snapshot of a queue entry."""

  job_id: str
  status: QueueState
  progress: int
  attempts_made: int
  job: JobRecord
  result: TranscodeResult | None = None
  failure_reason: str | None = None
  processed_at: datetime | None = None
  finished_at: datetime | None = None

