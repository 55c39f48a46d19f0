"""Contracts for the external transcoding provider."""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol

import msgspec


class ProviderState(str, Enum):
  """Provider-side lifecycle of one transcode job."""

  SUBMITTED = "SUBMITTED"
  IN_PROGRESS = "IN_PROGRESS"
  COMPLETE = "COMPLETE"
  ERROR = "ERROR"
  CANCELED = "CANCELED"

  @property
  def is_terminal(self) -> bool:
    return self in (ProviderState.COMPLETE, ProviderState.ERROR, ProviderState.CANCELED)


_STATE_ALIASES = {"PROGRESSING": ProviderState.IN_PROGRESS, "CANCELLED": ProviderState.CANCELED}


def parse_provider_state(raw: str | None) -> ProviderState:
  """Map a wire status onto ProviderState; unknown values count as still submitted."""
  normalized = (raw or "").strip().upper()
  if normalized in _STATE_ALIASES:
    return _STATE_ALIASES[normalized]
  try:
    return ProviderState(normalized)
  except ValueError:
    return ProviderState.SUBMITTED


class ResolutionSpec(msgspec.Struct, frozen=True, rename="camel"):
  """One rendition requested from the provider."""

  name: str
  width: int
  height: int
  bitrate: int
  max_bitrate: int


class TranscodeRequest(msgspec.Struct, frozen=True, rename="camel"):
  """Submission payload for one transcode job."""

  source_location: str
  output_prefix: str
  job_name: str
  resolutions: list[ResolutionSpec]
  segment_duration_seconds: int
  generate_thumbnail: bool
  metadata: dict[str, Any] = msgspec.field(default_factory=dict)


class ProviderJobHandle(msgspec.Struct):
  """Provider job id plus the last known state, owned by one polling loop."""

  provider_job_id: str
  state: ProviderState = ProviderState.SUBMITTED
  progress: float = 0.0


class ProviderOutput(msgspec.Struct, frozen=True):
  """One rendition descriptor returned on completion."""

  resolution: str
  url: str
  bitrate: int = 0
  file_size: int | None = None


class ProviderJobStatus(msgspec.Struct, frozen=True):
  """Result of one status poll."""

  provider_job_id: str
  state: ProviderState
  progress: float | None = None
  outputs: list[ProviderOutput] = msgspec.field(default_factory=list)
  error_message: str | None = None


class TranscodingProvider(Protocol):
  """Client contract for the external transcoding service."""

  async def submit(self, request: TranscodeRequest) -> ProviderJobHandle:
    """Create a provider job and return its handle."""

  async def get_status(self, provider_job_id: str) -> ProviderJobStatus:
    """Fetch the current status of a provider job."""

  async def cancel(self, provider_job_id: str) -> None:
    """Ask the provider to stop a running job."""
