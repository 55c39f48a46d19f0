"""Storage interfaces for video asset processing state."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

AssetStatus = Literal["pending", "in_progress", "completed", "failed"]


@dataclass(frozen=True)
class Asset:
  """Processing state of one video asset."""

  asset_id: str
  processing_status: AssetStatus = "pending"
  available_resolutions: list[dict[str, Any]] = field(default_factory=list)
  streaming_urls: dict[str, str] = field(default_factory=dict)
  manifest_url: str | None = None
  provider_job_id: str | None = None
  error_message: str | None = None
  completed_at: str | None = None
  failed_at: str | None = None


class AssetRepository(Protocol):
  """Repository contract for asset processing state."""

  async def find_by_id(self, asset_id: str) -> Asset | None:
    """Fetch an asset by identifier."""

  async def update_processing_status(self, asset_id: str, status: AssetStatus, details: Mapping[str, Any] | None = None) -> None:
    """Set the processing status and merge any detail fields onto the asset."""
