"""Apply attempt outcomes to asset state and emit outcome events."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from transcoder.jobs.models import JobRecord, TranscodeOutput, TranscodeResult
from transcoder.notifications.service import Notifier
from transcoder.storage.assets_repo import AssetRepository

logger = logging.getLogger(__name__)

PREFERRED_MANIFEST_RESOLUTION = "1080p"


def _now_iso() -> str:
  return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def dedupe_outputs(outputs: Iterable[TranscodeOutput]) -> tuple[TranscodeOutput, ...]:
  """Keep the first output per resolution, preserving provider order."""
  seen: set[str] = set()
  unique: list[TranscodeOutput] = []
  for output in outputs:
    if output.resolution in seen:
      continue
    seen.add(output.resolution)
    unique.append(output)
  return tuple(unique)


def build_streaming_urls(outputs: Iterable[TranscodeOutput]) -> dict[str, str]:
  return {output.resolution: output.url for output in dedupe_outputs(outputs)}


def select_manifest_url(outputs: Iterable[TranscodeOutput]) -> str | None:
  """Prefer the 1080p rendition, else the first available one."""
  ordered = dedupe_outputs(outputs)
  for output in ordered:
    if output.resolution == PREFERRED_MANIFEST_RESOLUTION:
      return output.url
  return ordered[0].url if ordered else None


def _resolution_rows(outputs: Iterable[TranscodeOutput]) -> list[dict[str, Any]]:
  return [{"resolution": output.resolution, "url": output.url, "bitrate": output.bitrate, "file_size": output.file_size} for output in outputs]


class StatusReconciler:
  """Single writer of asset processing state for the orchestrator.

  Terminal writes are idempotent: re-applying an outcome the asset already
  reflects is skipped, so timestamps and resolution lists are never rewritten
  or duplicated. Notifications are best effort and cannot fail a job.
  """

  def __init__(self, *, asset_repo: AssetRepository, notifier: Notifier, now: Callable[[], str] = _now_iso) -> None:
    self._asset_repo = asset_repo
    self._notifier = notifier
    self._now = now

  async def mark_in_progress(self, asset_id: str, *, provider_job_id: str | None = None) -> None:
    details = {"provider_job_id": provider_job_id} if provider_job_id else None
    await self._asset_repo.update_processing_status(asset_id, "in_progress", details)

  async def apply_completion(self, job: JobRecord, *, provider_job_id: str, outputs: Iterable[TranscodeOutput]) -> TranscodeResult:
    """Write the completed state derived from provider outputs."""
    unique = dedupe_outputs(outputs)
    streaming_urls = build_streaming_urls(unique)
    manifest_url = select_manifest_url(unique)
    rows = _resolution_rows(unique)
    result = TranscodeResult(asset_id=job.asset_id, provider_job_id=provider_job_id, outputs=unique, streaming_urls=streaming_urls, manifest_url=manifest_url)

    current = await self._asset_repo.find_by_id(job.asset_id)
    if current is not None and current.processing_status == "completed" and current.manifest_url == manifest_url and current.streaming_urls == streaming_urls and current.available_resolutions == rows:
      logger.info("Asset %s already reflects this completion; skipping write", job.asset_id)
      return result

    await self._asset_repo.update_processing_status(
      job.asset_id,
      "completed",
      {"available_resolutions": rows, "streaming_urls": streaming_urls, "manifest_url": manifest_url, "provider_job_id": provider_job_id, "completed_at": self._now(), "error_message": None},
    )
    logger.info("Asset %s completed with %d rendition(s); manifest=%s", job.asset_id, len(unique), manifest_url)
    return result

  async def apply_failure(self, asset_id: str, message: str) -> None:
    """Record a failed attempt on the asset; never raises."""
    try:
      current = await self._asset_repo.find_by_id(asset_id)
      if current is None:
        logger.warning("Asset %s vanished; cannot record failure: %s", asset_id, message)
        return
      if current.processing_status == "failed" and current.error_message == message:
        return
      await self._asset_repo.update_processing_status(asset_id, "failed", {"error_message": message, "failed_at": self._now()})
      logger.info("Asset %s marked failed: %s", asset_id, message)
    except Exception as exc:  # noqa: BLE001
      # The original failure must still reach the queue, so a write error is only logged.
      logger.error("Failed to record failure on asset %s: %s", asset_id, exc, exc_info=True)

  def notify_completed(self, job: JobRecord, result: TranscodeResult, *, attempts: int) -> None:
    self._notifier.notify_completed(job=job, result=result, attempts=attempts)

  def notify_failed(self, job: JobRecord, reason: str, *, attempts: int) -> None:
    self._notifier.notify_failed(job=job, reason=reason, attempts=attempts)
