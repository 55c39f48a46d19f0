"""Postgres-backed repository for video asset processing state using SQLAlchemy."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from transcoder.core.database import get_session_factory
from transcoder.core.exceptions import NotFoundError
from transcoder.schema.assets import VideoAsset
from transcoder.storage.assets_repo import Asset, AssetRepository, AssetStatus

logger = logging.getLogger(__name__)

_DETAIL_COLUMNS = frozenset({"available_resolutions", "streaming_urls", "manifest_url", "provider_job_id", "error_message", "completed_at", "failed_at"})


def _now_iso() -> str:
  return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class PostgresAssetRepository(AssetRepository):
  """Persist asset processing state to the `video_assets` table."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized (TRANSCODER_PG_DSN is missing).")

  async def find_by_id(self, asset_id: str) -> Asset | None:
    async with self._session_factory() as session:
      row = await session.get(VideoAsset, asset_id)
      if row is None:
        return None
      return self._model_to_asset(row)

  async def update_processing_status(self, asset_id: str, status: AssetStatus, details: Mapping[str, Any] | None = None) -> None:
    async with self._session_factory() as session:
      row = await session.get(VideoAsset, asset_id)
      if row is None:
        raise NotFoundError("Video asset", asset_id)
      row.processing_status = status
      for key, value in (details or {}).items():
        if key not in _DETAIL_COLUMNS:
          logger.warning("Ignoring unknown asset field %s for %s", key, asset_id)
          continue
        setattr(row, key, value)
      row.updated_at = _now_iso()
      session.add(row)
      await session.commit()

  @staticmethod
  def _model_to_asset(row: VideoAsset) -> Asset:
    return Asset(
      asset_id=row.asset_id,
      processing_status=row.processing_status,  # type: ignore[arg-type]
      available_resolutions=list(row.available_resolutions or []),
      streaming_urls=dict(row.streaming_urls or {}),
      manifest_url=row.manifest_url,
      provider_job_id=row.provider_job_id,
      error_message=row.error_message,
      completed_at=row.completed_at,
      failed_at=row.failed_at,
    )
