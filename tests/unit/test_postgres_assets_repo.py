from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from transcoder.core.exceptions import NotFoundError
from transcoder.schema.assets import VideoAsset
from transcoder.storage.postgres_assets_repo import PostgresAssetRepository


def _session_factory(row: VideoAsset | None):
  session = AsyncMock()
  session.add = MagicMock()
  session.get.return_value = row
  factory = MagicMock()
  factory.return_value.__aenter__.return_value = session
  factory.return_value.__aexit__.return_value = False
  return factory, session


@pytest.mark.anyio
async def test_find_by_id_maps_row() -> None:
  row = VideoAsset(asset_id="asset-1", processing_status="completed", available_resolutions=[{"resolution": "720p"}], streaming_urls={"720p": "u"}, manifest_url="u")
  factory, _session = _session_factory(row)

  asset = await PostgresAssetRepository(factory).find_by_id("asset-1")
  assert asset.processing_status == "completed"
  assert asset.streaming_urls == {"720p": "u"}
  assert asset.available_resolutions == [{"resolution": "720p"}]


@pytest.mark.anyio
async def test_find_by_id_returns_none_for_unknown_asset() -> None:
  factory, _session = _session_factory(None)
  assert await PostgresAssetRepository(factory).find_by_id("asset-x") is None


@pytest.mark.anyio
async def test_update_merges_known_details_and_commits() -> None:
  row = VideoAsset(asset_id="asset-1", processing_status="in_progress", available_resolutions=[], streaming_urls={})
  factory, session = _session_factory(row)

  await PostgresAssetRepository(factory).update_processing_status("asset-1", "failed", {"error_message": "boom", "failed_at": "2026-01-01T00:00:00Z", "bogus": 1})

  assert row.processing_status == "failed"
  assert row.error_message == "boom"
  assert row.failed_at == "2026-01-01T00:00:00Z"
  assert not hasattr(row, "bogus")
  session.commit.assert_awaited_once()


@pytest.mark.anyio
async def test_update_unknown_asset_raises() -> None:
  factory, session = _session_factory(None)
  with pytest.raises(NotFoundError):
    await PostgresAssetRepository(factory).update_processing_status("asset-x", "failed")
  session.commit.assert_not_awaited()


def test_repository_requires_database(monkeypatch) -> None:
  monkeypatch.setattr("transcoder.storage.postgres_assets_repo.get_session_factory", lambda: None)
  with pytest.raises(RuntimeError):
    PostgresAssetRepository()
