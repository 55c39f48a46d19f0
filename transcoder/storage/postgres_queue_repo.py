"""Postgres-backed repository for transcode queue entries using SQLAlchemy."""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from transcoder.core.database import get_session_factory
from transcoder.jobs.models import JobRecord, QueueEntry, ResolutionProfile, TranscodeOutput, TranscodeResult
from transcoder.schema.queue_entries import TranscodeQueueEntry
from transcoder.storage.queue_repo import QueueEntryRepository


def _job_to_json(job: JobRecord) -> dict[str, Any]:
  return dataclasses.asdict(job)


def _json_to_job(data: dict[str, Any]) -> JobRecord:
  payload = dict(data)
  payload["resolution_profile"] = tuple(ResolutionProfile(**rung) for rung in payload.get("resolution_profile", []))
  payload["metadata"] = dict(payload.get("metadata") or {})
  return JobRecord(**payload)


def _result_to_json(result: TranscodeResult | None) -> dict[str, Any] | None:
  return dataclasses.asdict(result) if result is not None else None


def _json_to_result(data: dict[str, Any] | None) -> TranscodeResult | None:
  if data is None:
    return None
  payload = dict(data)
  payload["outputs"] = tuple(TranscodeOutput(**item) for item in payload.get("outputs", []))
  payload["streaming_urls"] = dict(payload.get("streaming_urls") or {})
  return TranscodeResult(**payload)


class PostgresQueueEntryRepository(QueueEntryRepository):
  """Persist queue entries to the `transcode_queue_entries` table."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized (TRANSCODER_PG_DSN is missing).")

  async def load_entries(self) -> list[QueueEntry]:
    async with self._session_factory() as session:
      stmt = select(TranscodeQueueEntry).order_by(TranscodeQueueEntry.sequence.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_entry(row) for row in rows]

  async def save_entries(self, entries: Sequence[QueueEntry]) -> None:
    if not entries:
      return
    async with self._session_factory() as session:
      for entry in entries:
        await session.merge(self._entry_to_model(entry))
      await session.commit()

  async def delete_entries(self, entry_ids: Sequence[str]) -> None:
    if not entry_ids:
      return
    async with self._session_factory() as session:
      await session.execute(delete(TranscodeQueueEntry).where(TranscodeQueueEntry.entry_id.in_(list(entry_ids))))
      await session.commit()

  @staticmethod
  def _entry_to_model(entry: QueueEntry) -> TranscodeQueueEntry:
    return TranscodeQueueEntry(
      entry_id=entry.entry_id,
      asset_id=entry.job.asset_id,
      state=entry.state,
      priority=entry.priority,
      sequence=entry.sequence,
      max_attempts=entry.max_attempts,
      attempts_made=entry.attempts_made,
      progress=entry.progress,
      stalled_count=entry.stalled_count,
      cancel_requested=entry.cancel_requested,
      worker_id=entry.worker_id,
      last_error=entry.last_error,
      job_json=_job_to_json(entry.job),
      result_json=_result_to_json(entry.result),
      logs=list(entry.logs),
      enqueued_at=entry.enqueued_at,
      processed_at=entry.processed_at,
      finished_at=entry.finished_at,
      due_at=entry.due_at,
    )

  @staticmethod
  def _model_to_entry(row: TranscodeQueueEntry) -> QueueEntry:
    # Leases and monotonic timers belong to the process that wrote the row.
    return QueueEntry(
      entry_id=row.entry_id,
      job=_json_to_job(row.job_json),
      state=row.state,  # type: ignore[arg-type]
      priority=row.priority,
      max_attempts=row.max_attempts,
      sequence=row.sequence,
      enqueued_at=row.enqueued_at,
      attempts_made=row.attempts_made,
      progress=row.progress,
      last_error=row.last_error,
      result=_json_to_result(row.result_json),
      processed_at=row.processed_at,
      finished_at=row.finished_at,
      due_at=row.due_at,
      worker_id=row.worker_id,
      stalled_count=row.stalled_count,
      cancel_requested=row.cancel_requested,
      logs=list(row.logs or []),
    )
