from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from transcoder.core.database import Base


class TranscodeQueueEntry(Base):
  __tablename__ = "transcode_queue_entries"
  __table_args__ = (Index("ix_transcode_queue_entries_state_priority", "state", "priority", "sequence"),)

  entry_id: Mapped[str] = mapped_column(String, primary_key=True)
  asset_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  state: Mapped[str] = mapped_column(String, nullable=False)
  priority: Mapped[int] = mapped_column(Integer, nullable=False)
  sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)
  max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
  attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
  progress: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
  stalled_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
  cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
  worker_id: Mapped[str | None] = mapped_column(String, nullable=True)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  job_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
  result_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  logs: Mapped[list] = mapped_column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))
  enqueued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
  processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
