from __future__ import annotations

from sqlalchemy import BigInteger, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from transcoder.core.database import Base

_UTC_NOW_ISO = """to_char((now() AT TIME ZONE 'UTC'), 'YYYY-MM-DD"T"HH24:MI:SS"Z"')"""


class VideoAsset(Base):
  __tablename__ = "video_assets"

  asset_id: Mapped[str] = mapped_column(String, primary_key=True)
  owner_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  original_file_name: Mapped[str | None] = mapped_column(String, nullable=True)
  file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
  processing_status: Mapped[str] = mapped_column(String, nullable=False, index=True, server_default=text("'pending'"))
  available_resolutions: Mapped[list] = mapped_column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))
  streaming_urls: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
  manifest_url: Mapped[str | None] = mapped_column(String, nullable=True)
  provider_job_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  completed_at: Mapped[str | None] = mapped_column(String, nullable=True)
  failed_at: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[str] = mapped_column(String, nullable=False, server_default=text(_UTC_NOW_ISO))
  updated_at: Mapped[str] = mapped_column(String, nullable=False, server_default=text(_UTC_NOW_ISO))
