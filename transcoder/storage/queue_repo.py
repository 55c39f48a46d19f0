"""Storage interface for persisted transcode queue entries."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from transcoder.jobs.models import QueueEntry


class QueueEntryRepository(Protocol):
  """Repository contract backing the transcode queue."""

  async def load_entries(self) -> list[QueueEntry]:
    """Return every persisted entry, oldest enqueue first."""

  async def save_entries(self, entries: Sequence[QueueEntry]) -> None:
    """Insert or replace the given entries in one transaction."""

  async def delete_entries(self, entry_ids: Sequence[str]) -> None:
    """Remove entries by id; unknown ids are ignored."""
