"""Contracts for job outcome notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

EventType = Literal["transcode.completed", "transcode.failed"]


@dataclass(frozen=True)
class NotificationEvent:
  """Represents one job outcome event."""

  event_type: EventType
  job_id: str
  asset_id: str
  recipient_id: str
  occurred_at: str
  data: dict[str, Any] = field(default_factory=dict)


class NotificationError(Exception):
  """Base class for all notification delivery failures."""


class NotificationProviderError(NotificationError):
  """Exception raised when a delivery endpoint returns an error."""


class NotificationSink(Protocol):
  """Delivery contract for outcome events."""

  async def notify(self, event: NotificationEvent) -> None:
    """Deliver one event."""
