"""Notification sink implementations."""

from __future__ import annotations

import dataclasses
import logging

import httpx

from transcoder.notifications.contracts import NotificationEvent, NotificationProviderError

logger = logging.getLogger(__name__)


class LoggingNotificationSink:
  """Writes events to the log; the default when no endpoint is configured."""

  async def notify(self, event: NotificationEvent) -> None:
    logger.info("Notification %s job=%s asset=%s recipient=%s data=%s", event.event_type, event.job_id, event.asset_id, event.recipient_id, event.data)


class WebhookNotificationSink:
  """POSTs events as JSON to a webhook endpoint."""

  def __init__(self, *, url: str, timeout_seconds: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
    self._url = url
    self._client = client or httpx.AsyncClient(timeout=timeout_seconds, trust_env=False)

  async def notify(self, event: NotificationEvent) -> None:
    payload = {"event": event.event_type, **dataclasses.asdict(event)}
    try:
      response = await self._client.post(self._url, json=payload)
      response.raise_for_status()
    except httpx.HTTPStatusError as exc:
      raise NotificationProviderError(f"Webhook returned {exc.response.status_code} for {event.event_type}") from exc
    except httpx.RequestError as exc:
      raise NotificationProviderError(f"Webhook request failed for {event.event_type}: {exc}") from exc

  async def aclose(self) -> None:
    await self._client.aclose()
