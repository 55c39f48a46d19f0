from __future__ import annotations

import json
import logging

import httpx
import pytest

from transcoder.jobs.models import TranscodeOutput, TranscodeResult
from transcoder.jobs.validation import validate_job_data
from transcoder.notifications.contracts import NotificationEvent, NotificationProviderError
from transcoder.notifications.service import Notifier
from transcoder.notifications.sinks import LoggingNotificationSink, WebhookNotificationSink


def _event() -> NotificationEvent:
  return NotificationEvent(event_type="transcode.completed", job_id="video-asset-1", asset_id="asset-1", recipient_id="user-42", occurred_at="2026-01-01T00:00:00Z", data={"attempts": 1})


@pytest.mark.anyio
async def test_provider_error_is_logged_and_not_raised(sink, caplog) -> None:
  sink.error = NotificationProviderError("HTTP Error 403: Forbidden")
  notifier = Notifier(sink=sink)

  with caplog.at_level(logging.ERROR, logger="transcoder.notifications.service"):
    notifier.publish(_event())
    await notifier.drain(1.0)

  assert notifier.pending == 0
  assert "provider error" in caplog.text
  assert "HTTP Error 403" in caplog.text


@pytest.mark.anyio
async def test_unexpected_sink_error_is_logged_and_not_raised(sink, caplog) -> None:
  sink.error = ValueError("template missing")
  notifier = Notifier(sink=sink)

  with caplog.at_level(logging.ERROR, logger="transcoder.notifications.service"):
    notifier.publish(_event())
    await notifier.drain(1.0)

  assert "template missing" in caplog.text


@pytest.mark.anyio
async def test_completed_event_carries_outcome(sink, job_data) -> None:
  notifier = Notifier(sink=sink)
  job = validate_job_data(job_data(), job_id="video-asset-1")
  outputs = (TranscodeOutput(resolution="1080p", url="https://cdn.test/1080p.m3u8", bitrate=1),)
  result = TranscodeResult(asset_id="asset-1", provider_job_id="prov-1", outputs=outputs, streaming_urls={"1080p": outputs[0].url}, manifest_url=outputs[0].url, processing_time_ms=1200)

  notifier.notify_completed(job=job, result=result, attempts=2)
  notifier.notify_failed(job=job, reason="gave up", attempts=3)
  await notifier.drain(1.0)

  completed, failed = sink.events
  assert completed.event_type == "transcode.completed"
  assert completed.recipient_id == "user-42"
  assert completed.data["manifest_url"] == "https://cdn.test/1080p.m3u8"
  assert completed.data["resolutions"] == ["1080p"]
  assert completed.data["attempts"] == 2
  assert failed.event_type == "transcode.failed"
  assert failed.data["error_message"] == "gave up"


@pytest.mark.anyio
async def test_logging_sink_writes_event(caplog) -> None:
  with caplog.at_level(logging.INFO, logger="transcoder.notifications.sinks"):
    await LoggingNotificationSink().notify(_event())
  assert "transcode.completed" in caplog.text


@pytest.mark.anyio
async def test_webhook_sink_posts_json_payload() -> None:
  received: list[dict] = []

  def handler(request: httpx.Request) -> httpx.Response:
    received.append(json.loads(request.content))
    return httpx.Response(202)

  client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
  webhook = WebhookNotificationSink(url="https://hooks.test/transcode", client=client)
  await webhook.notify(_event())
  await webhook.aclose()

  assert received[0]["event"] == "transcode.completed"
  assert received[0]["asset_id"] == "asset-1"
  assert received[0]["data"] == {"attempts": 1}


@pytest.mark.anyio
async def test_webhook_sink_raises_provider_error_on_failure() -> None:
  client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
  webhook = WebhookNotificationSink(url="https://hooks.test/transcode", client=client)

  with pytest.raises(NotificationProviderError, match="500"):
    await webhook.notify(_event())
  await webhook.aclose()
