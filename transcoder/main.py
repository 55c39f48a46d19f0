"""Composition root: wire settings into a running orchestrator."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from transcoder.config import Settings, get_settings
from transcoder.core.database import dispose_engine, init_queue_schema
from transcoder.core.logging import initialize_logging
from transcoder.jobs.polling import ProviderPollingLoop
from transcoder.jobs.queue import RetryPolicy, TranscodeQueue
from transcoder.jobs.reconciler import StatusReconciler
from transcoder.jobs.supervisor import QueueSupervisor
from transcoder.jobs.worker import WorkerPool
from transcoder.notifications.contracts import NotificationSink
from transcoder.notifications.service import Notifier
from transcoder.notifications.sinks import LoggingNotificationSink, WebhookNotificationSink
from transcoder.providers.contracts import TranscodingProvider
from transcoder.providers.http import HttpTranscodingProvider
from transcoder.storage.assets_repo import AssetRepository
from transcoder.storage.queue_repo import QueueEntryRepository

logger = logging.getLogger("transcoder.main")


def build_notification_sink(settings: Settings) -> NotificationSink:
  """Use the webhook when one is configured, otherwise log events."""
  if settings.notifications_webhook_url:
    return WebhookNotificationSink(url=settings.notifications_webhook_url, timeout_seconds=settings.notifications_timeout_seconds)
  return LoggingNotificationSink()


def build_provider(settings: Settings) -> HttpTranscodingProvider:
  if not settings.provider_base_url:
    raise RuntimeError("TRANSCODER_PROVIDER_BASE_URL is required to reach the transcoding provider.")
  return HttpTranscodingProvider(base_url=settings.provider_base_url, api_key=settings.provider_api_key, timeout_seconds=settings.provider_timeout_seconds)


def build_asset_repo(settings: Settings) -> AssetRepository:
  if not settings.pg_dsn:
    raise RuntimeError("TRANSCODER_PG_DSN is required for the asset repository.")
  from transcoder.storage.postgres_assets_repo import PostgresAssetRepository

  return PostgresAssetRepository()


def build_queue_store(settings: Settings) -> QueueEntryRepository | None:
  """Persist queue entries in Postgres when a database is configured."""
  if not settings.pg_dsn:
    return None
  from transcoder.storage.postgres_queue_repo import PostgresQueueEntryRepository

  return PostgresQueueEntryRepository()


def build_supervisor(
  settings: Settings,
  *,
  asset_repo: AssetRepository | None = None,
  provider: TranscodingProvider | None = None,
  sink: NotificationSink | None = None,
  queue_store: QueueEntryRepository | None = None,
) -> QueueSupervisor:
  """Construct every component from settings; injected collaborators win over defaults."""
  closers: list[Callable[[], Awaitable[None]]] = []

  if provider is None:
    http_provider = build_provider(settings)
    closers.append(http_provider.aclose)
    provider = http_provider
  if sink is None:
    sink = build_notification_sink(settings)
    if isinstance(sink, WebhookNotificationSink):
      closers.append(sink.aclose)
  if asset_repo is None:
    asset_repo = build_asset_repo(settings)
    closers.append(dispose_engine)
  if queue_store is None:
    queue_store = build_queue_store(settings)
    if queue_store is not None and dispose_engine not in closers:
      closers.append(dispose_engine)

  queue = TranscodeQueue(
    retry_policy=RetryPolicy(max_attempts=settings.max_attempts, base_delay_seconds=settings.backoff_base_seconds),
    default_priority=settings.job_priority,
    retain_completed=settings.retain_completed,
    retain_failed=settings.retain_failed,
    default_segment_duration=settings.segment_duration_seconds,
    default_generate_thumbnail=settings.generate_thumbnail,
    store=queue_store,
  )
  notifier = Notifier(sink=sink)
  reconciler = StatusReconciler(asset_repo=asset_repo, notifier=notifier)
  polling_loop = ProviderPollingLoop(
    provider=provider,
    asset_repo=asset_repo,
    reconciler=reconciler,
    poll_interval_seconds=settings.poll_interval_seconds,
    poll_timeout_seconds=settings.poll_timeout_seconds,
    # Heartbeat well inside the stall window.
    heartbeat_interval_seconds=settings.stall_interval_seconds / 2,
  )
  pool = WorkerPool(
    queue=queue,
    polling_loop=polling_loop,
    reconciler=reconciler,
    concurrency=settings.worker_concurrency,
    stall_interval_seconds=settings.stall_interval_seconds,
    max_stalled_count=settings.max_stalled_count,
  )
  return QueueSupervisor(queue=queue, pool=pool, notifier=notifier, shutdown_grace_seconds=settings.shutdown_grace_seconds, closers=closers)


@asynccontextmanager
async def lifespan(
  settings: Settings | None = None,
  *,
  asset_repo: AssetRepository | None = None,
  provider: TranscodingProvider | None = None,
  sink: NotificationSink | None = None,
  queue_store: QueueEntryRepository | None = None,
) -> AsyncIterator[QueueSupervisor]:
  """Start the orchestrator for the duration of the block and shut it down afterwards."""
  settings = settings or get_settings()
  initialize_logging(settings)
  if queue_store is None and settings.pg_dsn:
    await init_queue_schema(settings)
  supervisor = build_supervisor(settings, asset_repo=asset_repo, provider=provider, sink=sink, queue_store=queue_store)
  logger.info("Starting orchestrator env=%s workers=%d provider=%s db=%s", settings.environment, settings.worker_concurrency, settings.provider_base_url, _redact_dsn(settings.pg_dsn))

  loop = asyncio.get_running_loop()
  for sig in (signal.SIGTERM, signal.SIGINT):
    try:
      loop.add_signal_handler(sig, supervisor.request_shutdown)
    except (NotImplementedError, RuntimeError):
      logger.debug("Signal handler for %s unavailable on this platform", sig)

  report = await supervisor.recover()
  if report.restored:
    logger.info("Recovered %d queue entries (%d requeued, %d canceled)", report.restored, report.requeued, len(report.canceled))
  supervisor.start()
  try:
    yield supervisor
  finally:
    await supervisor.shutdown()
    for sig in (signal.SIGTERM, signal.SIGINT):
      try:
        loop.remove_signal_handler(sig)
      except (NotImplementedError, RuntimeError):
        pass


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"


async def _serve() -> None:
  async with lifespan() as supervisor:
    # Runs until a signal schedules shutdown.
    await supervisor.wait_closed()


def main() -> None:
  """Console entry point."""
  asyncio.run(_serve())


if __name__ == "__main__":
  main()
