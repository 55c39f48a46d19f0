"""HTTP client for a JSON transcoding provider API."""

from __future__ import annotations

import logging

import httpx
import msgspec

from transcoder.core.exceptions import NotFoundError, ProviderError, ProviderUnavailableError
from transcoder.providers.contracts import ProviderJobHandle, ProviderJobStatus, ProviderOutput, TranscodeRequest, parse_provider_state

logger = logging.getLogger(__name__)


class _WireOutput(msgspec.Struct, rename="camel"):
  resolution: str
  url: str
  bitrate: int = 0
  file_size: int | None = None


class _WireJob(msgspec.Struct, rename="camel"):
  id: str
  status: str = "SUBMITTED"
  progress: float | None = None
  outputs: list[_WireOutput] = msgspec.field(default_factory=list)
  error_message: str | None = None


class HttpTranscodingProvider:
  """Talks to the provider's `/jobs` resource over httpx."""

  def __init__(self, *, base_url: str, api_key: str | None = None, timeout_seconds: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
    if not base_url:
      raise ValueError("Provider base URL is required.")
    headers = {"content-type": "application/json"}
    if api_key:
      headers["authorization"] = f"Bearer {api_key}"
    # Never trust environment proxy variables for provider calls.
    self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), headers=headers, timeout=timeout_seconds, trust_env=False)

  async def submit(self, request: TranscodeRequest) -> ProviderJobHandle:
    """Create a provider job for the request."""
    logger.info("Submitting transcode job %s (%d renditions)", request.job_name, len(request.resolutions))
    body = msgspec.json.encode(request)
    wire = await self._send("POST", "/jobs", resource_id=request.job_name, content=body)
    state = parse_provider_state(wire.status)
    logger.info("Provider accepted job %s as %s (%s)", request.job_name, wire.id, state.value)
    return ProviderJobHandle(provider_job_id=wire.id, state=state, progress=wire.progress or 0.0)

  async def get_status(self, provider_job_id: str) -> ProviderJobStatus:
    """Fetch the current status of a provider job."""
    wire = await self._send("GET", f"/jobs/{provider_job_id}", resource_id=provider_job_id)
    outputs = [ProviderOutput(resolution=item.resolution, url=item.url, bitrate=item.bitrate, file_size=item.file_size) for item in wire.outputs]
    status = ProviderJobStatus(provider_job_id=wire.id or provider_job_id, state=parse_provider_state(wire.status), progress=wire.progress, outputs=outputs, error_message=wire.error_message)
    logger.debug("Provider job %s status=%s progress=%s", provider_job_id, status.state.value, status.progress)
    return status

  async def cancel(self, provider_job_id: str) -> None:
    """Ask the provider to stop a running job."""
    await self._send("POST", f"/jobs/{provider_job_id}/cancel", resource_id=provider_job_id, expect_body=False)
    logger.info("Provider job %s cancel requested", provider_job_id)

  async def aclose(self) -> None:
    await self._client.aclose()

  async def _send(self, method: str, path: str, *, resource_id: str, content: bytes | None = None, expect_body: bool = True) -> _WireJob:
    try:
      response = await self._client.request(method, path, content=content)
      response.raise_for_status()
    except httpx.HTTPStatusError as exc:
      status_code = exc.response.status_code
      if status_code == 404:
        raise NotFoundError("Provider job", resource_id) from exc
      logger.error("Provider %s %s returned %s: %s", method, path, status_code, exc.response.text[:500])
      if status_code == 429 or status_code >= 500:
        raise ProviderUnavailableError(f"Provider returned HTTP {status_code} for {method} {path}") from exc
      raise ProviderError(f"Provider rejected {method} {path} with HTTP {status_code}") from exc
    except httpx.RequestError as exc:
      raise ProviderUnavailableError(f"Provider request {method} {path} failed: {exc}") from exc

    if not expect_body:
      return _WireJob(id=resource_id)
    try:
      return msgspec.json.decode(response.content, type=_WireJob)
    except msgspec.DecodeError as exc:
      raise ProviderUnavailableError(f"Malformed provider response for {method} {path}: {exc}") from exc
