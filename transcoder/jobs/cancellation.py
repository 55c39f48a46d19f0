"""Cooperative cancellation flags shared between the queue and a running attempt."""

from __future__ import annotations

import asyncio
from typing import Literal

from transcoder.core.exceptions import JobCanceledError, LeaseRevokedError

CancelReason = Literal["canceled", "revoked", "shutdown"]
RevokeReason = Literal["revoked", "shutdown"]

CANCELED_FAILURE_MESSAGE = "Transcoding job was canceled"


class CancellationToken:
  """Flag checked by the polling loop at each poll boundary.

  `canceled` is a caller request: the attempt finishes its current step, records
  the failure on the asset and stops. `revoked` (stall) and `shutdown` mean the
  attempt no longer owns its queue entry; the worker abandons it outright.

  A caller cancel and a revocation are tracked separately, so a shutdown that
  arrives after a cancel still revokes the attempt.
  """

  def __init__(self) -> None:
    self._event = asyncio.Event()
    self._revoked = asyncio.Event()
    self._cancel_requested = False
    self._revoke_reason: RevokeReason | None = None

  @property
  def reason(self) -> CancelReason | None:
    """Revocation outranks a caller cancel."""
    if self._revoke_reason is not None:
      return self._revoke_reason
    return "canceled" if self._cancel_requested else None

  @property
  def revoke_reason(self) -> RevokeReason | None:
    return self._revoke_reason

  @property
  def cancel_requested(self) -> bool:
    return self._cancel_requested

  @property
  def is_set(self) -> bool:
    return self._event.is_set()

  def cancel(self, reason: CancelReason = "canceled") -> None:
    """Signal cancellation; the first revocation reason wins."""
    if reason == "canceled":
      self._cancel_requested = True
    elif self._revoke_reason is None:
      self._revoke_reason = reason
      self._revoked.set()
    self._event.set()

  async def wait(self, timeout: float) -> bool:
    """Sleep up to `timeout` seconds, returning early (True) when cancellation is signalled."""
    if self._event.is_set():
      return True
    try:
      await asyncio.wait_for(self._event.wait(), timeout=max(timeout, 0.0))
    except TimeoutError:
      return False
    return True

  async def wait_revoked(self) -> None:
    """Block until the attempt loses ownership of its entry."""
    await self._revoked.wait()

  def raise_if_set(self) -> None:
    """Raise the exception matching the cancellation reason, if any."""
    if not self._event.is_set():
      return
    if self._revoke_reason is not None:
      raise LeaseRevokedError(f"Queue entry ownership lost ({self._revoke_reason}).")
    raise JobCanceledError(f"{CANCELED_FAILURE_MESSAGE}.")
