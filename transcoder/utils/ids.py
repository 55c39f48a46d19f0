"""Identifier utilities."""

from __future__ import annotations

import secrets
import string
import time
import uuid


def generate_nanoid(size: int = 8) -> str:
  """Return a short non-sequential id suitable for public references."""
  alphabet = string.ascii_lowercase + string.digits
  return "".join(secrets.choice(alphabet) for _ in range(size))


def generate_job_id(asset_id: str) -> str:
  """Return a queue job identifier, unique per enqueue attempt."""
  # The millisecond timestamp keeps ids sortable per asset; the suffix guards same-millisecond enqueues.
  return f"video-{asset_id}-{int(time.time() * 1000)}-{generate_nanoid()}"


def generate_lease_id() -> str:
  """Return a new lease identifier for one claim of a queue entry."""
  return str(uuid.uuid4())
