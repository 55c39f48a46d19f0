"""Schema package exports."""

from .assets import VideoAsset
from .queue_entries import TranscodeQueueEntry

__all__ = ["TranscodeQueueEntry", "VideoAsset"]
