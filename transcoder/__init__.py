"""Transcoding job orchestration: queue, workers and provider polling."""

__version__ = "0.1.0"
