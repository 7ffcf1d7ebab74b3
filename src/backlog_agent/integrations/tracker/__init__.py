"""Task tracker API client."""

from .client import TrackerClient, TrackerError

__all__ = ["TrackerClient", "TrackerError"]
