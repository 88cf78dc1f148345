"""Client helpers for marker tools and status viewers."""

from .marker_client import MarkerClient, StatusSubscriber

__all__ = ["MarkerClient", "StatusSubscriber"]
