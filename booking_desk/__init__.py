"""Booking engine: availability, external calendar sync and conflict-free booking."""

__version__ = "0.1.0"
