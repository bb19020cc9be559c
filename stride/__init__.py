"""Stride Campus notification delivery and realtime sync."""

__version__ = "1.0.0"
