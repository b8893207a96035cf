"""Visitor analytics service with datastore-resilient request handling."""

__version__ = "1.0.0"
