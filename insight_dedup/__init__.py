"""Insight deduplication and clustering pipeline."""

__version__ = "1.0.0"
