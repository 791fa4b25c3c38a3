"""Core utilities for the ssq scanner."""

__all__ = [
    "aggregator",
    "config",
    "paths",
    "patterns",
    "reporter",
]
