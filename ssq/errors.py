"""Exception hierarchy shared by the config layer and the scan engine."""

from __future__ import annotations

from typing import Optional


class SsqError(Exception):
    """Base class for fatal scanner errors."""


class ConfigError(SsqError):
    """Raised when a configuration document cannot be turned into a usable config."""

    def __init__(self, message: str, source: Optional[str] = None, key: Optional[str] = None):
        self.source = source
        self.key = key
        parts = []
        if source:
            parts.append(source)
        if key:
            parts.append(key)
        prefix = ": ".join(parts)
        super().__init__(f"{prefix}: {message}" if prefix else message)


class RepositoryAccessError(SsqError):
    """Raised when git data required by the selected scan mode is unavailable."""
