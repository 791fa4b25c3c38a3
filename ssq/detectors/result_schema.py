# SPDX-License-Identifier: Apache-2.0
"""Result schema utilities for secret scanning units, matches and findings."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


class Severity(str, Enum):
    """Enumeration of supported finding severities, ordered LOW to CRITICAL."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        """Return the ordinal used for threshold comparisons."""

        return SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: Union[str, "Severity"]) -> "Severity":
        """Parse a severity name case-insensitively."""

        if isinstance(value, Severity):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"Unknown severity: {value!r}") from None

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank


SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class SourceKind(str, Enum):
    """Where a scan unit's content came from."""

    WORKTREE = "worktree-file"
    STAGED = "staged-hunk"
    HISTORY = "history-blob"


class ScanMode(str, Enum):
    """Invocation modes understood by the engine."""

    WORKTREE = "worktree"
    STAGED = "staged"
    HISTORY = "history"


@dataclass(frozen=True, slots=True)
class ScanUnit:
    """A single piece of content handed to the content scanner.

    History units for a blob that was already emitted earlier in the run
    carry ``content=None``; the engine reuses the cached matches for
    ``blob_id`` instead of scanning again.
    """

    kind: SourceKind
    path: str
    content: Optional[bytes]
    commit: Optional[str] = None
    blob_id: Optional[str] = None

    @property
    def identifier(self) -> Union[str, Tuple[str, str]]:
        """Return the path, or ``(commit, path)`` for history units."""

        if self.commit is not None:
            return (self.commit, self.path)
        return self.path


@dataclass(frozen=True, slots=True)
class ScanWarning:
    """Recoverable per-unit problem surfaced next to the findings."""

    path: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "message": self.message}


@dataclass(frozen=True, slots=True)
class RawMatch:
    """One regex occurrence before threshold filtering."""

    pattern_id: str
    severity: Severity
    path: str
    start: int
    end: int
    text: str
    line: int
    column: int
    commit: Optional[str] = None
    digest: Optional[str] = None

    def relocate(self, path: str, commit: Optional[str]) -> "RawMatch":
        """Return a copy attributed to another unit carrying identical content."""

        return replace(self, path=path, commit=commit)


@dataclass(frozen=True, slots=True)
class Finding:
    """Standardized representation of a secret scanning finding."""

    pattern_id: str
    description: str
    severity: Severity
    source: SourceKind
    path: str
    start: int
    end: int
    line: int
    column: int
    text: str
    digest: Optional[str] = None
    commits: Tuple[str, ...] = ()
    paths: Tuple[str, ...] = ()

    @property
    def dedup_key(self) -> Tuple[str, str, int]:
        """Key under which repeated occurrences of the same content collapse."""

        return (self.pattern_id, self.digest or self.path, self.start)

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        """Serialize the finding to a dictionary."""

        payload: Dict[str, Any] = {
            "patternId": self.pattern_id,
            "description": self.description,
            "severity": self.severity.value,
            "source": self.source.value,
            "location": {
                "path": self.path,
                "line": self.line,
                "column": self.column,
                "startOffset": self.start,
                "endOffset": self.end,
            },
            "match": redact_secret(self.text) if redact else self.text,
        }
        if self.digest:
            payload["digest"] = self.digest
        if self.commits:
            payload["commits"] = list(self.commits)
        if len(self.paths) > 1:
            payload["paths"] = list(self.paths)
        return payload


def redact_secret(secret: str, prefix: int = 4, suffix: int = 4) -> str:
    """Redact a secret to avoid exposing full values."""

    if not secret:
        return ""
    if len(secret) <= prefix + suffix:
        return "*" * len(secret)
    return f"{secret[:prefix]}{'*' * (len(secret) - prefix - suffix)}{secret[-suffix:]}"


def blob_digest(content: bytes) -> str:
    """Return the git blob object id for ``content``."""

    header = b"blob %d\x00" % len(content)
    return hashlib.sha1(header + content).hexdigest()  # nosec B324 - git object id, not a security hash
