"""Detection and suppression pattern compilation."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator, List, Optional, Sequence, Tuple

from ssq.detectors.result_schema import Severity
from ssq.errors import ConfigError

if TYPE_CHECKING:
    from ssq.core.config import Config


@dataclass(frozen=True, slots=True)
class Pattern:
    """A detection rule as declared in configuration."""

    id: str
    regex: str
    severity: Severity
    description: str = ""

    def to_dict(self) -> dict:
        payload = {"regex": self.regex, "severity": self.severity.value}
        if self.description:
            payload["description"] = self.description
        return payload


@dataclass(frozen=True, slots=True)
class CompiledPattern:
    """A detection rule with its regex compiled for byte-level search."""

    pattern: Pattern
    matcher: "re.Pattern[bytes]"

    @property
    def id(self) -> str:
        return self.pattern.id

    @property
    def severity(self) -> Severity:
        return self.pattern.severity

    def finditer(self, content: bytes) -> Iterator["re.Match[bytes]"]:
        """Yield every non-empty, non-overlapping occurrence in ``content``."""

        for match in self.matcher.finditer(content):
            if match.end() > match.start():
                yield match


def compile_regex(regex: str, source: Optional[str] = None, key: Optional[str] = None) -> "re.Pattern[bytes]":
    """Compile a configured regex for searching raw file bytes."""

    try:
        return re.compile(regex.encode("utf-8"))
    except re.error as exc:
        raise ConfigError(f"invalid regex {regex!r}: {exc}", source=source, key=key) from exc


class PatternRegistry:
    """Compiled detection patterns plus compiled suppression patterns for one run."""

    def __init__(self, patterns: Sequence[CompiledPattern], ignore_patterns: Sequence["re.Pattern[bytes]"]):
        self._patterns: Tuple[CompiledPattern, ...] = tuple(patterns)
        self._ignore: Tuple["re.Pattern[bytes]", ...] = tuple(ignore_patterns)

    @classmethod
    def from_config(cls, config: "Config") -> "PatternRegistry":
        """Compile every pattern and ignore pattern of ``config``.

        Raises ``ConfigError`` on the first invalid regex; a broken detection
        rule is never skipped.
        """

        compiled: List[CompiledPattern] = []
        for pattern_id in sorted(config.patterns):
            pattern = config.patterns[pattern_id]
            matcher = compile_regex(pattern.regex, key=f"patterns.{pattern_id}")
            compiled.append(CompiledPattern(pattern=pattern, matcher=matcher))
        ignore = [
            compile_regex(regex, key=f"ignore_patterns[{index}]")
            for index, regex in enumerate(config.ignore_patterns)
        ]
        return cls(compiled, ignore)

    @property
    def patterns(self) -> Tuple[CompiledPattern, ...]:
        return self._patterns

    def __len__(self) -> int:
        return len(self._patterns)

    def get(self, pattern_id: str) -> Optional[CompiledPattern]:
        for pattern in self._patterns:
            if pattern.id == pattern_id:
                return pattern
        return None

    def is_suppressed(self, matched: bytes) -> bool:
        """Return ``True`` when the matched substring hits any ignore pattern."""

        return any(regex.search(matched) for regex in self._ignore)
