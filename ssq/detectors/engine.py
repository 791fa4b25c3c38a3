# SPDX-License-Identifier: Apache-2.0
"""Secret scanning engine: pattern evaluation over scan units and result aggregation."""

from __future__ import annotations

import itertools
import logging
import pathlib
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from ssq.core.aggregator import MatchAggregator, ScanStats, any_at_or_above
from ssq.core.config import Config
from ssq.core.paths import PathFilter
from ssq.core.patterns import PatternRegistry

from .git_io import GitRepository
from .result_schema import Finding, RawMatch, ScanMode, ScanUnit, ScanWarning, Severity, blob_digest
from .targets import HistoryTarget, ScanTarget, build_target

_LOG = logging.getLogger(__name__)

DEFAULT_WORKERS = 4
BATCH_PER_WORKER = 8
"""Units buffered per worker, bounding how much content is held in memory at once."""


@dataclass
class ScanResult:
    """Outcome of one scan run."""

    mode: ScanMode
    findings: List[Finding]
    warnings: List[ScanWarning] = field(default_factory=list)
    stats: ScanStats = field(default_factory=ScanStats)
    minimum: Severity = Severity.LOW
    cancelled: bool = False

    @property
    def failed(self) -> bool:
        """``True`` when any finding reaches the effective minimum severity."""

        return any_at_or_above(self.findings, self.minimum)

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "minimum_severity": self.minimum.value,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "stats": self.stats.to_dict(),
            "findings": [finding.to_dict(redact=redact) for finding in self.findings],
            "warnings": [warning.to_dict() for warning in self.warnings],
        }


def scan(
    root: Union[str, pathlib.Path],
    config: Config,
    mode: Union[ScanMode, str] = ScanMode.WORKTREE,
    *,
    rev_range: Optional[str] = None,
    workers: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
    repo: Optional[GitRepository] = None,
) -> ScanResult:
    """Scan ``root`` in the given mode and return ordered findings.

    ``ConfigError`` and ``RepositoryAccessError`` propagate before any
    findings are produced. Setting ``cancel`` stops the run between units (or
    between commits in history mode) and returns what was aggregated so far.
    """

    mode = ScanMode(mode)
    registry = PatternRegistry.from_config(config)
    path_filter = PathFilter(config.ignore_paths)
    repo = repo or GitRepository(root)
    target = build_target(mode, repo, path_filter, cancel=cancel, rev_range=rev_range)
    target.prepare()

    _LOG.debug(
        "Scanning %s in %s mode with %d patterns, %d ignore patterns, %d ignore paths",
        repo.root,
        mode.value,
        len(registry),
        len(config.ignore_patterns),
        len(path_filter),
    )

    descriptions = {pattern_id: pattern.description for pattern_id, pattern in config.patterns.items()}
    aggregator = MatchAggregator(config.severity, descriptions)
    cancelled = run_target(target, registry, aggregator, workers=workers or DEFAULT_WORKERS, cancel=cancel)

    graph = target.graph if isinstance(target, HistoryTarget) else None
    findings = aggregator.finish(graph)
    stats = aggregator.stats
    stats.path_ignored = target.counters.path_ignored
    stats.binary_skipped = target.counters.binary_skipped
    stats.unreadable = target.counters.unreadable
    stats.too_large = target.counters.too_large

    if cancelled:
        _LOG.warning("Scan cancelled; reporting %d findings collected so far", len(findings))
    return ScanResult(
        mode=mode,
        findings=findings,
        warnings=list(target.warnings),
        stats=stats,
        minimum=config.severity,
        cancelled=cancelled,
    )


def run_target(
    target: ScanTarget,
    registry: PatternRegistry,
    aggregator: MatchAggregator,
    workers: int = DEFAULT_WORKERS,
    cancel: Optional[threading.Event] = None,
) -> bool:
    """Drain ``target`` through the content scanner into ``aggregator``.

    Each worker task returns its own match list; results are merged on the
    calling thread in unit order. Returns ``True`` when cancelled.
    """

    workers = max(1, workers)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ssq-scan") as pool:
        for batch in _batched(target, workers * BATCH_PER_WORKER):
            to_scan = [unit for unit in batch if unit.content is not None]
            results = iter(pool.map(scan_content, to_scan, itertools.repeat(registry)))
            for unit in batch:
                if unit.content is None:
                    aggregator.add_reference(unit)
                    continue
                matches, suppressed = next(results)
                aggregator.add(unit, matches, suppressed)
            if cancel is not None and cancel.is_set():
                return True
    return cancel is not None and cancel.is_set()


def scan_content(unit: ScanUnit, registry: PatternRegistry) -> Tuple[List[RawMatch], int]:
    """Apply every detection pattern to one unit.

    Returns the surviving matches and the number suppressed by ignore
    patterns. Severity is not considered here.
    """

    content = unit.content or b""
    matches: List[RawMatch] = []
    suppressed = 0
    digest = unit.blob_id
    for pattern in registry.patterns:
        for match in pattern.finditer(content):
            matched = match.group(0)
            if registry.is_suppressed(matched):
                suppressed += 1
                continue
            if digest is None:
                digest = blob_digest(content)
            start, end = match.span()
            line, column = line_and_column(content, start)
            matches.append(
                RawMatch(
                    pattern_id=pattern.id,
                    severity=pattern.severity,
                    path=unit.path,
                    start=start,
                    end=end,
                    text=matched.decode("utf-8", errors="replace"),
                    line=line,
                    column=column,
                    commit=unit.commit,
                    digest=digest,
                )
            )
    return matches, suppressed


def line_and_column(content: bytes, offset: int) -> Tuple[int, int]:
    """Return the 1-based line and byte column of ``offset``."""

    line = content.count(b"\n", 0, offset) + 1
    line_start = content.rfind(b"\n", 0, offset) + 1
    return line, offset - line_start + 1


def _batched(units: Iterable[ScanUnit], size: int) -> Iterator[List[ScanUnit]]:
    iterator = iter(units)
    while True:
        batch = list(itertools.islice(iterator, size))
        if not batch:
            return
        yield batch
