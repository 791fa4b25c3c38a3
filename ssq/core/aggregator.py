"""Threshold filtering, de-duplication and ordering of matches."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ssq.detectors.result_schema import Finding, RawMatch, ScanUnit, Severity, SourceKind

if TYPE_CHECKING:
    from ssq.detectors.targets import HistoryGraph

SEVERITY_ORDER = [level.value for level in sorted(Severity, key=lambda level: level.rank, reverse=True)]


@dataclass
class ScanStats:
    units_scanned: int = 0
    units_cached: int = 0
    path_ignored: int = 0
    binary_skipped: int = 0
    unreadable: int = 0
    too_large: int = 0
    raw_matches: int = 0
    suppressed: int = 0
    below_threshold: int = 0
    findings: int = 0
    by_severity: Dict[str, int] = field(default_factory=lambda: {level: 0 for level in SEVERITY_ORDER})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "units_scanned": self.units_scanned,
            "units_cached": self.units_cached,
            "path_ignored": self.path_ignored,
            "binary_skipped": self.binary_skipped,
            "unreadable": self.unreadable,
            "too_large": self.too_large,
            "raw_matches": self.raw_matches,
            "suppressed": self.suppressed,
            "below_threshold": self.below_threshold,
            "findings": self.findings,
            **{level.lower(): count for level, count in self.by_severity.items()},
        }


class MatchAggregator:
    """Collects suppression-surviving matches and turns them into ordered findings.

    Worktree and staged matches stand alone. History matches are stored per
    blob digest; every unit referencing that digest adds an introduction
    ``(commit, path)``, and :meth:`finish` collapses each
    ``(pattern id, digest, offset)`` into one finding carrying all commits.
    """

    def __init__(
        self,
        minimum: Severity,
        descriptions: Optional[Mapping[str, str]] = None,
        stats: Optional[ScanStats] = None,
    ):
        self.minimum = minimum
        self.descriptions = dict(descriptions or {})
        self.stats = stats or ScanStats()
        self._matches: List[Tuple[SourceKind, RawMatch]] = []
        self._blob_matches: Dict[str, List[RawMatch]] = {}
        self._introductions: Dict[str, List[Tuple[str, str]]] = {}

    def add(self, unit: ScanUnit, matches: Sequence[RawMatch], suppressed: int = 0) -> None:
        """Record the scanner output for one unit that carried content."""

        self.stats.units_scanned += 1
        self.stats.raw_matches += len(matches) + suppressed
        self.stats.suppressed += suppressed
        if unit.kind is SourceKind.HISTORY and unit.blob_id is not None:
            self._blob_matches[unit.blob_id] = list(matches)
            self._introduce(unit)
            return
        self._matches.extend((unit.kind, match) for match in matches)

    def add_reference(self, unit: ScanUnit) -> None:
        """Record a history unit whose blob was already scanned in this run."""

        self.stats.units_cached += 1
        self._introduce(unit)

    def _introduce(self, unit: ScanUnit) -> None:
        if unit.blob_id is None or unit.commit is None:
            raise ValueError(f"history unit {unit.path} needs a commit and a blob id")
        self._introductions.setdefault(unit.blob_id, []).append((unit.commit, unit.path))

    def finish(self, graph: Optional["HistoryGraph"] = None) -> List[Finding]:
        """Return findings at or above the minimum, deterministically ordered.

        ``graph`` is the history pass's change graph, used to annotate each
        history finding with every commit that contains the blob.
        """

        findings: List[Finding] = []
        for kind, match in self._matches:
            if not self._qualifies(match):
                continue
            findings.append(self._to_finding(kind, match))
        for digest, matches in self._blob_matches.items():
            introductions = self._introductions.get(digest, [])
            qualifying = [match for match in matches if self._qualifies(match)]
            if not qualifying or not introductions:
                continue
            commits = self._commits_for(digest, introductions, graph)
            paths = tuple(sorted({path for _, path in introductions}))
            first_path = introductions[0][1]
            for match in qualifying:
                findings.append(
                    self._to_finding(
                        SourceKind.HISTORY,
                        match.relocate(path=first_path, commit=introductions[0][0]),
                        commits=commits,
                        paths=paths,
                    )
                )

        findings = dedupe(findings)
        position = graph.position if graph is not None else None
        findings.sort(key=lambda finding: sort_key(finding, position))
        self.stats.findings = len(findings)
        for finding in findings:
            self.stats.by_severity[finding.severity.value] += 1
        return findings

    def _qualifies(self, match: RawMatch) -> bool:
        if match.severity >= self.minimum:
            return True
        self.stats.below_threshold += 1
        return False

    def _to_finding(
        self,
        kind: SourceKind,
        match: RawMatch,
        commits: Tuple[str, ...] = (),
        paths: Tuple[str, ...] = (),
    ) -> Finding:
        return Finding(
            pattern_id=match.pattern_id,
            description=self.descriptions.get(match.pattern_id, ""),
            severity=match.severity,
            source=kind,
            path=match.path,
            start=match.start,
            end=match.end,
            line=match.line,
            column=match.column,
            text=match.text,
            digest=match.digest,
            commits=commits,
            paths=paths or (match.path,),
        )

    @staticmethod
    def _commits_for(digest: str, introductions: Sequence[Tuple[str, str]], graph: Optional["HistoryGraph"]) -> Tuple[str, ...]:
        commits: Dict[str, None] = {}
        for commit, path in introductions:
            if graph is None:
                commits.setdefault(commit, None)
                continue
            for present in graph.presence(commit, path, digest):
                commits.setdefault(present, None)
        ordered = list(commits)
        if graph is not None:
            ordered.sort(key=graph.position)
        return tuple(ordered)


def dedupe(findings: Sequence[Finding]) -> List[Finding]:
    """Collapse history findings sharing a de-duplication key; others pass through."""

    unique: Dict[Tuple[str, str, int], Finding] = {}
    passthrough: List[Finding] = []
    for finding in findings:
        if finding.source is not SourceKind.HISTORY:
            passthrough.append(finding)
            continue
        existing = unique.get(finding.dedup_key)
        if existing is None:
            unique[finding.dedup_key] = finding
    return passthrough + list(unique.values())


def sort_key(finding: Finding, position: Optional[Callable[[str], int]] = None) -> Tuple[Any, ...]:
    """Descending severity, then unit identifier, then offset."""

    first_commit = 0
    if finding.commits:
        first_commit = position(finding.commits[0]) if position is not None else 0
    return (
        -finding.severity.rank,
        finding.path,
        first_commit,
        finding.commits[0] if finding.commits else "",
        finding.start,
        finding.pattern_id,
        finding.end,
    )


def any_at_or_above(findings: Sequence[Finding], minimum: Severity) -> bool:
    """Exit signal: ``True`` when a finding reaches the minimum severity."""

    return any(finding.severity >= minimum for finding in findings)
