"""Report rendering utilities."""

from __future__ import annotations

import datetime as dt
import json
import pathlib
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence

from ssq.core.aggregator import SEVERITY_ORDER
from ssq.detectors.result_schema import Finding, redact_secret

if TYPE_CHECKING:
    from ssq.detectors.engine import ScanResult

TOOL_NAME = "ssq"


@dataclass
class ReportPaths:
    json_path: pathlib.Path | None
    sarif_path: pathlib.Path | None


def build_summary(result: "ScanResult", git: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    summary = result.to_dict()
    summary.update(
        {
            "generated_at": dt.datetime.now(dt.UTC).isoformat(),
            "total": len(result.findings),
            "top_patterns": _top_patterns(result.findings),
        }
    )
    summary.update({level.lower(): result.stats.by_severity.get(level, 0) for level in SEVERITY_ORDER})
    if git:
        summary["git"] = dict(git)
    return summary


def write_reports(
    summary: Dict[str, Any],
    findings: Sequence[Finding],
    json_path: pathlib.Path | None = None,
    sarif_path: pathlib.Path | None = None,
) -> ReportPaths:
    if json_path:
        json_path.parent.mkdir(parents=True, exist_ok=True)
        json_path.write_text(json.dumps(summary, indent=2, sort_keys=True), encoding="utf-8")
    if sarif_path:
        sarif_path.parent.mkdir(parents=True, exist_ok=True)
        sarif_path.write_text(json.dumps(render_sarif(findings), indent=2), encoding="utf-8")
    return ReportPaths(json_path=json_path, sarif_path=sarif_path)


def render_text(result: "ScanResult") -> str:
    lines: List[str] = []
    if not result.findings:
        lines.append("No matches found.")
    else:
        lines.append("Matches found:")
        lines.append("==============")
        for finding in result.findings:
            lines.append("")
            lines.append(f"Pattern: {finding.pattern_id} ({finding.severity.value})")
            if finding.description:
                lines.append(f"Description: {finding.description}")
            lines.append(f"Location: {finding.path}:{finding.line}:{finding.column}")
            if finding.commits:
                shown = ", ".join(commit[:12] for commit in finding.commits[:5])
                more = len(finding.commits) - 5
                suffix = f" (+{more} more)" if more > 0 else ""
                lines.append(f"Commits: {shown}{suffix}")
            lines.append(f"Match: {redact_secret(finding.text)}")
    for warning in result.warnings:
        lines.append(f"warning: {warning.path}: {warning.message}")
    stats = result.stats
    lines.append("")
    lines.append(
        f"{stats.units_scanned} units scanned, {stats.path_ignored} ignored by path, "
        f"{stats.binary_skipped} binary skipped, {stats.suppressed} matches suppressed"
    )
    if result.findings:
        lines.append(f"WARNING: {len(result.findings)} potential secrets found")
    if result.cancelled:
        lines.append("Scan was cancelled; results are partial.")
    return "\n".join(lines) + "\n"


def render_sarif(findings: Sequence[Finding]) -> Dict[str, Any]:
    rules: Dict[str, Dict[str, Any]] = {}
    results = []
    for finding in findings:
        rules.setdefault(
            finding.pattern_id,
            {
                "id": finding.pattern_id,
                "shortDescription": {"text": finding.description or finding.pattern_id},
                "properties": {"severity": finding.severity.value},
            },
        )
        result: Dict[str, Any] = {
            "ruleId": finding.pattern_id,
            "level": _to_sarif_level(finding.severity.value),
            "message": {"text": f"{finding.description or finding.pattern_id}: {redact_secret(finding.text)}"},
            "locations": [
                {
                    "physicalLocation": {
                        "artifactLocation": {"uri": finding.path},
                        "region": {
                            "startLine": finding.line,
                            "startColumn": finding.column,
                            "byteOffset": finding.start,
                            "byteLength": finding.end - finding.start,
                        },
                    }
                }
            ],
            "partialFingerprints": {"ssq/v1": ":".join(str(part) for part in finding.dedup_key)},
        }
        if finding.commits:
            result["properties"] = {"commits": list(finding.commits)}
        results.append(result)
    return {
        "$schema": "https://json.schemastore.org/sarif-2.1.0.json",
        "version": "2.1.0",
        "runs": [
            {
                "tool": {"driver": {"name": TOOL_NAME, "rules": list(rules.values())}},
                "results": results,
            }
        ],
    }


def _top_patterns(findings: Sequence[Finding], limit: int = 10) -> List[Dict[str, Any]]:
    counter: Dict[str, Dict[str, Any]] = {}
    for finding in findings:
        entry = counter.setdefault(finding.pattern_id, {"count": 0, "severity": finding.severity.value})
        entry["count"] += 1
    sorted_items = sorted(
        counter.items(),
        key=lambda kv: (-kv[1]["count"], SEVERITY_ORDER.index(kv[1]["severity"]), kv[0]),
    )
    return [
        {"name": name, "count": payload["count"], "severity": payload["severity"]}
        for name, payload in sorted_items[:limit]
    ]


def _to_sarif_level(severity: Any) -> str:
    sev = str(severity or "LOW").upper()
    if sev in {"CRITICAL", "HIGH"}:
        return "error"
    if sev == "MEDIUM":
        return "warning"
    return "note"
