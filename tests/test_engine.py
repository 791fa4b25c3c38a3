import threading
from pathlib import Path

from conftest import AWS_KEY, GITHUB_TOKEN, git, requires_git, write_files

from ssq.core.config import Config, resolve_config
from ssq.core.patterns import Pattern, PatternRegistry
from ssq.detectors import engine, targets
from ssq.detectors.result_schema import ScanMode, ScanUnit, Severity, SourceKind, blob_digest


def _registry(*patterns, ignore_patterns=()):
    return PatternRegistry.from_config(
        Config(patterns={pattern.id: pattern for pattern in patterns}, ignore_patterns=tuple(ignore_patterns))
    )


def test_scan_content_reports_offsets_and_positions():
    registry = _registry(Pattern(id="token", regex="tok_[a-z]{4}", severity=Severity.HIGH))
    content = b"first line\nvalue = tok_abcd and tok_wxyz\n"
    unit = ScanUnit(kind=SourceKind.WORKTREE, path="app.cfg", content=content)
    matches, suppressed = engine.scan_content(unit, registry)
    assert suppressed == 0
    assert [(m.start, m.end, m.line, m.column) for m in matches] == [(19, 27, 2, 9), (32, 40, 2, 22)]
    assert matches[0].text == "tok_abcd"
    assert matches[0].digest == blob_digest(content)


def test_scan_content_counts_suppressed_matches():
    registry = _registry(
        Pattern(id="token", regex="tok_[a-z]+", severity=Severity.HIGH),
        ignore_patterns=["tok_fake"],
    )
    unit = ScanUnit(kind=SourceKind.WORKTREE, path="a.txt", content=b"tok_fake tok_real")
    matches, suppressed = engine.scan_content(unit, registry)
    assert suppressed == 1
    assert [m.text for m in matches] == ["tok_real"]


def test_scan_content_reuses_unit_blob_id():
    registry = _registry(Pattern(id="token", regex="tok", severity=Severity.LOW))
    unit = ScanUnit(kind=SourceKind.STAGED, path="a.txt", content=b"tok", blob_id="f" * 40)
    matches, _ = engine.scan_content(unit, registry)
    assert matches[0].digest == "f" * 40


def test_line_and_column():
    assert engine.line_and_column(b"abc", 0) == (1, 1)
    assert engine.line_and_column(b"a\nbc\nd", 3) == (2, 2)
    assert engine.line_and_column(b"a\nbc\nd", 5) == (3, 1)


def test_worktree_github_token_is_critical(tmp_path: Path, default_config):
    write_files(tmp_path, {"deploy.sh": f"# config\nexport GH={GITHUB_TOKEN}\n"})
    result = engine.scan(tmp_path, default_config)
    assert len(result.findings) == 1
    finding = result.findings[0]
    assert finding.pattern_id == "github-pat"
    assert finding.severity is Severity.CRITICAL
    assert finding.source is SourceKind.WORKTREE
    assert finding.path == "deploy.sh"
    assert (finding.start, finding.end) == (19, 19 + len(GITHUB_TOKEN))
    assert (finding.line, finding.column) == (2, 11)
    assert result.failed


def test_ignore_paths_exclude_before_scanning(tmp_path: Path, default_config):
    write_files(
        tmp_path,
        {
            "tests/unit/creds.txt": f"aws_key = {AWS_KEY}\n",
            "app/creds.txt": f"aws_key = {AWS_KEY}\n",
        },
    )
    result = engine.scan(tmp_path, default_config)
    assert [(f.pattern_id, f.path) for f in result.findings] == [("aws-access-key", "app/creds.txt")]
    assert result.stats.path_ignored == 1
    assert result.stats.units_scanned == 1


def test_project_severity_filters_low_findings(tmp_path: Path):
    write_files(tmp_path, {".ssq.yaml": "severity: HIGH\n", "settings.ini": "password = hunter2\n"})
    config = resolve_config(tmp_path)
    result = engine.scan(tmp_path, config)
    assert result.findings == []
    assert not result.failed
    assert result.stats.below_threshold == 1
    assert result.minimum is Severity.HIGH


def test_low_severity_findings_fail_at_default_threshold(tmp_path: Path, default_config):
    write_files(tmp_path, {"settings.ini": "password = hunter2\n"})
    result = engine.scan(tmp_path, default_config)
    assert [f.pattern_id for f in result.findings] == ["generic-password"]
    assert result.failed


def test_binary_files_are_skipped(tmp_path: Path, default_config):
    write_files(tmp_path, {"blob.bin": b"\x00\x01" + GITHUB_TOKEN.encode("ascii")})
    result = engine.scan(tmp_path, default_config)
    assert result.findings == []
    assert result.stats.binary_skipped == 1
    assert result.stats.units_scanned == 0


def test_nul_after_first_block_is_still_text(tmp_path: Path, default_config):
    content = GITHUB_TOKEN.encode("ascii") + b" " * 9000 + b"\x00"
    write_files(tmp_path, {"large.txt": content})
    result = engine.scan(tmp_path, default_config)
    assert [f.pattern_id for f in result.findings] == ["github-pat"]


def test_unreadable_file_becomes_warning(tmp_path: Path, default_config, monkeypatch):
    write_files(tmp_path, {"locked.txt": GITHUB_TOKEN, "open.txt": GITHUB_TOKEN})
    original_open = Path.open

    def fake_open(self, *args, **kwargs):
        if self.name == "locked.txt":
            raise PermissionError(13, "Permission denied")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fake_open)
    result = engine.scan(tmp_path, default_config)
    assert [f.path for f in result.findings] == ["open.txt"]
    assert [(w.path, w.message) for w in result.warnings] == [("locked.txt", "Permission denied")]
    assert result.stats.unreadable == 1


def test_findings_ordered_by_severity_then_path_then_offset(tmp_path: Path, default_config):
    write_files(
        tmp_path,
        {
            "b.txt": f"password = hunter2\n{GITHUB_TOKEN}\n",
            "a.txt": f"pwd: letmein {AWS_KEY}\n",
        },
    )
    result = engine.scan(tmp_path, default_config)
    ordered = [(f.severity.value, f.path, f.pattern_id) for f in result.findings]
    assert ordered == [
        ("CRITICAL", "a.txt", "aws-access-key"),
        ("CRITICAL", "b.txt", "github-pat"),
        ("LOW", "a.txt", "generic-password"),
        ("LOW", "b.txt", "generic-password"),
    ]


def test_scan_is_idempotent(tmp_path: Path, default_config):
    write_files(
        tmp_path,
        {f"module_{index}.py": f"TOKEN_{index} = '{GITHUB_TOKEN}'\n" for index in range(20)},
    )
    first = engine.scan(tmp_path, default_config, workers=4)
    second = engine.scan(tmp_path, default_config, workers=1)
    assert first.findings == second.findings
    assert len(first.findings) == 20


def test_preset_cancel_returns_partial_result(tmp_path: Path, default_config):
    write_files(tmp_path, {"a.txt": GITHUB_TOKEN})
    cancel = threading.Event()
    cancel.set()
    result = engine.scan(tmp_path, default_config, cancel=cancel)
    assert result.cancelled
    assert result.findings == []


def test_scan_mode_accepts_strings(tmp_path: Path, default_config):
    result = engine.scan(tmp_path, default_config, "worktree")
    assert result.mode is ScanMode.WORKTREE
    assert result.to_dict()["findings"] == []


def test_plain_directory_walk_honors_gitignore(tmp_path: Path, default_config):
    write_files(
        tmp_path,
        {
            ".gitignore": "*.env\n",
            "prod.env": GITHUB_TOKEN,
            "src/app.py": GITHUB_TOKEN,
        },
    )
    result = engine.scan(tmp_path, default_config)
    assert [f.path for f in result.findings] == ["src/app.py"]


@requires_git
def test_worktree_in_repository_uses_git_file_list(git_repo: Path, default_config):
    write_files(
        git_repo,
        {
            ".gitignore": "ignored/\n",
            "ignored/secret.txt": GITHUB_TOKEN,
            "tracked.txt": GITHUB_TOKEN,
        },
    )
    git(git_repo, "add", ".gitignore", "tracked.txt")
    write_files(git_repo, {"untracked.txt": GITHUB_TOKEN})
    result = engine.scan(git_repo / "ignored", default_config)
    assert [f.path for f in result.findings] == ["tracked.txt", "untracked.txt"]


def test_oversized_text_file_is_skipped_with_warning(tmp_path: Path, default_config, monkeypatch):
    monkeypatch.setattr(targets, "MAX_FILE_BYTES", 64)
    write_files(
        tmp_path,
        {
            "big.txt": GITHUB_TOKEN + " " * 100,
            "small.txt": GITHUB_TOKEN,
            "big.bin": b"\x00" + b" " * 100,
        },
    )
    result = engine.scan(tmp_path, default_config)
    assert [f.path for f in result.findings] == ["small.txt"]
    assert [w.path for w in result.warnings] == ["big.txt"]
    assert "64 byte limit" in result.warnings[0].message
    assert result.stats.too_large == 1
    assert result.stats.binary_skipped == 1
