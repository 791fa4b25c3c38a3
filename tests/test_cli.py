import json
from pathlib import Path

import pytest
import yaml
from conftest import GITHUB_TOKEN, write_files

from ssq import __main__ as entrypoint
from ssq import cli


def test_entrypoint_delegates_to_cli(monkeypatch: pytest.MonkeyPatch):
    captured: dict[str, object] = {}

    def fake_main(argv):  # pragma: no cover - exercised in test
        captured["argv"] = argv
        return 42

    monkeypatch.setattr(entrypoint.cli, "main", fake_main)
    result = entrypoint.main(["--staged"])
    assert result == 42
    assert captured["argv"] == ["--staged"]


def test_clean_directory_exits_zero(tmp_path: Path, capsys: pytest.CaptureFixture[str]):
    write_files(tmp_path, {"README.md": "nothing to see\n"})
    assert cli.main([str(tmp_path)]) == cli.EXIT_CLEAN
    assert "No matches found." in capsys.readouterr().out


def test_findings_exit_one_and_json_output(tmp_path: Path, capsys: pytest.CaptureFixture[str]):
    write_files(tmp_path, {"deploy.sh": f"GH={GITHUB_TOKEN}\n"})
    out_path = tmp_path / "reports" / "summary.json"
    sarif_path = tmp_path / "reports" / "report.sarif"
    code = cli.main([str(tmp_path), "--format", "json", "--out", str(out_path), "--sarif", str(sarif_path)])
    assert code == cli.EXIT_FINDINGS
    summary = json.loads(capsys.readouterr().out)
    assert summary["total"] == 1
    assert summary["findings"][0]["patternId"] == "github-pat"
    assert GITHUB_TOKEN not in out_path.read_text(encoding="utf-8")
    assert sarif_path.exists()


def test_severity_flag_raises_threshold(tmp_path: Path):
    write_files(tmp_path, {"settings.ini": "password = hunter2\n"})
    assert cli.main([str(tmp_path)]) == cli.EXIT_FINDINGS
    assert cli.main([str(tmp_path), "--severity", "HIGH"]) == cli.EXIT_CLEAN


def test_print_config_shows_effective_config(tmp_path: Path, capsys: pytest.CaptureFixture[str]):
    write_files(tmp_path, {".ssq.yml": "ignore_paths:\n  - build/**\n"})
    assert cli.main([str(tmp_path), "--print-config", "--severity", "critical"]) == cli.EXIT_CLEAN
    printed = yaml.safe_load(capsys.readouterr().out)
    assert printed["severity"] == "CRITICAL"
    assert "build/**" in printed["ignore_paths"]
    assert "generic-password" not in printed["patterns"]


def test_invalid_project_config_exits_two(tmp_path: Path, capsys: pytest.CaptureFixture[str]):
    write_files(tmp_path, {".ssq.yml": "patterns:\n  broken:\n    regex: '(oops'\n    severity: HIGH\n"})
    assert cli.main([str(tmp_path)]) == cli.EXIT_ERROR
    err = capsys.readouterr().err
    assert err.startswith("Error:")
    assert "patterns.broken" in err


def test_staged_outside_repository_exits_two(tmp_path: Path, capsys: pytest.CaptureFixture[str]):
    assert cli.main([str(tmp_path), "--staged"]) == cli.EXIT_ERROR
    assert "not a git repository" in capsys.readouterr().err


def test_range_with_staged_is_rejected(tmp_path: Path):
    with pytest.raises(SystemExit):
        cli.main([str(tmp_path), "--staged", "--range", "HEAD~1..HEAD"])


def test_user_base_config_applies_and_config_flag_overrides_it(
    tmp_path: Path, home: Path, capsys: pytest.CaptureFixture[str]
):
    write_files(
        home,
        {".config/secret-squirrel/config.yml": "patterns:\n  team-token:\n    regex: 'tt_[0-9]{8}'\n    severity: High\n"},
    )
    project = tmp_path / "project"
    write_files(project, {"app.cfg": "key = tt_12345678\n"})
    assert cli.main([str(project)]) == cli.EXIT_FINDINGS
    assert "Pattern: team-token (HIGH)" in capsys.readouterr().out

    explicit = tmp_path / "base.yml"
    explicit.write_text("patterns:\n  other:\n    regex: nothing-here\n    severity: LOW\n", encoding="utf-8")
    assert cli.main([str(project), "--config", str(explicit), "--print-config"]) == cli.EXIT_CLEAN
    printed = yaml.safe_load(capsys.readouterr().out)
    assert list(printed["patterns"]) == ["other"]
