"""Layered configuration loading: base config (user or shipped) plus project overrides."""

from __future__ import annotations

import logging
import os
import pathlib
from dataclasses import dataclass, field, replace
from enum import Enum
from importlib import resources
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import jsonschema
import yaml

from ssq.core.patterns import Pattern, compile_regex
from ssq.detectors.result_schema import Severity
from ssq.errors import ConfigError

_LOG = logging.getLogger(__name__)

APP_DIR_NAME = "secret-squirrel"
USER_CONFIG_NAME = "config.yml"
DEFAULT_CONFIG_RESOURCE = "default_config.yml"
PROJECT_CONFIG_NAMES = (".ssq.yaml", ".ssq.yml")

# Severity names are checked by Severity.parse so any letter case is accepted.
CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "severity": {"type": ["string", "null"]},
        "ignore_patterns": {"type": ["array", "null"], "items": {"type": "string"}},
        "ignore_paths": {"type": ["array", "null"], "items": {"type": "string"}},
        "ignore_pattern_behavior": {"enum": ["merge", "replace", None]},
        "ignore_paths_behavior": {"enum": ["merge", "replace", None]},
        "patterns": {
            "type": ["object", "null"],
            "additionalProperties": {
                "type": "object",
                "additionalProperties": False,
                "required": ["regex", "severity"],
                "properties": {
                    "description": {"type": ["string", "null"]},
                    "regex": {"type": "string"},
                    "severity": {"type": "string"},
                },
            },
        },
    },
}


class Behavior(str, Enum):
    """How a project ignore list combines with the base list."""

    MERGE = "merge"
    REPLACE = "replace"


@dataclass(frozen=True, slots=True)
class ConfigLayer:
    """One validated configuration document before merging.

    ``None`` list fields mean the document did not mention the key, which is
    different from an explicit empty list.
    """

    source: str
    severity: Optional[Severity] = None
    ignore_patterns: Optional[Tuple[str, ...]] = None
    ignore_paths: Optional[Tuple[str, ...]] = None
    ignore_pattern_behavior: Behavior = Behavior.MERGE
    ignore_paths_behavior: Behavior = Behavior.MERGE
    patterns: Mapping[str, Pattern] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True, slots=True)
class Config:
    """Effective configuration for one scan run."""

    severity: Severity = Severity.LOW
    ignore_patterns: Tuple[str, ...] = ()
    ignore_paths: Tuple[str, ...] = ()
    ignore_pattern_behavior: Behavior = Behavior.MERGE
    ignore_paths_behavior: Behavior = Behavior.MERGE
    patterns: Mapping[str, Pattern] = field(default_factory=lambda: MappingProxyType({}))
    sources: Tuple[str, ...] = ()

    def with_severity(self, level: Union[str, Severity]) -> "Config":
        """Return a copy with the minimum severity overridden (CLI flag)."""

        return replace(self, severity=Severity.parse(level))

    def meets_severity(self, severity: Severity) -> bool:
        return severity >= self.severity

    def to_dict(self) -> Dict[str, Any]:
        """Effective configuration for display, hiding patterns below the minimum."""

        return {
            "severity": self.severity.value,
            "ignore_pattern_behavior": self.ignore_pattern_behavior.value,
            "ignore_paths_behavior": self.ignore_paths_behavior.value,
            "ignore_patterns": list(self.ignore_patterns),
            "ignore_paths": list(self.ignore_paths),
            "patterns": {
                pattern_id: self.patterns[pattern_id].to_dict()
                for pattern_id in sorted(self.patterns)
                if self.meets_severity(self.patterns[pattern_id].severity)
            },
        }

    def dump(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False)


def parse_layer(document: Any, source: str) -> ConfigLayer:
    """Validate a parsed YAML document and convert it into a ``ConfigLayer``."""

    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise ConfigError("configuration must be a mapping", source=source)
    _check_keys_are_strings(document, source)
    _validate_schema(document, source)

    patterns: Dict[str, Pattern] = {}
    for pattern_id, entry in (document.get("patterns") or {}).items():
        compile_regex(entry["regex"], source=source, key=f"patterns.{pattern_id}")
        patterns[pattern_id] = Pattern(
            id=pattern_id,
            regex=entry["regex"],
            severity=_parse_severity(entry["severity"], source, f"patterns.{pattern_id}.severity"),
            description=entry.get("description") or "",
        )

    ignore_patterns = _optional_tuple(document, "ignore_patterns")
    for index, regex in enumerate(ignore_patterns or ()):
        compile_regex(regex, source=source, key=f"ignore_patterns[{index}]")

    severity = document.get("severity")
    return ConfigLayer(
        source=source,
        severity=_parse_severity(severity, source, "severity") if severity is not None else None,
        ignore_patterns=ignore_patterns,
        ignore_paths=_optional_tuple(document, "ignore_paths"),
        ignore_pattern_behavior=Behavior(document.get("ignore_pattern_behavior") or "merge"),
        ignore_paths_behavior=Behavior(document.get("ignore_paths_behavior") or "merge"),
        patterns=MappingProxyType(patterns),
    )


def load_layer(path: pathlib.Path) -> ConfigLayer:
    """Read, parse and validate one configuration file."""

    source = str(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read configuration: {exc.strerror or exc}", source=source) from exc
    _LOG.debug("Loading config from %s", source)
    return parse_layer(_parse_yaml(text, source), source)


def user_config_dir() -> Optional[pathlib.Path]:
    """Per-user config directory: ``%APPDATA%`` on Windows, ``~/.config`` elsewhere (WSL included)."""

    if os.name == "nt" and not _is_wsl():
        appdata = os.environ.get("APPDATA")
        return pathlib.Path(appdata) / APP_DIR_NAME if appdata else None
    home = os.environ.get("HOME")
    return pathlib.Path(home) / ".config" / APP_DIR_NAME if home else None


def find_user_config() -> Optional[pathlib.Path]:
    config_dir = user_config_dir()
    if config_dir is None:
        return None
    candidate = config_dir / USER_CONFIG_NAME
    return candidate if candidate.is_file() else None


def load_base_layer(path: Optional[pathlib.Path] = None) -> ConfigLayer:
    """Load the base layer.

    An explicit ``path`` wins, then the user's ``config.yml`` in
    :func:`user_config_dir`, then the copy shipped with the package.
    """

    if path is not None:
        return load_layer(path)
    user_config = find_user_config()
    if user_config is not None:
        _LOG.debug("Loading base config from user config %s", user_config)
        return load_layer(user_config)
    source = f"<builtin>/{DEFAULT_CONFIG_RESOURCE}"
    text = resources.files("ssq.core").joinpath(DEFAULT_CONFIG_RESOURCE).read_text(encoding="utf-8")
    _LOG.debug("Loading base config from %s", source)
    return parse_layer(_parse_yaml(text, source), source)


def find_project_config(root: pathlib.Path) -> Optional[pathlib.Path]:
    for name in PROJECT_CONFIG_NAMES:
        candidate = root / name
        if candidate.is_file():
            return candidate
    return None


def merge_layers(base: ConfigLayer, project: Optional[ConfigLayer] = None) -> Config:
    """Combine a base layer and an optional project layer into a ``Config``.

    Ignore lists follow the project's ``*_behavior`` flag; patterns always
    merge by id with project entries replacing base entries wholesale; the
    minimum severity is the project's, else the base's, else LOW.
    """

    if project is None:
        return Config(
            severity=base.severity or Severity.LOW,
            ignore_patterns=base.ignore_patterns or (),
            ignore_paths=base.ignore_paths or (),
            patterns=base.patterns,
            sources=(base.source,),
        )

    patterns = dict(base.patterns)
    patterns.update(project.patterns)

    return Config(
        severity=project.severity or base.severity or Severity.LOW,
        ignore_patterns=_merge_list(base.ignore_patterns, project.ignore_patterns, project.ignore_pattern_behavior),
        ignore_paths=_merge_list(base.ignore_paths, project.ignore_paths, project.ignore_paths_behavior),
        ignore_pattern_behavior=project.ignore_pattern_behavior,
        ignore_paths_behavior=project.ignore_paths_behavior,
        patterns=MappingProxyType(patterns),
        sources=(base.source, project.source),
    )


def resolve_config(
    root: pathlib.Path,
    base_path: Optional[pathlib.Path] = None,
    project_path: Optional[pathlib.Path] = None,
) -> Config:
    """Load the base config and the project config found at ``root`` and merge them."""

    base = load_base_layer(base_path)
    project_file = project_path or find_project_config(root)
    if project_file is None:
        _LOG.debug("No project config under %s; using base config", root)
        return merge_layers(base)
    _LOG.debug("Merging project config %s over %s", project_file, base.source)
    return merge_layers(base, load_layer(project_file))


def _merge_list(
    base: Optional[Tuple[str, ...]],
    project: Optional[Tuple[str, ...]],
    behavior: Behavior,
) -> Tuple[str, ...]:
    if project is None:
        return base or ()
    if behavior is Behavior.REPLACE:
        return project
    return (base or ()) + project


def _optional_tuple(document: Dict[str, Any], key: str) -> Optional[Tuple[str, ...]]:
    value = document.get(key)
    if value is None:
        return None
    return tuple(value)


def _parse_severity(value: Any, source: str, key: str) -> Severity:
    try:
        return Severity.parse(value)
    except ValueError as exc:
        raise ConfigError(str(exc), source=source, key=key) from exc


def _is_wsl() -> bool:
    try:
        return "microsoft" in pathlib.Path("/proc/version").read_text(encoding="utf-8").lower()
    except OSError:
        return False


def _parse_yaml(text: str, source: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML: {exc}", source=source) from exc


def _check_keys_are_strings(document: Dict[Any, Any], source: str) -> None:
    for key in document:
        if not isinstance(key, str):
            raise ConfigError(f"keys must be strings, got {key!r}", source=source)
    patterns = document.get("patterns")
    if isinstance(patterns, dict):
        for pattern_id in patterns:
            if not isinstance(pattern_id, str):
                raise ConfigError(f"pattern ids must be strings, got {pattern_id!r}", source=source, key="patterns")


def _validate_schema(document: Dict[str, Any], source: str) -> None:
    validator = jsonschema.Draft7Validator(CONFIG_SCHEMA)
    errors = sorted(validator.iter_errors(document), key=lambda err: [str(part) for part in err.absolute_path])
    if not errors:
        return
    error = errors[0]
    key = ".".join(str(part) for part in error.absolute_path) or None
    raise ConfigError(error.message, source=source, key=key)
