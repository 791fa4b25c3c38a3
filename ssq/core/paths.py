"""Glob based path exclusion."""

from __future__ import annotations

import logging
import pathlib
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

_LOG = logging.getLogger(__name__)


def glob_to_regex(glob: str) -> str:
    """Translate a path glob into an anchored regular expression.

    ``**`` spans directory separators (``**/`` may also match nothing),
    ``*`` and ``?`` stay inside one segment, ``[...]`` is a character class.
    """

    out: List[str] = []
    i, n = 0, len(glob)
    while i < n:
        char = glob[i]
        if char == "*":
            if glob.startswith("**", i):
                i += 2
                if i < n and glob[i] == "/":
                    i += 1
                    out.append("(?:.*/)?")
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif char == "?":
            out.append("[^/]")
        elif char == "[":
            end = _class_end(glob, i)
            if end is None:
                out.append(re.escape(char))
            else:
                body = glob[i + 1 : end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append("[" + body.replace("\\", "\\\\") + "]")
                i = end
        else:
            out.append(re.escape(char))
        i += 1
    return "(?s:" + "".join(out) + r")\Z"


def _class_end(glob: str, start: int) -> Optional[int]:
    j = start + 1
    if j < len(glob) and glob[j] in "!^":
        j += 1
    if j < len(glob) and glob[j] == "]":
        j += 1
    while j < len(glob) and glob[j] != "]":
        j += 1
    return j if j < len(glob) else None


def normalize_glob(pattern: str) -> str:
    pattern = pattern.strip()
    if pattern.startswith("./"):
        pattern = pattern[2:]
    if pattern.startswith("/"):
        pattern = pattern[1:]
    if pattern.endswith("/"):
        pattern = pattern + "**"
    return pattern or "**"


def normalize_path(path: str) -> str:
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/")


class PathFilter:
    """Evaluates ``ignore_paths`` globs against repository-relative posix paths."""

    def __init__(self, globs: Iterable[str]):
        self._rules: Tuple[Tuple[str, "re.Pattern[str]"], ...] = tuple(
            (glob, re.compile(glob_to_regex(normalize_glob(glob)))) for glob in globs
        )

    def __len__(self) -> int:
        return len(self._rules)

    def match(self, path: str) -> Optional[str]:
        """Return the first glob that excludes ``path``, or ``None``."""

        subject = normalize_path(path)
        for glob, regex in self._rules:
            if regex.match(subject):
                return glob
        return None

    def is_excluded(self, path: str) -> bool:
        glob = self.match(path)
        if glob is not None:
            _LOG.debug("Skipping %s (ignore_paths: %s)", path, glob)
            return True
        return False


@dataclass(slots=True)
class GitignorePattern:
    """Represents a single gitignore rule."""

    regex: "re.Pattern[str]"
    negated: bool
    dir_only: bool


class GitignoreMatcher:
    """Minimal root ``.gitignore`` matcher used when the target is not a git repository."""

    def __init__(self, root: pathlib.Path):
        self.root = root
        self._patterns: List[GitignorePattern] = []
        self._load_patterns()

    def _load_patterns(self) -> None:
        path = self.root / ".gitignore"
        if not path.is_file():
            return
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeDecodeError) as exc:
            _LOG.warning("Cannot read %s: %s", path, exc)
            return
        for raw_line in lines:
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            negated = line.startswith("!")
            if negated:
                line = line[1:]
            dir_only = line.endswith("/")
            line = line.rstrip("/")
            if not line:
                continue
            anchored = "/" in line
            glob = line.lstrip("/") if anchored else "**/" + line
            self._patterns.append(
                GitignorePattern(regex=re.compile(glob_to_regex(glob)), negated=negated, dir_only=dir_only)
            )

    def is_ignored(self, relative: str, is_dir: bool = False) -> bool:
        """Return ``True`` when the relative path is ignored; the last matching rule wins."""

        matched = False
        for rule in self._patterns:
            if rule.dir_only and not is_dir:
                continue
            if rule.regex.match(relative):
                matched = not rule.negated
        return matched
