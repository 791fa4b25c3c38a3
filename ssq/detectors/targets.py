# SPDX-License-Identifier: Apache-2.0
"""Scan targets: lazy producers of scan units for worktree, staged and history modes."""

from __future__ import annotations

import abc
import logging
import os
import pathlib
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Iterator, List, Optional, Set

from ssq.core.paths import GitignoreMatcher, PathFilter
from ssq.errors import RepositoryAccessError

from .git_io import CommitChanges, GitRepository
from .result_schema import ScanMode, ScanUnit, ScanWarning, SourceKind

_LOG = logging.getLogger(__name__)

BINARY_CHECK_BYTES = 8192
"""Size of the leading block inspected for NUL bytes."""

MAX_FILE_BYTES = 2 * 1024 * 1024
"""Worktree files larger than this are skipped with a warning."""

SKIP_DIRS = {".git", ".hg", ".svn", "__pycache__"}


def is_binary(data: bytes) -> bool:
    """Heuristic check for binary content: a NUL byte in the first block."""

    return b"\x00" in data[:BINARY_CHECK_BYTES]


@dataclass(slots=True)
class TargetCounters:
    """Per-pass bookkeeping of units that never reached the content scanner."""

    path_ignored: int = 0
    binary_skipped: int = 0
    unreadable: int = 0
    too_large: int = 0
    cached: int = 0


class ScanTarget(abc.ABC):
    """A restartable, lazy, finite sequence of ``ScanUnit``.

    Every ``iter()`` starts a fresh pass and resets ``warnings`` and
    ``counters``. Paths matching the ignore globs are dropped before any
    content is read.
    """

    kind: SourceKind

    def __init__(
        self,
        repo: GitRepository,
        path_filter: PathFilter,
        cancel: Optional[threading.Event] = None,
    ):
        self.repo = repo
        self.path_filter = path_filter
        self.cancel = cancel
        self.warnings: List[ScanWarning] = []
        self.counters = TargetCounters()

    def prepare(self) -> None:
        """Fail fast with ``RepositoryAccessError`` before any unit is produced."""

    def __iter__(self) -> Iterator[ScanUnit]:
        self.warnings = []
        self.counters = TargetCounters()
        return self._units()

    @abc.abstractmethod
    def _units(self) -> Iterator[ScanUnit]:
        raise NotImplementedError

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    def _excluded(self, path: str) -> bool:
        if self.path_filter.is_excluded(path):
            self.counters.path_ignored += 1
            return True
        return False

    def _warn(self, path: str, message: str) -> None:
        _LOG.warning("Skipping %s: %s", path, message)
        self.warnings.append(ScanWarning(path=path, message=message))


class WorktreeTarget(ScanTarget):
    """Regular files under the repository root, or under a plain directory."""

    kind = SourceKind.WORKTREE

    def prepare(self) -> None:
        if not self.repo.root.is_dir():
            raise RepositoryAccessError(f"{self.repo.root} is not a directory")

    def candidates(self) -> Iterator[str]:
        if self.repo.is_repository():
            yield from self.repo.list_files()
        else:
            _LOG.debug("Walking %s as a plain directory", self.repo.root)
            yield from walk_directory(self.repo.root)

    def _units(self) -> Iterator[ScanUnit]:
        root = self.repo.root
        for rel_path in self.candidates():
            if self.cancelled:
                return
            if self._excluded(rel_path):
                continue
            full_path = root / rel_path
            if full_path.is_symlink() or not full_path.is_file():
                continue
            content = self._read(full_path, rel_path)
            if content is None:
                continue
            yield ScanUnit(kind=self.kind, path=rel_path, content=content)

    def _read(self, path: pathlib.Path, rel_path: str) -> Optional[bytes]:
        try:
            with path.open("rb") as handle:
                head = handle.read(BINARY_CHECK_BYTES)
                if is_binary(head):
                    self.counters.binary_skipped += 1
                    return None
                size = os.fstat(handle.fileno()).st_size
                if size > MAX_FILE_BYTES:
                    self.counters.too_large += 1
                    self._warn(rel_path, f"file is {size} bytes, larger than the {MAX_FILE_BYTES} byte limit")
                    return None
                return head + handle.read()
        except OSError as exc:
            self.counters.unreadable += 1
            self._warn(rel_path, exc.strerror or str(exc))
            return None


class StagedTarget(ScanTarget):
    """Index content of added, modified, renamed or copied entries."""

    kind = SourceKind.STAGED

    def prepare(self) -> None:
        self.repo.require()

    def _units(self) -> Iterator[ScanUnit]:
        changes = self.repo.staged_changes()
        with self.repo.blob_reader() as reader:
            for change in changes:
                if self.cancelled:
                    return
                if change.is_deletion or not change.is_regular_blob:
                    continue
                if self._excluded(change.path):
                    continue
                content = reader.read(change.blob_id)
                if is_binary(content):
                    self.counters.binary_skipped += 1
                    continue
                yield ScanUnit(kind=self.kind, path=change.path, content=content, blob_id=change.blob_id)


class HistoryGraph:
    """First-parent change graph of the commits visited by a history pass.

    Answers which commits contain a blob at a path without listing every
    tree: presence starts where a unit was emitted and flows to first-parent
    children until a child changes that path.
    """

    def __init__(self) -> None:
        self._order: Dict[str, int] = {}
        self._changes: Dict[str, Dict[str, Optional[str]]] = {}
        self._children: Dict[str, List[str]] = {}

    def __len__(self) -> int:
        return len(self._order)

    def add_commit(self, commit: CommitChanges) -> None:
        self._order[commit.commit] = len(self._order)
        self._changes[commit.commit] = {
            change.path: None if change.is_deletion else change.blob_id for change in commit.changes
        }
        parent = commit.first_parent
        if parent is not None:
            self._children.setdefault(parent, []).append(commit.commit)

    def position(self, commit: str) -> int:
        return self._order.get(commit, len(self._order))

    def presence(self, commit: str, path: str, blob_id: str) -> List[str]:
        """Commits, in walk order, whose tree holds ``blob_id`` at ``path`` starting from ``commit``."""

        found: Set[str] = set()
        queue: Deque[str] = deque([commit])
        while queue:
            current = queue.popleft()
            if current in found:
                continue
            found.add(current)
            for child in self._children.get(current, ()):
                changes = self._changes.get(child, {})
                if path in changes and changes[path] != blob_id:
                    continue
                queue.append(child)
        return sorted(found, key=self.position)


class HistoryTarget(ScanTarget):
    """Blobs added or changed by each commit relative to its first parent.

    A blob id is read at most once per pass; later references to the same
    blob are yielded with ``content=None`` so the engine can reuse the
    matches it already has for that digest.
    """

    kind = SourceKind.HISTORY

    def __init__(
        self,
        repo: GitRepository,
        path_filter: PathFilter,
        cancel: Optional[threading.Event] = None,
        rev_range: Optional[str] = None,
    ):
        super().__init__(repo, path_filter, cancel)
        self.rev_range = rev_range
        self.graph = HistoryGraph()

    def prepare(self) -> None:
        self.repo.require()

    def _units(self) -> Iterator[ScanUnit]:
        self.graph = HistoryGraph()
        text_blobs: Dict[str, bool] = {}
        with self.repo.blob_reader() as reader:
            for commit in self.repo.iter_commits(self.rev_range):
                if self.cancelled:
                    _LOG.debug("History walk cancelled after %d commits", len(self.graph))
                    return
                self.graph.add_commit(commit)
                for change in commit.changes:
                    if change.is_deletion or not change.is_regular_blob:
                        continue
                    if self._excluded(change.path):
                        continue
                    seen = text_blobs.get(change.blob_id)
                    if seen is False:
                        continue
                    if seen:
                        self.counters.cached += 1
                        yield ScanUnit(
                            kind=self.kind,
                            path=change.path,
                            content=None,
                            commit=commit.commit,
                            blob_id=change.blob_id,
                        )
                        continue
                    content = reader.read(change.blob_id)
                    if is_binary(content):
                        text_blobs[change.blob_id] = False
                        self.counters.binary_skipped += 1
                        continue
                    text_blobs[change.blob_id] = True
                    yield ScanUnit(
                        kind=self.kind,
                        path=change.path,
                        content=content,
                        commit=commit.commit,
                        blob_id=change.blob_id,
                    )


def build_target(
    mode: ScanMode,
    repo: GitRepository,
    path_filter: PathFilter,
    cancel: Optional[threading.Event] = None,
    rev_range: Optional[str] = None,
) -> ScanTarget:
    """Select the scan target for an invocation mode."""

    if mode is ScanMode.STAGED:
        return StagedTarget(repo, path_filter, cancel)
    if mode is ScanMode.HISTORY:
        return HistoryTarget(repo, path_filter, cancel, rev_range=rev_range)
    return WorktreeTarget(repo, path_filter, cancel)


def walk_directory(root: pathlib.Path) -> Iterator[str]:
    """Yield posix paths relative to ``root`` honoring a root ``.gitignore``."""

    gitignore = GitignoreMatcher(root)
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        current_dir = pathlib.Path(dirpath)
        rel_dir = _relative(current_dir, root)
        dirnames[:] = sorted(
            name
            for name in dirnames
            if name not in SKIP_DIRS and not gitignore.is_ignored(_join(rel_dir, name), is_dir=True)
        )
        for filename in sorted(filenames):
            rel_path = _join(rel_dir, filename)
            if gitignore.is_ignored(rel_path, is_dir=False):
                continue
            yield rel_path


def _relative(path: pathlib.Path, root: pathlib.Path) -> str:
    relative = path.relative_to(root).as_posix()
    return "" if relative == "." else relative


def _join(directory: str, name: str) -> str:
    return f"{directory}/{name}" if directory else name
