# SPDX-License-Identifier: Apache-2.0
"""Utilities for reading files, index entries, commits and blobs through the git CLI."""

from __future__ import annotations

import logging
import pathlib
import subprocess
from dataclasses import dataclass, field
from typing import IO, Dict, Iterator, List, Optional, Sequence, Tuple

from ssq.errors import RepositoryAccessError

_LOG = logging.getLogger(__name__)

NULL_OID = "0" * 40
GITLINK_MODE = "160000"
SYMLINK_MODE = "120000"
COMMIT_MARKER = "\x00"

_C_ESCAPES = {"a": "\a", "b": "\b", "f": "\f", "n": "\n", "r": "\r", "t": "\t", "v": "\v", '"': '"', "\\": "\\"}


@dataclass(frozen=True, slots=True)
class BlobChange:
    """A path whose blob changed in the index or in a commit."""

    path: str
    blob_id: str
    status: str
    mode: str = "100644"

    @property
    def is_deletion(self) -> bool:
        return self.status.startswith("D")

    @property
    def is_regular_blob(self) -> bool:
        return self.mode not in (GITLINK_MODE, SYMLINK_MODE) and self.blob_id != NULL_OID


@dataclass(slots=True)
class CommitChanges:
    """A commit and the blobs it changed relative to its first parent."""

    commit: str
    parents: Tuple[str, ...]
    changes: List[BlobChange] = field(default_factory=list)

    @property
    def first_parent(self) -> Optional[str]:
        return self.parents[0] if self.parents else None


class BlobReader:
    """Reads blob content through one long-lived ``git cat-file --batch`` process."""

    def __init__(self, root: pathlib.Path):
        self.root = root
        self._proc: Optional[subprocess.Popen] = None

    def __enter__(self) -> "BlobReader":
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def open(self) -> None:
        if self._proc is not None:
            return
        try:
            self._proc = subprocess.Popen(
                ["git", "cat-file", "--batch"],
                cwd=self.root,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
        except OSError as exc:
            raise RepositoryAccessError(f"cannot start git cat-file: {exc}") from exc

    def close(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None:
            return
        if proc.stdin:
            proc.stdin.close()
        if proc.stdout:
            proc.stdout.close()
        proc.wait()

    def read(self, oid: str) -> bytes:
        """Return the content of blob ``oid``."""

        self.open()
        proc = self._proc
        if proc is None or proc.stdin is None or proc.stdout is None:
            raise RepositoryAccessError("git cat-file is not running")
        try:
            proc.stdin.write(oid.encode("ascii") + b"\n")
            proc.stdin.flush()
            header = proc.stdout.readline()
        except OSError as exc:
            raise RepositoryAccessError(f"git cat-file failed reading {oid}: {exc}") from exc
        parts = header.split()
        if len(parts) == 2 and parts[1] == b"missing":
            raise RepositoryAccessError(f"object {oid} is missing from the repository")
        if len(parts) != 3:
            raise RepositoryAccessError(f"unexpected git cat-file header for {oid}: {header!r}")
        if parts[1] != b"blob":
            raise RepositoryAccessError(f"object {oid} is a {parts[1].decode()}, not a blob")
        size = int(parts[2])
        data = _read_exact(proc.stdout, size + 1)
        if len(data) != size + 1:
            raise RepositoryAccessError(f"truncated read of object {oid}")
        return data[:-1]


class GitRepository:
    """Repository handle used by the scan targets."""

    def __init__(self, path: pathlib.Path | str):
        self.path = pathlib.Path(path).resolve()
        self._toplevel: Optional[pathlib.Path] = None
        self._toplevel_checked = False

    @property
    def root(self) -> pathlib.Path:
        """The repository top level, or the given path when it is not a repository."""

        return self.toplevel() or self.path

    def toplevel(self) -> Optional[pathlib.Path]:
        if not self._toplevel_checked:
            self._toplevel_checked = True
            try:
                completed = subprocess.run(
                    ["git", "rev-parse", "--show-toplevel"],
                    cwd=self.path,
                    check=True,
                    capture_output=True,
                    text=True,
                )
            except (subprocess.CalledProcessError, FileNotFoundError, NotADirectoryError):
                _LOG.debug("%s is not inside a git work tree", self.path)
                return None
            output = completed.stdout.strip()
            self._toplevel = pathlib.Path(output).resolve() if output else None
        return self._toplevel

    def is_repository(self) -> bool:
        return self.toplevel() is not None

    def require(self) -> pathlib.Path:
        """Return the top level or raise ``RepositoryAccessError``."""

        toplevel = self.toplevel()
        if toplevel is None:
            raise RepositoryAccessError(f"{self.path} is not a git repository (or git is not installed)")
        return toplevel

    def run(self, args: Sequence[str]) -> bytes:
        """Run a git command at the repository root and return its stdout."""

        cmd = ["git", "-c", "core.quotepath=off", *args]
        try:
            completed = subprocess.run(cmd, cwd=self.require(), check=True, capture_output=True)
        except FileNotFoundError as exc:
            raise RepositoryAccessError("git executable not found") from exc
        except subprocess.CalledProcessError as exc:
            stderr = exc.stderr.decode("utf-8", errors="replace").strip()
            raise RepositoryAccessError(f"`git {' '.join(args)}` failed: {stderr}") from exc
        return completed.stdout

    def list_files(self) -> List[str]:
        """Tracked plus untracked, not ignored, paths relative to the top level."""

        output = self.run(["ls-files", "-z", "--cached", "--others", "--exclude-standard"])
        paths = [_decode(item) for item in output.split(b"\x00") if item]
        return list(dict.fromkeys(paths))

    def has_head(self) -> bool:
        try:
            self.run(["rev-parse", "--verify", "--quiet", "HEAD^{commit}"])
        except RepositoryAccessError:
            return False
        return True

    def staged_changes(self) -> List[BlobChange]:
        """Index entries that differ from HEAD, with their index blob ids."""

        output = self.run(["diff", "--cached", "--raw", "-z", "-M", "--no-abbrev", "--no-color"])
        return parse_raw_z(output)

    def iter_commits(self, rev_range: Optional[str] = None) -> Iterator[CommitChanges]:
        """Stream commits oldest first with their first-parent blob changes."""

        if rev_range is None and not self.has_head():
            _LOG.debug("Repository has no commits yet")
            return
        cmd = [
            "git",
            "-c",
            "core.quotepath=off",
            "log",
            "--reverse",
            "--topo-order",
            "--root",
            "--raw",
            "--no-renames",
            "--no-abbrev",
            "--no-color",
            "--diff-merges=first-parent",
            "--format=%x00%H %P",
            rev_range or "HEAD",
            "--",
        ]
        try:
            proc = subprocess.Popen(cmd, cwd=self.require(), stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except OSError as exc:
            raise RepositoryAccessError(f"cannot start git log: {exc}") from exc

        if proc.stdout is None:
            proc.kill()
            raise RepositoryAccessError("git log produced no output stream")

        finished = False
        try:
            yield from parse_log_stream(_decode(line.rstrip(b"\n")) for line in proc.stdout)
            finished = True
        finally:
            if proc.poll() is None:
                proc.terminate()
            proc.stdout.close()
            stderr = proc.stderr.read() if proc.stderr else b""
            if proc.stderr:
                proc.stderr.close()
            returncode = proc.wait()
        if finished and returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise RepositoryAccessError(f"git log {rev_range or 'HEAD'} failed: {message}")

    def blob_reader(self) -> BlobReader:
        return BlobReader(self.require())

    def metadata(self) -> Dict[str, str]:
        """Branch, commit and dirty flag for reports; empty values outside a repository."""

        def _run_git(args: List[str]) -> str:
            try:
                return self.run(args).decode("utf-8", errors="replace").strip()
            except RepositoryAccessError:
                return ""

        return {
            "branch": _run_git(["rev-parse", "--abbrev-ref", "HEAD"]),
            "commit": _run_git(["rev-parse", "HEAD"]),
            "dirty": "true" if _run_git(["status", "--short"]) else "false",
        }


def parse_raw_z(output: bytes) -> List[BlobChange]:
    """Parse ``git diff --raw -z`` output."""

    tokens = [_decode(token) for token in output.split(b"\x00")]
    changes: List[BlobChange] = []
    i = 0
    while i < len(tokens):
        meta = tokens[i]
        i += 1
        if not meta.startswith(":"):
            continue
        fields = meta[1:].split()
        if len(fields) < 5:
            continue
        _old_mode, new_mode, _old_oid, new_oid, status = fields[:5]
        if status[:1] in ("R", "C"):
            path = tokens[i + 1] if i + 1 < len(tokens) else ""
            i += 2
        else:
            path = tokens[i] if i < len(tokens) else ""
            i += 1
        if path:
            changes.append(BlobChange(path=path, blob_id=new_oid, status=status, mode=new_mode))
    return changes


def parse_log_stream(lines: Iterator[str]) -> Iterator[CommitChanges]:
    """Parse ``git log --raw --format=%x00%H %P`` output into commits."""

    current: Optional[CommitChanges] = None
    for line in lines:
        if line.startswith(COMMIT_MARKER):
            if current is not None:
                yield current
            header = line[1:].split()
            if not header:
                current = None
                continue
            current = CommitChanges(commit=header[0], parents=tuple(header[1:]))
            continue
        if current is None or not line.startswith(":"):
            continue
        meta, _, raw_path = line.partition("\t")
        fields = meta[1:].split()
        if len(fields) < 5 or not raw_path:
            continue
        _old_mode, new_mode, _old_oid, new_oid, status = fields[:5]
        current.changes.append(
            BlobChange(path=unquote_path(raw_path), blob_id=new_oid, status=status, mode=new_mode)
        )
    if current is not None:
        yield current


def unquote_path(raw: str) -> str:
    """Undo git's C-style quoting of unusual path names."""

    if len(raw) < 2 or raw[0] != '"' or raw[-1] != '"':
        return raw
    body = raw[1:-1]
    out = bytearray()
    i = 0
    while i < len(body):
        char = body[i]
        if char == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            if nxt in "01234567":
                out.append(int(body[i + 1 : i + 4], 8) & 0xFF)
                i += 4
                continue
            out.extend(_C_ESCAPES.get(nxt, nxt).encode("utf-8"))
            i += 2
            continue
        out.extend(char.encode("utf-8", errors="surrogateescape"))
        i += 1
    return out.decode("utf-8", errors="surrogateescape")


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="surrogateescape")


def _read_exact(stream: IO[bytes], size: int) -> bytes:
    chunks: List[bytes] = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)
