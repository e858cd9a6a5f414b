"""fcntl-based file locking shared by the file-backed stores.

The processed set, the job queue and the failure log are plain files that
several importer processes may touch at once. Every access happens while
holding an exclusive flock on the target file; a lock that cannot be taken
within the timeout raises LockTimeoutError.
"""

import fcntl
import json
import logging
import os
import time
from pathlib import Path
from typing import IO, Any, Callable

from .errors import LockTimeoutError

logger = logging.getLogger("bitbucket_import.locking")

LOCK_TIMEOUT_SECONDS = 5.0
LOCK_RETRY_INTERVAL = 0.1  # seconds

__all__ = [
    "LOCK_TIMEOUT_SECONDS",
    "LockTimeoutError",
    "LockedFileAppend",
    "LockedJSONDocument",
    "LockedJSONLines",
    "read_jsonl",
]


def _flock_with_deadline(handle: IO, path: Path, timeout_seconds: float) -> None:
    """Take an exclusive flock on ``handle``, polling until the deadline.

    Raises:
        LockTimeoutError: If another holder keeps the lock past the deadline
    """
    deadline = time.monotonic() + timeout_seconds
    while True:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            return
        except BlockingIOError:
            if time.monotonic() >= deadline:
                logger.warning(
                    "lock_acquisition_timeout",
                    extra={"path": str(path), "timeout_seconds": timeout_seconds},
                )
                raise LockTimeoutError(
                    f"Failed to acquire lock on {path} within {timeout_seconds}s"
                ) from None
            time.sleep(LOCK_RETRY_INTERVAL)


def _parse_jsonl(lines, path: Path) -> list[dict]:
    entries = []
    for raw in lines:
        text = raw.strip()
        if not text:
            continue
        try:
            entries.append(json.loads(text))
        except json.JSONDecodeError:
            logger.warning("corrupt_jsonl_entry", extra={"path": str(path), "line": text[:50]})
    return entries


class _LockedFile:
    """Open ``path`` (creating it 0600 if missing) and hold an exclusive flock."""

    mode = "r+"

    def __init__(self, path: Path | str, timeout_seconds: float = LOCK_TIMEOUT_SECONDS):
        self.path = Path(path)
        self.timeout_seconds = timeout_seconds
        self.handle: IO | None = None

    def _open(self) -> IO:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.touch()
            os.chmod(self.path, 0o600)

        handle = open(self.path, self.mode)
        try:
            _flock_with_deadline(handle, self.path, self.timeout_seconds)
        except LockTimeoutError:
            handle.close()
            raise
        self.handle = handle
        return handle

    def _replace(self, text: str) -> None:
        self.handle.seek(0)
        self.handle.truncate()
        self.handle.write(text)
        self.handle.flush()
        os.fsync(self.handle.fileno())

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.handle is not None:
            self.handle.flush()
            fcntl.flock(self.handle.fileno(), fcntl.LOCK_UN)
            self.handle.close()
            self.handle = None


class LockedFileAppend(_LockedFile):
    """Locked append to a text file.

    Example:
        with LockedFileAppend(path) as f:
            f.write(json.dumps(entry) + "\\n")
    """

    mode = "a"

    def __enter__(self) -> IO:
        return self._open()


class LockedJSONLines(_LockedFile):
    """Locked read-modify-write over a JSON Lines file.

    Yields (entries, write_fn); entries passed to write_fn replace the file
    contents before the lock is released. Corrupt lines are skipped.

    Example:
        with LockedJSONLines(path) as (entries, write):
            write([e for e in entries if e["id"] != job_id])
    """

    def __enter__(self) -> tuple[list[dict], Callable[[list[dict]], None]]:
        handle = self._open()
        return _parse_jsonl(handle, self.path), self._write

    def _write(self, entries: list[dict]) -> None:
        self._replace("".join(json.dumps(e) + "\n" for e in entries))


class LockedJSONDocument(_LockedFile):
    """Locked read-modify-write over a single JSON object file.

    Yields (document, write_fn). A missing, corrupt or non-object file reads
    as {}.
    """

    def __enter__(self) -> tuple[dict[str, Any], Callable[[dict[str, Any]], None]]:
        content = self._open().read().strip()
        document: dict[str, Any] = {}
        if content:
            try:
                loaded = json.loads(content)
            except json.JSONDecodeError:
                logger.warning("corrupt_json_document", extra={"path": str(self.path)})
            else:
                if isinstance(loaded, dict):
                    document = loaded
        return document, self._write

    def _write(self, document: dict[str, Any]) -> None:
        self._replace(json.dumps(document, sort_keys=True))


def read_jsonl(path: Path | str) -> list[dict]:
    """Read a JSON Lines file without locking. A missing file reads as []."""
    path = Path(path)
    if not path.exists():
        return []
    with open(path, "r") as f:
        return _parse_jsonl(f, path)
