"""Processed-set cache for idempotent import resumption.

Records which remote pull request identifiers have already been scheduled,
namespaced per project and importer. The importer receives a ProcessedSet
instance; production uses FileProcessedSet (shared across processes via
flock), tests can substitute InMemoryProcessedSet.

Storage layout of FileProcessedSet (one JSON document):

    {"<namespace>": {"<identifier>": <expires_at epoch seconds>, ...}, ...}
"""

import logging
import threading
import time
from pathlib import Path
from typing import Protocol, runtime_checkable

from .config import DEFAULT_CACHE_TTL_SECONDS
from .locking import LOCK_TIMEOUT_SECONDS, LockedJSONDocument

logger = logging.getLogger("bitbucket_import.cache")

CACHE_KEY_PREFIX = "bitbucket-server-importer/already-processed"

__all__ = [
    "CACHE_KEY_PREFIX",
    "FileProcessedSet",
    "InMemoryProcessedSet",
    "ProcessedSet",
    "already_processed_cache_key",
]


def already_processed_cache_key(project_id: int | str, importer_name: str) -> str:
    """Derive the processed-set namespace for a project and importer.

    Deterministic so re-running the importer resumes against the same set.
    """
    return f"{CACHE_KEY_PREFIX}/{project_id}/{importer_name}"


@runtime_checkable
class ProcessedSet(Protocol):
    """Durable, namespaced set of processed identifiers."""

    def contains(self, namespace: str, identifier: int | str) -> bool:
        ...

    def add(self, namespace: str, identifier: int | str) -> bool:
        ...

    def members(self, namespace: str) -> set[str]:
        ...


class FileProcessedSet:
    """File-backed ProcessedSet with per-entry expiry.

    Process-safe: every operation holds an exclusive flock on the backing
    file. add() is idempotent; adding an existing member refreshes nothing
    and returns False.

    Example:
        processed = FileProcessedSet(Path("state/processed_sets.json"))
        key = already_processed_cache_key(42, "pull_requests")
        if processed.add(key, 7):
            schedule(7)
    """

    def __init__(
        self,
        path: Path | str,
        ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        lock_timeout_seconds: float = LOCK_TIMEOUT_SECONDS,
    ):
        self.path = Path(path)
        self.ttl_seconds = ttl_seconds
        self.lock_timeout_seconds = lock_timeout_seconds

    def _locked(self) -> LockedJSONDocument:
        return LockedJSONDocument(self.path, self.lock_timeout_seconds)

    @staticmethod
    def _live(entries: dict, now: float) -> dict:
        return {k: v for k, v in entries.items() if v > now}

    def contains(self, namespace: str, identifier: int | str) -> bool:
        now = time.time()
        with self._locked() as (document, _write):
            expires_at = document.get(namespace, {}).get(str(identifier))
        return expires_at is not None and expires_at > now

    def add(self, namespace: str, identifier: int | str) -> bool:
        """Add identifier to the namespace.

        Returns:
            True if newly added, False if it was already a live member
        """
        now = time.time()
        key = str(identifier)
        with self._locked() as (document, write):
            entries = self._live(document.get(namespace, {}), now)
            if key in entries:
                return False
            entries[key] = now + self.ttl_seconds
            document[namespace] = entries
            # Prune namespaces whose entries have all expired
            for name in list(document):
                if name != namespace:
                    live = self._live(document[name], now)
                    if live:
                        document[name] = live
                    else:
                        del document[name]
            write(document)

        logger.debug("processed_set_add", extra={"namespace": namespace, "identifier": key})
        return True

    def members(self, namespace: str) -> set[str]:
        now = time.time()
        with self._locked() as (document, _write):
            entries = document.get(namespace, {})
        return set(self._live(entries, now))


class InMemoryProcessedSet:
    """Thread-safe in-process ProcessedSet for tests and single-run tooling."""

    def __init__(self, ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._entries: dict[str, dict[str, float]] = {}
        self._lock = threading.Lock()

    def contains(self, namespace: str, identifier: int | str) -> bool:
        with self._lock:
            expires_at = self._entries.get(namespace, {}).get(str(identifier))
        return expires_at is not None and expires_at > time.time()

    def add(self, namespace: str, identifier: int | str) -> bool:
        key = str(identifier)
        now = time.time()
        with self._lock:
            entries = self._entries.setdefault(namespace, {})
            if entries.get(key, 0) > now:
                return False
            entries[key] = now + self.ttl_seconds
        return True

    def members(self, namespace: str) -> set[str]:
        now = time.time()
        with self._lock:
            return {k for k, v in self._entries.get(namespace, {}).items() if v > now}
