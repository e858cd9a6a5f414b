"""Local git repository operations used by the importer.

Thin subprocess wrapper: commit lookups and bulk fetches of refspecs from the
import remote.
"""

import logging
import subprocess
from pathlib import Path
from typing import Sequence

from .errors import GitCommandError

logger = logging.getLogger("bitbucket_import.repository")

__all__ = ["LocalRepository"]


class LocalRepository:
    """A git repository on local disk (bare or with a work tree).

    Attributes:
        path: Repository directory passed to ``git -C``
        git_binary: git executable name or path
        fetch_timeout: Seconds allowed for a single fetch
    """

    LOOKUP_TIMEOUT = 30  # seconds
    FETCH_TIMEOUT = 3600  # seconds

    def __init__(self, path: Path | str, git_binary: str = "git", fetch_timeout: int = FETCH_TIMEOUT):
        self.path = Path(path)
        self.git_binary = git_binary
        self.fetch_timeout = fetch_timeout

    def _git(self, *args: str) -> list[str]:
        return [self.git_binary, "-C", str(self.path), *args]

    def commit_exists(self, sha: str) -> bool:
        """Return True if ``sha`` names a commit present in this repository."""
        result = subprocess.run(
            self._git("cat-file", "-e", f"{sha}^{{commit}}"),
            capture_output=True,
            text=True,
            timeout=self.LOOKUP_TIMEOUT,
        )
        return result.returncode == 0

    def fetch_remote(self, url: str, refmap: Sequence[str], prune: bool = False) -> None:
        """Fetch ``refmap`` refspecs from ``url`` in a single git invocation.

        Raises:
            GitCommandError: If git exits non-zero or times out. The message
                carries git's stderr.
        """
        command = self._git("fetch", "--no-tags", "--quiet")
        if prune:
            command.append("--prune")
        command.extend(["--", url, *refmap])

        logger.info(
            "git_fetch_started",
            extra={"repository": str(self.path), "refspecs": len(refmap), "prune": prune},
        )
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.fetch_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise GitCommandError(
                f"git fetch timed out after {self.fetch_timeout}s",
                command=command,
            ) from e

        if result.returncode != 0:
            raise GitCommandError(
                result.stderr.strip() or f"git fetch exited with {result.returncode}",
                command=command,
                returncode=result.returncode,
            )
