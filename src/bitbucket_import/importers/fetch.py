"""Fetching missing pull request commits from the import remote.

Fetch failures never abort the import. Errors matching
BENIGN_FETCH_ERROR_PATTERNS are expected (the commit was garbage collected
upstream, or the server refuses to serve unadvertised objects) and are
dropped; anything else is recorded with the failure tracker.
"""

import asyncio
import logging
import re
import time
from typing import Sequence

from ..failures import ImportFailureTracker
from ..metrics import commit_fetch_duration_seconds, commit_fetches_total
from ..repository import LocalRepository

logger = logging.getLogger("bitbucket_import.importers.fetch")

__all__ = ["BENIGN_FETCH_ERROR_PATTERNS", "fetch_missing_commits", "is_benign_fetch_error"]

BENIGN_FETCH_ERROR_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"unadvertised object", re.IGNORECASE),
)


def is_benign_fetch_error(error: BaseException) -> bool:
    """True if the fetch error is expected and not worth reporting."""
    message = str(error)
    return any(pattern.search(message) for pattern in BENIGN_FETCH_ERROR_PATTERNS)


async def fetch_missing_commits(
    repository: LocalRepository,
    import_url: str,
    refmap: Sequence[str],
    tracker: ImportFailureTracker,
    project_id: int,
    error_source: str,
) -> bool:
    """Fetch ``refmap`` from the import remote, absorbing all errors.

    Returns:
        True if a fetch ran and succeeded, False if skipped or failed
    """
    if not refmap:
        commit_fetches_total.labels(status="skipped").inc()
        logger.debug("commit_fetch_skipped", extra={"project_id": project_id})
        return False

    start = time.monotonic()
    try:
        await asyncio.to_thread(repository.fetch_remote, import_url, refmap=list(refmap), prune=False)
    except Exception as e:
        if is_benign_fetch_error(e):
            commit_fetches_total.labels(status="benign_error").inc()
            logger.info(
                "commit_fetch_unadvertised_object",
                extra={"project_id": project_id, "refspecs": len(refmap), "error": str(e)},
            )
        else:
            commit_fetches_total.labels(status="failed").inc()
            tracker.track(project_id=project_id, exception=e, error_source=error_source)
        return False
    finally:
        commit_fetch_duration_seconds.observe(time.monotonic() - start)

    commit_fetches_total.labels(status="success").inc()
    logger.info("commit_fetch_complete", extra={"project_id": project_id, "refspecs": len(refmap)})
    return True
