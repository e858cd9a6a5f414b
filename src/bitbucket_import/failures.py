"""Import failure tracking.

Records exceptions raised during an import against the project so operators
can see why part of an import is missing. Tracking is a side effect only: it
never raises and never changes the caller's control flow.
"""

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from .locking import LOCK_TIMEOUT_SECONDS, LockedFileAppend, read_jsonl
from .metrics import import_failures_total

logger = logging.getLogger("bitbucket_import.failures")

__all__ = ["ImportFailure", "ImportFailureTracker"]

# Exception messages are truncated before persisting
MAX_MESSAGE_LENGTH = 1000


@dataclass
class ImportFailure:
    """One recorded import failure."""

    project_id: int
    source: str
    exception_class: str
    exception_message: str
    fail_import: bool = False
    correlation_id: str | None = None
    retry_count: int | None = None
    created_at: str = ""

    def __post_init__(self):
        if not self.created_at:
            self.created_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ImportFailureTracker:
    """Append-only JSONL failure log, one record per tracked exception.

    Example:
        tracker = ImportFailureTracker(Path("state/import_failures.jsonl"))
        tracker.track(project_id=42, exception=err, error_source="PullRequestsImporter")
    """

    def __init__(self, path: Path | str, lock_timeout_seconds: float = LOCK_TIMEOUT_SECONDS):
        self.path = Path(path)
        self.lock_timeout_seconds = lock_timeout_seconds

    def track(
        self,
        project_id: int,
        exception: BaseException,
        error_source: str,
        fail_import: bool = False,
        correlation_id: str | None = None,
    ) -> ImportFailure | None:
        """Record an exception against a project.

        Args:
            project_id: Destination project id
            exception: The exception being tracked
            error_source: Component that raised (e.g., PullRequestsImporter)
            fail_import: True when the failure aborted the import stage
            correlation_id: Optional id tying the failure to a request or run

        Returns:
            The persisted ImportFailure, or None if it could not be written
        """
        failure = ImportFailure(
            project_id=project_id,
            source=error_source,
            exception_class=type(exception).__name__,
            exception_message=str(exception)[:MAX_MESSAGE_LENGTH],
            fail_import=fail_import,
            correlation_id=correlation_id,
        )

        logger.error(
            "import_failure_tracked",
            extra={
                "project_id": project_id,
                "source": error_source,
                "exception_class": failure.exception_class,
                "exception_message": failure.exception_message,
                "fail_import": fail_import,
            },
        )
        import_failures_total.labels(source=error_source).inc()

        try:
            with LockedFileAppend(self.path, self.lock_timeout_seconds) as f:
                f.write(json.dumps(asdict(failure)) + "\n")
        except Exception as e:
            # Tracking must never interrupt the import
            logger.error(
                "import_failure_persist_failed",
                extra={"error": str(e), "error_type": type(e).__name__, "project_id": project_id},
            )
            return None

        return failure

    def failures(self, project_id: int | None = None) -> list[ImportFailure]:
        """Read back recorded failures, optionally for one project."""
        records = [ImportFailure(**e) for e in read_jsonl(self.path)]
        if project_id is None:
            return records
        return [r for r in records if r.project_id == project_id]
