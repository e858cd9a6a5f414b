"""Parallel import of Bitbucket Server pull requests.

PullRequestsImporter walks every page of pull requests for a project and,
per page:

1. fetches the merge-request head and keep-around refs for merged and
   declined pull requests (behind fetch_commits_for_bitbucket_server)
2. claims each pull request in the processed set and schedules one
   import_pull_request job for every successful claim, staggered in batches

Resumption comes entirely from the processed set: re-running execute() after
a crash skips everything already scheduled.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

from ..cache import ProcessedSet, already_processed_cache_key
from ..config import ImportConfig, get_config
from ..connectors.bitbucket_server.client import BitbucketServerClient, PullRequestPage
from ..failures import ImportFailureTracker
from ..metrics import commit_fetches_total, pull_requests_scheduled_total, pull_requests_skipped_total
from ..models import ImportProject, PullRequestRecord
from ..queue import JobQueue, JobWaiter
from ..repository import LocalRepository
from .fetch import fetch_missing_commits
from .refmap import build_refmap

logger = logging.getLogger("bitbucket_import.importers.pull_requests")

__all__ = ["ImportResult", "PullRequestsImporter"]


@dataclass
class ImportResult:
    """Counters for one execute() run, used for logging and metrics."""

    pages: int = 0
    pull_requests_seen: int = 0
    jobs_scheduled: int = 0
    already_processed: int = 0
    refspecs_requested: int = 0
    fetches_succeeded: int = 0
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "pages": self.pages,
            "pull_requests_seen": self.pull_requests_seen,
            "jobs_scheduled": self.jobs_scheduled,
            "already_processed": self.already_processed,
            "refspecs_requested": self.refspecs_requested,
            "fetches_succeeded": self.fetches_succeeded,
            "duration_seconds": round(self.duration_seconds, 2),
        }


class PullRequestsImporter:
    """Schedules per-pull-request import jobs for one project.

    Attributes:
        project: Destination project identity
        client: Bitbucket Server API client
        processed_set: Shared processed-set store
        queue: Delayed job queue receiving import_pull_request jobs
        repository: Local git repository refs are fetched into
        tracker: Failure tracker for non-benign fetch errors
        config: Importer configuration (page size, batching, feature toggle)
        result: Counters from the most recent execute()
    """

    IMPORTER_NAME = "pull_requests"
    JOB_TYPE = "import_pull_request"

    def __init__(
        self,
        project: ImportProject,
        client: BitbucketServerClient,
        processed_set: ProcessedSet,
        queue: JobQueue,
        tracker: ImportFailureTracker,
        repository: LocalRepository | None = None,
        config: ImportConfig | None = None,
    ) -> None:
        self.project = project
        self.client = client
        self.processed_set = processed_set
        self.queue = queue
        self.tracker = tracker
        self.repository = repository or LocalRepository(project.repository_path)
        self.config = config or get_config()
        self.result = ImportResult()

    @property
    def already_processed_cache_key(self) -> str:
        return already_processed_cache_key(self.project.id, self.IMPORTER_NAME)

    @property
    def error_source(self) -> str:
        return type(self).__name__

    async def execute(self) -> JobWaiter:
        """Schedule import jobs for every unprocessed pull request.

        Returns:
            JobWaiter whose jobs_remaining counts the jobs scheduled by this call

        Raises:
            RemoteUnavailable: If a page cannot be fetched
            BitbucketServerClientError: On other API errors
            LockTimeoutError: If the queue or processed set cannot be locked
        """
        start = time.monotonic()
        self.result = ImportResult()
        waiter = JobWaiter()

        logger.info(
            "pull_requests_import_started",
            extra={
                "project_id": self.project.id,
                "project_key": self.project.project_key,
                "repo_slug": self.project.repo_slug,
                "waiter_key": waiter.key,
            },
        )

        async for page in self.client.iter_pull_request_pages(
            self.project.project_key,
            self.project.repo_slug,
            limit=self.config.page_limit,
        ):
            self.result.pages += 1
            self.result.pull_requests_seen += len(page.records)

            if self.config.fetch_commits_for_bitbucket_server:
                await self._fetch_missing_commits(page)

            self._schedule(page, waiter)

        self.result.duration_seconds = time.monotonic() - start
        if self.config.metrics_push_enabled:
            self._push_metrics()

        logger.info(
            "pull_requests_import_scheduled",
            extra={"project_id": self.project.id, "waiter_key": waiter.key, **self.result.to_dict()},
        )
        return waiter

    async def _fetch_missing_commits(self, page: PullRequestPage) -> None:
        processed = self.processed_set.members(self.already_processed_cache_key)
        try:
            refmap = await asyncio.to_thread(
                build_refmap,
                page.records,
                processed,
                self.repository.commit_exists,
            )
        except Exception as e:
            # Commit lookups are best-effort like the fetch itself; dispatch still runs
            commit_fetches_total.labels(status="failed").inc()
            self.tracker.track(project_id=self.project.id, exception=e, error_source=self.error_source)
            return
        self.result.refspecs_requested += len(refmap)

        fetched = await fetch_missing_commits(
            self.repository,
            self.project.import_url,
            refmap,
            tracker=self.tracker,
            project_id=self.project.id,
            error_source=self.error_source,
        )
        if fetched:
            self.result.fetches_succeeded += 1

    def _schedule(self, page: PullRequestPage, waiter: JobWaiter) -> None:
        project_label = str(self.project.id)
        for record in page.records:
            # add() is the claim: concurrent runs enqueue a pull request at most once
            if not self.processed_set.add(self.already_processed_cache_key, record.identifier):
                self.result.already_processed += 1
                pull_requests_skipped_total.labels(project=project_label).inc()
                continue

            self.queue.enqueue_delayed(
                self.JOB_TYPE,
                self._job_args(record, waiter),
                delay=self._job_delay(waiter.jobs_remaining),
            )
            waiter.jobs_remaining += 1
            self.result.jobs_scheduled += 1
            pull_requests_scheduled_total.labels(project=project_label).inc()

    def _job_args(self, record: PullRequestRecord, waiter: JobWaiter) -> dict[str, Any]:
        return {
            "project_id": self.project.id,
            "pull_request_identifier": record.identifier,
            "waiter_key": waiter.key,
            "pull_request": record.to_dict(),
        }

    def _job_delay(self, job_index: int) -> int:
        """Seconds before job number ``job_index`` (0-based) may run."""
        batch = job_index // self.config.job_batch_size
        return batch * self.config.job_batch_interval_seconds + 1

    def _push_metrics(self) -> None:
        """Push run counters to the Pushgateway. Failures are logged only."""
        try:
            from prometheus_client import CollectorRegistry, Gauge
            from prometheus_client.exposition import pushadd_to_gateway

            registry = CollectorRegistry()
            run_items = Gauge(
                "bitbucket_import_run_items",
                "Pull request counts from the last import run",
                ["kind"],
                registry=registry,
            )
            run_duration = Gauge(
                "bitbucket_import_run_duration_seconds",
                "Duration of the last pull request scheduling run",
                registry=registry,
            )

            run_items.labels(kind="seen").set(self.result.pull_requests_seen)
            run_items.labels(kind="scheduled").set(self.result.jobs_scheduled)
            run_items.labels(kind="already_processed").set(self.result.already_processed)
            run_items.labels(kind="refspecs").set(self.result.refspecs_requested)
            run_duration.set(self.result.duration_seconds)

            pushadd_to_gateway(
                self.config.pushgateway_url,
                job="bitbucket_pull_requests_import",
                registry=registry,
                grouping_key={"project": str(self.project.id)},
            )
        except Exception as e:
            logger.warning("metrics_push_failed", extra={"error": str(e)})
