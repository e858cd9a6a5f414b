"""Unit tests for PullRequestsImporter.

Tests execute() with:
- Refmap passed to a single git fetch (head refs, keep-around refs, dedup)
- Fetch error handling (benign patterns dropped, others tracked once)
- Feature toggle for commit fetching
- Job scheduling, waiter counts and processed-set resumption
- Remote failures propagating out of execute()
"""

import asyncio
import subprocess
import threading
import time
import uuid
from unittest.mock import MagicMock, patch

import pytest

from bitbucket_import.errors import GitCommandError, RemoteUnavailable
from bitbucket_import.importers.pull_requests import PullRequestsImporter
from bitbucket_import.queue import JobWaiter
from bitbucket_import.repository import LocalRepository

from import_test_helpers import FakeBitbucketClient, make_records, pr_payload


PROCESSED_KEY = "bitbucket-server-importer/already-processed/42/pull_requests"

EXPECTED_REFMAP = [
    "aaaa1:refs/merge-requests/1/head",
    "aaaa2:refs/keep-around/aaaa2",
    "bbbb1:refs/merge-requests/2/head",
    "bbbb2:refs/keep-around/bbbb2",
]


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def make_importer(project, processed_set, job_queue, tracker, repository, import_config):
    """Factory building an importer over the shared fakes."""

    def _make(pages, config=None, error=None):
        return PullRequestsImporter(
            project=project,
            client=FakeBitbucketClient(pages, error=error),
            processed_set=processed_set,
            queue=job_queue,
            tracker=tracker,
            repository=repository,
            config=config or import_config,
        )

    return _make


# =============================================================================
# Identity Tests
# =============================================================================


class TestImporterIdentity:
    """Cache key and error source naming."""

    def test_already_processed_cache_key(self, make_importer):
        importer = make_importer([])
        assert importer.already_processed_cache_key == PROCESSED_KEY

    def test_error_source_is_class_name(self, make_importer):
        assert make_importer([]).error_source == "PullRequestsImporter"

    def test_default_repository_uses_project_path(self, project, processed_set, job_queue, tracker, import_config):
        importer = PullRequestsImporter(
            project=project,
            client=FakeBitbucketClient([]),
            processed_set=processed_set,
            queue=job_queue,
            tracker=tracker,
            config=import_config,
        )
        assert importer.repository.path == project.repository_path


# =============================================================================
# Commit Fetch Tests
# =============================================================================


class TestCommitFetching:
    """Refmap construction and git fetch behaviour during execute()."""

    @pytest.mark.asyncio
    async def test_fetches_head_and_keep_around_refs(self, make_importer, sample_records, repository, project):
        """Merged and declined pull requests are fetched in one call, open ones are not."""
        await make_importer([sample_records]).execute()

        repository.fetch_remote.assert_called_once_with(
            project.import_url, refmap=EXPECTED_REFMAP, prune=False
        )

    @pytest.mark.asyncio
    async def test_commit_already_present_is_omitted(self, make_importer, sample_records, repository, project):
        repository.commit_exists.side_effect = lambda sha: sha == "aaaa2"

        await make_importer([sample_records]).execute()

        refmap = repository.fetch_remote.call_args.kwargs["refmap"]
        assert "aaaa2:refs/keep-around/aaaa2" not in refmap
        assert refmap == [
            "aaaa1:refs/merge-requests/1/head",
            "bbbb1:refs/merge-requests/2/head",
            "bbbb2:refs/keep-around/bbbb2",
        ]

    @pytest.mark.asyncio
    async def test_each_commit_checked_once(self, make_importer, repository):
        """Shared target commits produce one keep-around ref and one lookup."""
        records = make_records(
            pr_payload(1, "MERGED", "s1", "main"),
            pr_payload(2, "MERGED", "s2", "main"),
        )

        await make_importer([records]).execute()

        refmap = repository.fetch_remote.call_args.kwargs["refmap"]
        assert refmap == [
            "s1:refs/merge-requests/1/head",
            "main:refs/keep-around/main",
            "s2:refs/merge-requests/2/head",
        ]
        checked = [c.args[0] for c in repository.commit_exists.call_args_list]
        assert sorted(checked) == ["main", "s1", "s2"]

    @pytest.mark.asyncio
    async def test_processed_pull_request_keeps_only_keep_around_ref(
        self, make_importer, sample_records, processed_set, repository
    ):
        processed_set.add(PROCESSED_KEY, 1)

        await make_importer([sample_records]).execute()

        refmap = repository.fetch_remote.call_args.kwargs["refmap"]
        assert "aaaa1:refs/merge-requests/1/head" not in refmap
        assert "aaaa2:refs/keep-around/aaaa2" in refmap

    @pytest.mark.asyncio
    async def test_no_fetch_when_refmap_empty(self, make_importer, repository):
        records = make_records(pr_payload(3, "OPEN", "cccc1", "cccc2"))

        await make_importer([records]).execute()

        repository.fetch_remote.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_fetch_when_all_commits_present(self, make_importer, sample_records, repository):
        repository.commit_exists.return_value = True

        await make_importer([sample_records]).execute()

        repository.fetch_remote.assert_not_called()

    @pytest.mark.asyncio
    async def test_toggle_off_skips_lookups_and_fetch(self, make_importer, sample_records, repository, import_config):
        config = import_config.model_copy(update={"fetch_commits_for_bitbucket_server": False})

        waiter = await make_importer([sample_records], config=config).execute()

        repository.commit_exists.assert_not_called()
        repository.fetch_remote.assert_not_called()
        assert waiter.jobs_remaining == 3

    @pytest.mark.asyncio
    async def test_one_fetch_per_page(self, make_importer, repository):
        pages = [
            make_records(pr_payload(1, "MERGED", "a1", "a2")),
            make_records(pr_payload(2, "DECLINED", "b1", "b2")),
        ]

        await make_importer(pages).execute()

        assert repository.fetch_remote.call_count == 2


# =============================================================================
# Fetch Error Tests
# =============================================================================


class TestFetchErrors:
    """Fetch failures never abort scheduling."""

    @pytest.mark.asyncio
    async def test_unadvertised_object_error_not_tracked(self, make_importer, sample_records, repository, tracker):
        repository.fetch_remote.side_effect = GitCommandError(
            "error: Server does not allow request for unadvertised object aaaa1"
        )

        waiter = await make_importer([sample_records]).execute()

        assert tracker.failures() == []
        assert waiter.jobs_remaining == 3

    @pytest.mark.asyncio
    async def test_other_fetch_error_tracked_once(self, make_importer, sample_records, repository, tracker):
        repository.fetch_remote.side_effect = GitCommandError("fatal: repository not found")

        waiter = await make_importer([sample_records]).execute()

        failures = tracker.failures()
        assert len(failures) == 1
        assert failures[0].project_id == 42
        assert failures[0].source == "PullRequestsImporter"
        assert failures[0].exception_class == "GitCommandError"
        assert failures[0].fail_import is False
        assert waiter.jobs_remaining == 3

    @pytest.mark.asyncio
    async def test_tracker_called_with_error_source(self, make_importer, sample_records, repository):
        error = GitCommandError("fatal: early EOF")
        repository.fetch_remote.side_effect = error
        importer = make_importer([sample_records])

        with patch.object(importer.tracker, "track") as mock_track:
            await importer.execute()

        mock_track.assert_called_once_with(
            project_id=42, exception=error, error_source="PullRequestsImporter"
        )


# =============================================================================
# Scheduling Tests
# =============================================================================


class TestScheduling:
    """Job fan-out, waiter counts and processed-set updates."""

    @pytest.mark.asyncio
    async def test_schedules_every_pull_request(self, make_importer, sample_records, job_queue):
        waiter = await make_importer([sample_records]).execute()

        assert isinstance(waiter, JobWaiter)
        assert waiter.key.startswith("job_waiter:")
        assert waiter.jobs_remaining == 3

        jobs = job_queue.pending_jobs(waiter.key)
        assert [j.args["pull_request_identifier"] for j in jobs] == [1, 2, 3]
        assert {j.job_type for j in jobs} == {"import_pull_request"}

    @pytest.mark.asyncio
    async def test_job_args_carry_waiter_and_payload(self, make_importer, sample_records, job_queue):
        waiter = await make_importer([sample_records]).execute()

        job = job_queue.pending_jobs(waiter.key)[0]
        assert job.args["project_id"] == 42
        assert job.args["waiter_key"] == waiter.key
        assert job.args["pull_request"] == {
            "id": 1,
            "state": "MERGED",
            "source_commit": "aaaa1",
            "target_commit": "aaaa2",
            "title": "",
        }

    @pytest.mark.asyncio
    async def test_processed_pull_requests_skipped(self, make_importer, sample_records, processed_set, job_queue):
        processed_set.add(PROCESSED_KEY, 1)

        waiter = await make_importer([sample_records]).execute()

        assert waiter.jobs_remaining == 2
        ids = [j.args["pull_request_identifier"] for j in job_queue.pending_jobs(waiter.key)]
        assert ids == [2, 3]

    @pytest.mark.asyncio
    async def test_processed_set_becomes_union(self, make_importer, sample_records, processed_set):
        processed_set.add(PROCESSED_KEY, 99)

        await make_importer([sample_records]).execute()

        assert processed_set.members(PROCESSED_KEY) == {"1", "2", "3", "99"}

    @pytest.mark.asyncio
    async def test_second_run_schedules_nothing(self, make_importer, sample_records, repository, job_queue):
        first = await make_importer([sample_records]).execute()
        repository.fetch_remote.reset_mock()
        repository.commit_exists.return_value = True

        second = await make_importer([sample_records]).execute()

        assert first.jobs_remaining == 3
        assert second.jobs_remaining == 0
        assert job_queue.pending_jobs(second.key) == []
        repository.fetch_remote.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_repository(self, make_importer, repository, job_queue):
        waiter = await make_importer([[]]).execute()

        assert waiter.jobs_remaining == 0
        repository.fetch_remote.assert_not_called()
        assert job_queue.get_stats()["total_items"] == 0

    @pytest.mark.asyncio
    async def test_jobs_across_pages(self, make_importer, job_queue):
        pages = [
            make_records(pr_payload(1, "OPEN"), pr_payload(2, "OPEN")),
            make_records(pr_payload(3, "OPEN")),
        ]
        importer = make_importer(pages)

        waiter = await importer.execute()

        assert waiter.jobs_remaining == 3
        assert importer.result.pages == 2
        assert importer.result.pull_requests_seen == 3

    @pytest.mark.asyncio
    async def test_requests_pages_with_configured_limit(self, make_importer, import_config):
        importer = make_importer([[]])

        await importer.execute()

        assert importer.client.calls == [("key", "slug", import_config.page_limit)]

    @pytest.mark.asyncio
    async def test_result_counters(self, make_importer, sample_records, processed_set):
        processed_set.add(PROCESSED_KEY, 3)
        importer = make_importer([sample_records])

        await importer.execute()

        result = importer.result.to_dict()
        assert result["jobs_scheduled"] == 2
        assert result["already_processed"] == 1
        assert result["refspecs_requested"] == 4
        assert result["fetches_succeeded"] == 1


class TestJobDelay:
    """Batch staggering of scheduled jobs."""

    def test_first_batch_runs_after_one_second(self, make_importer):
        importer = make_importer([])
        assert importer._job_delay(0) == 1
        assert importer._job_delay(99) == 1

    def test_later_batches_add_interval(self, make_importer):
        importer = make_importer([])
        assert importer._job_delay(100) == 61
        assert importer._job_delay(250) == 121

    @pytest.mark.asyncio
    async def test_enqueue_uses_job_delay(self, make_importer, sample_records, import_config):
        config = import_config.model_copy(update={"job_batch_size": 2})
        importer = make_importer([sample_records], config=config)
        importer.queue = MagicMock()

        await importer.execute()

        delays = [c.kwargs["delay"] for c in importer.queue.enqueue_delayed.call_args_list]
        assert delays == [1, 1, 61]


# =============================================================================
# Failure Propagation Tests
# =============================================================================


class TestRemoteFailures:
    """Listing failures abort execute()."""

    @pytest.mark.asyncio
    async def test_remote_unavailable_propagates(self, make_importer, job_queue, processed_set):
        importer = make_importer([], error=RemoteUnavailable("connection refused"))

        with pytest.raises(RemoteUnavailable):
            await importer.execute()

        assert job_queue.get_stats()["total_items"] == 0
        assert processed_set.members(PROCESSED_KEY) == set()


class TestMetricsPush:
    """Pushgateway push is optional and fail-open."""

    @pytest.mark.asyncio
    async def test_push_disabled_by_default(self, make_importer):
        with patch("prometheus_client.exposition.pushadd_to_gateway") as mock_push:
            await make_importer([[]]).execute()
        mock_push.assert_not_called()

    @pytest.mark.asyncio
    async def test_push_failure_does_not_raise(self, make_importer, sample_records, import_config):
        config = import_config.model_copy(update={"metrics_push_enabled": True})

        with patch(
            "prometheus_client.exposition.pushadd_to_gateway",
            side_effect=OSError("connection refused"),
        ) as mock_push:
            waiter = await make_importer([sample_records], config=config).execute()

        mock_push.assert_called_once()
        assert mock_push.call_args.kwargs["grouping_key"] == {"project": "42"}
        assert waiter.jobs_remaining == 3


class TestCommitLookupErrors:
    """Local commit lookups are best-effort like the fetch itself."""

    @pytest.mark.asyncio
    async def test_lookup_error_tracked_and_dispatch_continues(
        self, make_importer, sample_records, repository, tracker
    ):
        repository.commit_exists.side_effect = subprocess.TimeoutExpired(cmd=["git", "cat-file"], timeout=30)

        waiter = await make_importer([sample_records]).execute()

        repository.fetch_remote.assert_not_called()
        failures = tracker.failures(42)
        assert len(failures) == 1
        assert failures[0].exception_class == "TimeoutExpired"
        assert waiter.jobs_remaining == 3

    @pytest.mark.asyncio
    async def test_missing_git_binary(
        self, project, sample_records, processed_set, job_queue, tracker, import_config, tmp_path
    ):
        importer = PullRequestsImporter(
            project=project,
            client=FakeBitbucketClient([sample_records]),
            processed_set=processed_set,
            queue=job_queue,
            tracker=tracker,
            repository=LocalRepository(tmp_path / "repo.git", git_binary="/nonexistent/git"),
            config=import_config,
        )

        waiter = await importer.execute()

        assert [f.exception_class for f in tracker.failures(42)] == ["FileNotFoundError"]
        assert waiter.jobs_remaining == 3
        assert [j.args["pull_request_identifier"] for j in job_queue.pending_jobs(waiter.key)] == [1, 2, 3]


class SlowRecordingQueue:
    """JobQueue that records enqueued pull request ids after a short pause."""

    def __init__(self, pause: float = 0.05):
        self.pause = pause
        self.identifiers: list[int] = []
        self._lock = threading.Lock()

    def enqueue_delayed(self, job_type, args, delay):
        time.sleep(self.pause)
        with self._lock:
            self.identifiers.append(args["pull_request_identifier"])
        return str(uuid.uuid4())


class TestConcurrentRuns:
    """Overlapping execute() runs for one project share the processed set."""

    def test_each_pull_request_enqueued_once(
        self, project, sample_records, file_processed_set, tracker, repository, import_config
    ):
        config = import_config.model_copy(update={"fetch_commits_for_bitbucket_server": False})
        queue = SlowRecordingQueue()
        waiters: list[JobWaiter] = []
        errors: list[Exception] = []

        def run():
            importer = PullRequestsImporter(
                project=project,
                client=FakeBitbucketClient([sample_records]),
                processed_set=file_processed_set,
                queue=queue,
                tracker=tracker,
                repository=repository,
                config=config,
            )
            try:
                waiters.append(asyncio.run(importer.execute()))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        assert sorted(queue.identifiers) == [1, 2, 3]
        assert sum(w.jobs_remaining for w in waiters) == 3
        assert file_processed_set.members(PROCESSED_KEY) == {"1", "2", "3"}
