"""Shared pytest fixtures for the Bitbucket Server importer tests.

Fixture Organization:
    - Sample data fixtures: pull request payloads and records
    - Store fixtures: tmp_path-backed processed set, job queue and failure log
    - Importer fixtures: PullRequestsImporter wired to fakes
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from bitbucket_import.cache import FileProcessedSet, InMemoryProcessedSet
from bitbucket_import.config import ImportConfig
from bitbucket_import.failures import ImportFailureTracker
from bitbucket_import.models import ImportProject, PullRequestRecord
from bitbucket_import.queue import FileJobQueue

# Make import_test_helpers importable from test modules in subdirectories
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from import_test_helpers import make_records, pr_payload  # noqa: E402


@pytest.fixture
def sample_records() -> list[PullRequestRecord]:
    """Merged, declined and open pull requests."""
    return make_records(
        pr_payload(1, "MERGED", "aaaa1", "aaaa2"),
        pr_payload(2, "DECLINED", "bbbb1", "bbbb2"),
        pr_payload(3, "OPEN", "cccc1", "cccc2"),
    )


@pytest.fixture
def project(tmp_path) -> ImportProject:
    return ImportProject(
        id=42,
        import_url="http://bitbucket.example.com/scm/key/slug.git",
        project_key="key",
        repo_slug="slug",
        repository_path=tmp_path / "repo.git",
    )


@pytest.fixture
def import_config(tmp_path) -> ImportConfig:
    """Config with state in tmp_path and metrics push off."""
    return ImportConfig(
        bitbucket_server_url="http://bitbucket.example.com",
        bitbucket_server_username="bitbucket",
        bitbucket_server_password="password",
        state_dir=tmp_path / "state",
        projects_dir=tmp_path / "projects.d",
        metrics_push_enabled=False,
        request_delay_ms=0,
    )


@pytest.fixture
def processed_set() -> InMemoryProcessedSet:
    return InMemoryProcessedSet()


@pytest.fixture
def file_processed_set(tmp_path) -> FileProcessedSet:
    return FileProcessedSet(tmp_path / "state" / "processed_sets.json")


@pytest.fixture
def job_queue(tmp_path) -> FileJobQueue:
    return FileJobQueue(tmp_path / "state" / "job_queue.jsonl")


@pytest.fixture
def tracker(tmp_path) -> ImportFailureTracker:
    return ImportFailureTracker(tmp_path / "state" / "import_failures.jsonl")


@pytest.fixture
def repository() -> MagicMock:
    """LocalRepository mock: no commit exists locally, fetch succeeds."""
    repo = MagicMock()
    repo.commit_exists.return_value = False
    repo.fetch_remote.return_value = None
    return repo
