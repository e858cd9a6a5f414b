"""Bitbucket Server pull request import core.

Provides the orchestration that brings pull requests from a Bitbucket Server
repository into a local project:
- Paged pull request fetching from the Bitbucket Server REST API
- Processed-set cache for idempotent, resumable runs
- Keep-around and merge-request head ref fetching for historical commits
- Staggered fan-out of per-pull-request jobs with a join handle
- Failure tracking for non-fatal import errors

Python Version: 3.10+ required
"""

# Logging must be configured before other imports create loggers
from .logging_config import StructuredFormatter, configure_logging

configure_logging()

from .__version__ import __version__
from .cache import (
    FileProcessedSet,
    InMemoryProcessedSet,
    ProcessedSet,
    already_processed_cache_key,
)
from .config import ImportConfig, discover_import_projects, get_config, reset_config
from .errors import (
    BitbucketImportError,
    BitbucketServerClientError,
    GitCommandError,
    LockTimeoutError,
    MalformedPullRequestError,
    RemoteUnavailable,
)
from .failures import ImportFailure, ImportFailureTracker
from .importers import PullRequestsImporter, build_refmap, run_pull_requests_stage
from .models import ImportProject, PullRequestRecord, PullRequestState
from .queue import FileJobQueue, JobQueue, JobWaiter
from .repository import LocalRepository

__all__ = [
    "__version__",
    "BitbucketImportError",
    "BitbucketServerClientError",
    "FileJobQueue",
    "FileProcessedSet",
    "GitCommandError",
    "ImportConfig",
    "ImportFailure",
    "ImportFailureTracker",
    "ImportProject",
    "InMemoryProcessedSet",
    "JobQueue",
    "JobWaiter",
    "LocalRepository",
    "LockTimeoutError",
    "MalformedPullRequestError",
    "ProcessedSet",
    "PullRequestRecord",
    "PullRequestState",
    "PullRequestsImporter",
    "RemoteUnavailable",
    "StructuredFormatter",
    "already_processed_cache_key",
    "build_refmap",
    "configure_logging",
    "discover_import_projects",
    "get_config",
    "reset_config",
    "run_pull_requests_stage",
]
