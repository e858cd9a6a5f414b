"""Bitbucket Server import stages."""

from .fetch import BENIGN_FETCH_ERROR_PATTERNS, fetch_missing_commits, is_benign_fetch_error
from .pull_requests import PullRequestsImporter
from .refmap import build_refmap
from .stage import run_pull_requests_stage

__all__ = [
    "BENIGN_FETCH_ERROR_PATTERNS",
    "PullRequestsImporter",
    "build_refmap",
    "fetch_missing_commits",
    "is_benign_fetch_error",
    "run_pull_requests_stage",
]
