"""Bitbucket Server REST API connector."""

from .client import BitbucketServerClient, PullRequestPage

__all__ = ["BitbucketServerClient", "PullRequestPage"]
