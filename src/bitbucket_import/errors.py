"""Exception hierarchy for the Bitbucket Server importer."""


class BitbucketImportError(Exception):
    """Base class for all importer errors."""

    pass


class BitbucketServerClientError(BitbucketImportError):
    """Raised when a Bitbucket Server API request fails.

    Wraps httpx errors and HTTP errors for consistent error handling.
    """

    pass


class RemoteUnavailable(BitbucketServerClientError):
    """Raised on transport failures, timeouts and 5xx responses.

    Never retried by the importer; the run is aborted.
    """

    pass


class GitCommandError(BitbucketImportError):
    """Raised when a git subprocess exits non-zero."""

    def __init__(self, message: str, command: list[str] | None = None, returncode: int | None = None):
        self.command = command or []
        self.returncode = returncode
        super().__init__(message)


class MalformedPullRequestError(BitbucketImportError, ValueError):
    """Raised when an API payload cannot be parsed into a pull request."""

    pass


class LockTimeoutError(BitbucketImportError):
    """Raised when lock acquisition times out."""

    pass


__all__ = [
    "BitbucketImportError",
    "BitbucketServerClientError",
    "GitCommandError",
    "LockTimeoutError",
    "MalformedPullRequestError",
    "RemoteUnavailable",
]
