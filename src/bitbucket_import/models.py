"""Data models for the Bitbucket Server pull request importer.

Raw API payloads are parsed into PullRequestRecord at the client boundary so
the rest of the pipeline never handles untyped dicts.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from .errors import MalformedPullRequestError

__all__ = [
    "ImportProject",
    "PullRequestRecord",
    "PullRequestState",
]


class PullRequestState(str, Enum):
    """Bitbucket Server pull request states.

    Uses (str, Enum) so values serialise directly into job payloads.
    """

    OPEN = "OPEN"
    MERGED = "MERGED"
    DECLINED = "DECLINED"
    SUPERSEDED = "SUPERSEDED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any) -> "PullRequestState":
        """Map an API state string to a member, defaulting to UNKNOWN."""
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                pass
        return cls.UNKNOWN

    @property
    def is_historical(self) -> bool:
        """Merged and declined pull requests point at fixed commits."""
        return self in (PullRequestState.MERGED, PullRequestState.DECLINED)


def _latest_commit(ref: Any) -> str | None:
    if not isinstance(ref, Mapping):
        return None
    commit = ref.get("latestCommit")
    if isinstance(commit, str) and commit.strip():
        return commit.strip()
    return None


@dataclass(frozen=True)
class PullRequestRecord:
    """Immutable snapshot of one remote pull request.

    Attributes:
        identifier: Bitbucket Server pull request id (unique per repository)
        state: Pull request state
        source_commit: Tip of the originating branch (fromRef.latestCommit)
        target_commit: Tip of the destination branch (toRef.latestCommit)
        title: Pull request title, informational only
    """

    identifier: int
    state: PullRequestState
    source_commit: str | None = None
    target_commit: str | None = None
    title: str = ""

    @classmethod
    def from_api(cls, payload: Any) -> "PullRequestRecord":
        """Build a record from a Bitbucket Server pull request payload.

        Raises:
            MalformedPullRequestError: If the payload is not a mapping or has
                no usable integer id.
        """
        if not isinstance(payload, Mapping):
            raise MalformedPullRequestError(
                f"Pull request payload must be a mapping, got {type(payload).__name__}"
            )

        raw_id = payload.get("id")
        if isinstance(raw_id, bool) or raw_id is None:
            raise MalformedPullRequestError("Pull request payload has no id")
        try:
            identifier = int(raw_id)
        except (TypeError, ValueError) as e:
            raise MalformedPullRequestError(f"Invalid pull request id: {raw_id!r}") from e

        return cls(
            identifier=identifier,
            state=PullRequestState.parse(payload.get("state")),
            source_commit=_latest_commit(payload.get("fromRef")),
            target_commit=_latest_commit(payload.get("toRef")),
            title=str(payload.get("title") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise for job payloads."""
        return {
            "id": self.identifier,
            "state": self.state.value,
            "source_commit": self.source_commit,
            "target_commit": self.target_commit,
            "title": self.title,
        }


@dataclass(frozen=True)
class ImportProject:
    """Identity of the destination project being imported into."""

    id: int
    import_url: str
    project_key: str
    repo_slug: str
    repository_path: Path
