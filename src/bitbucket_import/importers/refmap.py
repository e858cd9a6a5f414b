"""Refmap computation for merged and declined pull requests.

Merged and declined pull requests reference commits that may no longer be
reachable from any branch on the remote. Fetching them under
refs/merge-requests/<id>/head and refs/keep-around/<sha> keeps them available
for diffs and protects them from garbage collection.
"""

from typing import Callable, Collection, Iterable

from ..models import PullRequestRecord

__all__ = ["build_refmap", "head_ref", "keep_around_ref"]


def head_ref(record: PullRequestRecord) -> str:
    return f"refs/merge-requests/{record.identifier}/head"


def keep_around_ref(sha: str) -> str:
    return f"refs/keep-around/{sha}"


def build_refmap(
    records: Iterable[PullRequestRecord],
    processed_ids: Collection[str],
    commit_exists: Callable[[str], bool],
) -> list[str]:
    """Compute the refspecs needed to make a batch's commits available locally.

    For each merged or declined record, in order: its source commit maps to
    the merge-request head ref (only if the pull request is not yet
    processed), then its target commit maps to a keep-around ref.

    Every commit appears at most once. Commits already present locally are
    dropped; commit_exists is called once per distinct commit.

    Args:
        records: Pull requests of one batch, in API order
        processed_ids: Identifiers (as strings) already in the processed set
        commit_exists: Local lookup, True if the commit is present

    Returns:
        Ordered list of "<sha>:<ref>" refspecs, possibly empty
    """
    seen: dict[str, bool] = {}
    refmap: list[str] = []

    def wanted(sha: str | None) -> bool:
        if not sha or sha in seen:
            return False
        seen[sha] = commit_exists(sha)
        return not seen[sha]

    for record in records:
        if not record.state.is_historical:
            continue

        if str(record.identifier) not in processed_ids and wanted(record.source_commit):
            refmap.append(f"{record.source_commit}:{head_ref(record)}")

        if wanted(record.target_commit):
            refmap.append(f"{record.target_commit}:{keep_around_ref(record.target_commit)}")

    return refmap
