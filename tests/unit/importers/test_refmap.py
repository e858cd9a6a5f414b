"""Tests for refmap computation over a batch of pull requests."""

from unittest.mock import Mock

from bitbucket_import.importers.refmap import build_refmap, head_ref, keep_around_ref
from bitbucket_import.models import PullRequestRecord, PullRequestState

from import_test_helpers import make_records, pr_payload


def _missing(sha: str) -> bool:
    return False


class TestRefNames:
    def test_head_ref(self):
        record = PullRequestRecord(identifier=17, state=PullRequestState.MERGED)
        assert head_ref(record) == "refs/merge-requests/17/head"

    def test_keep_around_ref(self):
        assert keep_around_ref("abc123") == "refs/keep-around/abc123"


class TestBuildRefmap:
    """build_refmap ordering, filtering and deduplication."""

    def test_merged_and_declined_in_order(self, sample_records):
        refmap = build_refmap(sample_records, set(), _missing)

        assert refmap == [
            "aaaa1:refs/merge-requests/1/head",
            "aaaa2:refs/keep-around/aaaa2",
            "bbbb1:refs/merge-requests/2/head",
            "bbbb2:refs/keep-around/bbbb2",
        ]

    def test_open_and_superseded_ignored(self):
        records = make_records(
            pr_payload(1, "OPEN", "a", "b"),
            pr_payload(2, "SUPERSEDED", "c", "d"),
            pr_payload(3, "SOMETHING_NEW", "e", "f"),
        )
        commit_exists = Mock(return_value=False)

        assert build_refmap(records, set(), commit_exists) == []
        commit_exists.assert_not_called()

    def test_processed_record_skips_head_ref_only(self, sample_records):
        refmap = build_refmap(sample_records, {"1"}, _missing)

        assert "aaaa1:refs/merge-requests/1/head" not in refmap
        assert refmap[0] == "aaaa2:refs/keep-around/aaaa2"

    def test_existing_commits_dropped(self, sample_records):
        present = {"aaaa1", "bbbb2"}

        refmap = build_refmap(sample_records, set(), lambda sha: sha in present)

        assert refmap == [
            "aaaa2:refs/keep-around/aaaa2",
            "bbbb1:refs/merge-requests/2/head",
        ]

    def test_shared_commit_appears_once(self):
        records = make_records(
            pr_payload(1, "MERGED", "feature", "main"),
            pr_payload(2, "DECLINED", "other", "main"),
        )
        commit_exists = Mock(return_value=False)

        refmap = build_refmap(records, set(), commit_exists)

        assert refmap.count("main:refs/keep-around/main") == 1
        assert commit_exists.call_count == 3

    def test_source_equal_to_target_fetched_once(self):
        records = make_records(pr_payload(5, "MERGED", "same", "same"))

        refmap = build_refmap(records, set(), _missing)

        assert refmap == ["same:refs/merge-requests/5/head"]

    def test_commit_present_is_looked_up_once(self):
        records = make_records(
            pr_payload(1, "MERGED", "x1", "main"),
            pr_payload(2, "MERGED", "x2", "main"),
        )
        commit_exists = Mock(side_effect=lambda sha: sha == "main")

        refmap = build_refmap(records, set(), commit_exists)

        assert refmap == [
            "x1:refs/merge-requests/1/head",
            "x2:refs/merge-requests/2/head",
        ]
        assert [c.args[0] for c in commit_exists.call_args_list].count("main") == 1

    def test_missing_commits_skipped(self):
        records = make_records(
            pr_payload(1, "MERGED", None, "t1"),
            pr_payload(2, "DECLINED", "s2", None),
        )

        refmap = build_refmap(records, set(), _missing)

        assert refmap == [
            "t1:refs/keep-around/t1",
            "s2:refs/merge-requests/2/head",
        ]

    def test_empty_batch(self):
        assert build_refmap([], set(), _missing) == []
