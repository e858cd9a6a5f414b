"""
Prometheus metrics definitions for the Bitbucket Server importer.

Naming: snake_case with the bitbucket_import_ prefix.
"""

from prometheus_client import Counter, Gauge, Histogram

# ==============================================================================
# COUNTERS
# ==============================================================================

pull_requests_scheduled_total = Counter(
    "bitbucket_import_pull_requests_scheduled_total",
    "Pull request import jobs scheduled",
    ["project"],
)

pull_requests_skipped_total = Counter(
    "bitbucket_import_pull_requests_skipped_total",
    "Pull requests skipped because they were already processed",
    ["project"],
)

commit_fetches_total = Counter(
    "bitbucket_import_commit_fetches_total",
    "Keep-around commit fetch attempts",
    ["status"],
    # status: success, benign_error, failed, skipped
)

import_failures_total = Counter(
    "bitbucket_import_failures_total",
    "Import failures recorded by the failure tracker",
    ["source"],
)

# ==============================================================================
# GAUGES
# ==============================================================================

queue_size = Gauge(
    "bitbucket_import_queue_size",
    "Jobs currently held in the import job queue",
    ["status"],
    # status: delayed, ready
)

# ==============================================================================
# HISTOGRAMS
# ==============================================================================

commit_fetch_duration_seconds = Histogram(
    "bitbucket_import_commit_fetch_seconds",
    "Duration of git fetch for missing pull request commits",
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
)
