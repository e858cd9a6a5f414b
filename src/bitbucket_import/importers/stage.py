"""Pull request import stage entry point.

Wires the importer's collaborators from configuration and records an
import-stage failure when execute() raises.
"""

import logging

from ..cache import FileProcessedSet
from ..config import ImportConfig, get_config
from ..connectors.bitbucket_server.client import BitbucketServerClient
from ..failures import ImportFailureTracker
from ..models import ImportProject
from ..queue import FileJobQueue, JobWaiter
from ..repository import LocalRepository
from .pull_requests import PullRequestsImporter

logger = logging.getLogger("bitbucket_import.importers.stage")

__all__ = ["build_importer", "run_pull_requests_stage"]


def build_importer(
    project: ImportProject,
    client: BitbucketServerClient,
    config: ImportConfig,
) -> PullRequestsImporter:
    """Construct a PullRequestsImporter backed by the file stores in state_dir."""
    return PullRequestsImporter(
        project=project,
        client=client,
        processed_set=FileProcessedSet(
            config.processed_set_path,
            ttl_seconds=config.processed_cache_ttl_seconds,
        ),
        queue=FileJobQueue(config.job_queue_path),
        tracker=ImportFailureTracker(config.failures_path),
        repository=LocalRepository(project.repository_path),
        config=config,
    )


async def run_pull_requests_stage(
    project: ImportProject,
    config: ImportConfig | None = None,
    importer: PullRequestsImporter | None = None,
) -> JobWaiter:
    """Run the pull request scheduling stage for one project.

    Any exception escaping execute() is recorded as an import-stage failure
    (fail_import=True) and re-raised.
    """
    config = config or get_config()

    if importer is not None:
        return await _execute(importer)

    async with BitbucketServerClient(
        base_url=config.bitbucket_server_url,
        username=config.bitbucket_server_username,
        password=config.bitbucket_server_password.get_secret_value(),
        delay_ms=config.request_delay_ms,
    ) as client:
        return await _execute(build_importer(project, client, config))


async def _execute(importer: PullRequestsImporter) -> JobWaiter:
    try:
        return await importer.execute()
    except Exception as e:
        importer.tracker.track(
            project_id=importer.project.id,
            exception=e,
            error_source=importer.error_source,
            fail_import=True,
        )
        logger.error(
            "pull_requests_stage_failed",
            extra={"project_id": importer.project.id, "error": str(e)},
        )
        raise
