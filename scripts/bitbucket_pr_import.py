#!/usr/bin/env python3
"""Bitbucket Server pull request import CLI.

Command-line tool for scheduling pull request imports from Bitbucket Server.

Usage:
    bitbucket_pr_import.py --project-id 42              # Import one configured project
    bitbucket_pr_import.py --all                        # Import every project in projects.d/
    bitbucket_pr_import.py --project-id 42 --status     # Show processed set, queue and failures
    bitbucket_pr_import.py --project-id 42 \\
        --project-key KEY --repo-slug slug \\
        --repository /var/repos/42.git \\
        --import-url https://bitbucket.example.com/scm/key/slug.git
"""

import argparse
import asyncio
import sys
from pathlib import Path

from bitbucket_import.cache import FileProcessedSet, already_processed_cache_key
from bitbucket_import.config import discover_import_projects, get_config
from bitbucket_import.failures import ImportFailureTracker
from bitbucket_import.importers import PullRequestsImporter, run_pull_requests_stage
from bitbucket_import.models import ImportProject
from bitbucket_import.queue import FileJobQueue


def resolve_projects(args, config) -> list[ImportProject]:
    """Build the project list from explicit flags or projects.d/."""
    if args.project_key or args.repo_slug or args.repository or args.import_url:
        missing = [
            flag
            for flag, value in (
                ("--project-id", args.project_id),
                ("--project-key", args.project_key),
                ("--repo-slug", args.repo_slug),
                ("--repository", args.repository),
                ("--import-url", args.import_url),
            )
            if value is None
        ]
        if missing:
            raise SystemExit(f"ERROR: missing {', '.join(missing)}")
        return [
            ImportProject(
                id=args.project_id,
                import_url=args.import_url,
                project_key=args.project_key,
                repo_slug=args.repo_slug,
                repository_path=Path(args.repository),
            )
        ]

    projects = discover_import_projects(config.projects_dir)
    if args.all:
        return list(projects.values())
    if args.project_id in projects:
        return [projects[args.project_id]]
    raise SystemExit(f"ERROR: project {args.project_id} not found in {config.projects_dir}")


def show_status(project: ImportProject, config) -> None:
    """Display processed-set size, queue statistics and recent failures."""
    processed = FileProcessedSet(
        config.processed_set_path, ttl_seconds=config.processed_cache_ttl_seconds
    )
    key = already_processed_cache_key(project.id, PullRequestsImporter.IMPORTER_NAME)
    queue_stats = FileJobQueue(config.job_queue_path).get_stats()
    failures = ImportFailureTracker(config.failures_path).failures(project.id)

    print("Bitbucket Server Import Status")
    print("=" * 50)
    print(f"Project: {project.id} ({project.project_key}/{project.repo_slug})")
    print(f"Commit fetching: {config.fetch_commits_for_bitbucket_server}")
    print(f"State directory: {config.state_dir}")
    print()
    print(f"Processed pull requests: {len(processed.members(key))}")
    print(
        f"Queue: {queue_stats['total_items']} jobs "
        f"({queue_stats['ready']} ready, {queue_stats['delayed']} delayed)"
    )
    print(f"Recorded failures: {len(failures)}")
    for failure in failures[-5:]:
        print(f"  {failure.created_at} {failure.exception_class}: {failure.exception_message}")


async def run_import(projects: list[ImportProject], config) -> int:
    """Run the pull request stage for each project. Returns failed project count."""
    failed = 0
    for project in projects:
        print(f"Scheduling pull requests for project {project.id} ({project.project_key}/{project.repo_slug})...")
        try:
            waiter = await run_pull_requests_stage(project, config)
        except Exception as e:
            # Already recorded by the stage; keep going with the remaining projects
            print(f"  FAILED: {type(e).__name__}: {e}")
            failed += 1
            continue
        print(f"  Jobs scheduled: {waiter.jobs_remaining}")
        print(f"  Waiter key: {waiter.key}")
    return failed


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Schedule Bitbucket Server pull request imports",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --project-id 42           # Import a project defined in projects.d/
  %(prog)s --all                     # Import all projects in projects.d/
  %(prog)s --project-id 42 --status  # Display import status

Configuration:
  Set in .env:
    BITBUCKET_SERVER_URL=https://bitbucket.example.com
    BITBUCKET_SERVER_USERNAME=importer
    BITBUCKET_SERVER_PASSWORD=your_token_here
        """,
    )

    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--project-id", type=int, help="Destination project id")
    target.add_argument("--all", action="store_true", help="Import every configured project")
    parser.add_argument("--project-key", help="Bitbucket project key")
    parser.add_argument("--repo-slug", help="Bitbucket repository slug")
    parser.add_argument("--repository", help="Path to the local git repository")
    parser.add_argument("--import-url", help="Git URL of the Bitbucket repository")
    parser.add_argument("--status", action="store_true", help="Display import status")

    args = parser.parse_args()
    config = get_config()

    if not config.bitbucket_server_url and not args.status:
        print("ERROR: BITBUCKET_SERVER_URL is not configured")
        sys.exit(1)

    projects = resolve_projects(args, config)

    if args.status:
        for project in projects:
            show_status(project, config)
        return

    failed = asyncio.run(run_import(projects, config))
    if failed:
        print(f"\n{failed} project(s) failed.")
        sys.exit(1)
    print("\nDone.")


if __name__ == "__main__":
    main()
