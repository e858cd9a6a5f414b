"""Bitbucket Server REST API client.

Provides async httpx-based client for the Bitbucket Server (Data Center)
REST API 1.0 with Basic Auth. Pull requests are paged with start/limit
offsets; each page reports isLastPage and nextPageStart.

Transport failures are not retried here: they raise RemoteUnavailable and
abort the import run.

Reference: https://docs.atlassian.com/bitbucket-server/rest/latest/bitbucket-rest.html
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from ...config import DEFAULT_PAGE_LIMIT
from ...errors import BitbucketServerClientError, MalformedPullRequestError, RemoteUnavailable
from ...models import PullRequestRecord

logger = logging.getLogger("bitbucket_import.bitbucket_server.client")


@dataclass
class PullRequestPage:
    """One page of pull requests.

    Attributes:
        records: Parsed pull requests in API order
        next_page_start: Offset of the next page, None on the last page
        rejected: Count of payloads that could not be parsed
    """

    records: list[PullRequestRecord] = field(default_factory=list)
    next_page_start: int | None = None
    rejected: int = 0

    @property
    def is_last_page(self) -> bool:
        return self.next_page_start is None


class BitbucketServerClient:
    """Bitbucket Server REST API client using httpx with Basic Auth.

    Uses a long-lived httpx.AsyncClient with connection pooling.

    Attributes:
        base_url: Bitbucket Server URL (e.g., https://bitbucket.example.com)
        delay_ms: Delay between page requests for rate limiting

    Example:
        >>> async with BitbucketServerClient("https://bitbucket.example.com", "user", "token") as client:
        ...     page = await client.pull_requests("KEY", "slug", limit=50)
        ...     for pr in page.records:
        ...         print(pr.identifier, pr.state)
    """

    API_PATH = "/rest/api/1.0"

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        delay_ms: int = 100,
    ) -> None:
        """Initialize client with Basic Auth credentials.

        Args:
            base_url: Bitbucket Server URL
            username: Account name for Basic Auth
            password: Password or HTTP access token
            delay_ms: Delay between page requests in milliseconds (default: 100)
        """
        self.base_url = base_url.rstrip("/")
        self.delay_ms = delay_ms

        timeout_config = httpx.Timeout(
            connect=5.0,
            read=30.0,
            write=5.0,
            pool=5.0,
        )

        limits = httpx.Limits(
            max_keepalive_connections=10,
            max_connections=20,
            keepalive_expiry=10.0,
        )

        self.client = httpx.AsyncClient(
            base_url=f"{self.base_url}{self.API_PATH}",
            auth=httpx.BasicAuth(username, password) if username else None,
            timeout=timeout_config,
            limits=limits,
            headers={"Accept": "application/json"},
        )

    async def test_connection(self) -> dict[str, Any]:
        """Check connectivity and credentials against /application-properties.

        Returns:
            dict with keys success (bool), version (str | None), error (str | None)
        """
        try:
            response = await self.client.get("/application-properties")
            response.raise_for_status()
            data = response.json()
            return {"success": True, "version": data.get("version"), "error": None}
        except httpx.TimeoutException as e:
            logger.error("bitbucket_connection_timeout", extra={"error": str(e)})
            return {"success": False, "version": None, "error": f"Connection timeout: {e}"}
        except httpx.HTTPStatusError as e:
            logger.error(
                "bitbucket_connection_failed",
                extra={"status_code": e.response.status_code, "error": str(e)},
            )
            return {
                "success": False,
                "version": None,
                "error": f"HTTP {e.response.status_code}: {e}",
            }
        except httpx.HTTPError as e:
            logger.error("bitbucket_connection_error", extra={"error": str(e)})
            return {"success": False, "version": None, "error": f"Connection error: {e}"}

    async def pull_requests(
        self,
        project_key: str,
        repo_slug: str,
        limit: int = DEFAULT_PAGE_LIMIT,
        start: int = 0,
    ) -> PullRequestPage:
        """Fetch one page of pull requests in all states, oldest first.

        Args:
            project_key: Bitbucket project key (e.g., 'KEY')
            repo_slug: Repository slug
            limit: Page size
            start: Page offset (nextPageStart of the previous page)

        Returns:
            PullRequestPage with parsed records

        Raises:
            RemoteUnavailable: On timeouts, transport errors and 5xx responses
            BitbucketServerClientError: On other HTTP errors (auth, not found)
        """
        path = f"/projects/{project_key}/repos/{repo_slug}/pull-requests"
        params = {"state": "ALL", "order": "OLDEST", "start": start, "limit": limit}

        try:
            response = await self.client.get(path, params=params)
        except httpx.TimeoutException as e:
            logger.error(
                "bitbucket_pull_requests_timeout",
                extra={"project_key": project_key, "repo_slug": repo_slug, "error": str(e)},
            )
            raise RemoteUnavailable(f"BITBUCKET_PULL_REQUESTS_TIMEOUT: {e}") from e
        except httpx.HTTPError as e:
            logger.error(
                "bitbucket_pull_requests_transport_error",
                extra={"project_key": project_key, "repo_slug": repo_slug, "error": str(e)},
            )
            raise RemoteUnavailable(f"BITBUCKET_PULL_REQUESTS_UNAVAILABLE: {e}") from e

        if response.status_code >= 500:
            raise RemoteUnavailable(
                f"Bitbucket Server error {response.status_code} for {project_key}/{repo_slug}"
            )
        if response.status_code >= 400:
            raise BitbucketServerClientError(
                f"Bitbucket Server API error {response.status_code}: {self._error_message(response)}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise BitbucketServerClientError(f"Invalid JSON from Bitbucket Server: {e}") from e

        page = PullRequestPage()
        for payload in data.get("values", []):
            try:
                page.records.append(PullRequestRecord.from_api(payload))
            except MalformedPullRequestError as e:
                page.rejected += 1
                logger.warning(
                    "bitbucket_pull_request_rejected",
                    extra={"project_key": project_key, "repo_slug": repo_slug, "error": str(e)},
                )

        if not data.get("isLastPage", True) and data.get("nextPageStart") is not None:
            page.next_page_start = int(data["nextPageStart"])

        logger.info(
            "bitbucket_pull_requests_page",
            extra={
                "project_key": project_key,
                "repo_slug": repo_slug,
                "start": start,
                "page_records": len(page.records),
                "is_last_page": page.is_last_page,
            },
        )
        return page

    async def iter_pull_request_pages(
        self,
        project_key: str,
        repo_slug: str,
        limit: int = DEFAULT_PAGE_LIMIT,
    ) -> AsyncIterator[PullRequestPage]:
        """Yield every page of pull requests, following nextPageStart.

        Sleeps delay_ms between pages (not after the last page).
        """
        start = 0
        while True:
            page = await self.pull_requests(project_key, repo_slug, limit=limit, start=start)
            yield page

            if page.next_page_start is None or page.next_page_start <= start:
                return
            start = page.next_page_start

            if self.delay_ms > 0:
                await asyncio.sleep(self.delay_ms / 1000.0)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """Extract the first error message from a Bitbucket error body."""
        try:
            body = response.json() if response.content else {}
        except (ValueError, UnicodeDecodeError):
            return response.text
        errors = body.get("errors") if isinstance(body, dict) else None
        if errors and isinstance(errors, list) and isinstance(errors[0], dict):
            return errors[0].get("message", response.text)
        return response.text

    async def close(self) -> None:
        """Close the HTTP client connection."""
        if getattr(self, "client", None) is not None:
            await self.client.aclose()

    async def __aenter__(self) -> "BitbucketServerClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
