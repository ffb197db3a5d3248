"""GitHub release metadata provider."""
import asyncio
import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from mcp_release_runner.types import Asset, Release
from mcp_release_runner.errors import (
    RateLimitError,
    ReleaseNotFoundError,
    ReleaseProviderError,
)
from mcp_release_runner.binaries.constants import (
    DEFAULT_USER_AGENT,
    GITHUB_ACCEPT,
    GITHUB_API_BASE,
    GITHUB_REPOS_PATH,
    LATEST_PATH,
    RELEASES_PATH,
    TAGS_PATH,
)
from mcp_release_runner.logging import get_logger

logger = get_logger(__name__)

REPO_SEGMENT = re.compile(r"^[A-Za-z0-9_.-]+$")


def parse_repo(reference: str) -> Tuple[str, str]:
    """Split and validate an "owner/repo" reference."""
    parts = reference.split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError('Repository must be in format "owner/repo"')

    owner, repo = parts
    if not (REPO_SEGMENT.match(owner) and REPO_SEGMENT.match(repo)):
        raise ValueError(
            "Invalid repository format. Use alphanumeric characters, "
            "hyphens, underscores and dots only."
        )
    return owner, repo


def _release_from_json(data: Dict[str, Any]) -> Release:
    return Release(
        tag=data["tag_name"],
        name=data.get("name"),
        published_at=data.get("published_at"),
        assets=[
            Asset(
                name=asset["name"],
                download_url=asset["browser_download_url"],
                size=asset.get("size", 0),
                content_type=asset.get("content_type", ""),
            )
            for asset in data.get("assets", [])
        ],
    )


def _reset_time(headers: Any) -> Optional[str]:
    reset = headers.get("x-ratelimit-reset")
    if not reset:
        return None
    try:
        return datetime.fromtimestamp(int(reset), timezone.utc).isoformat()
    except ValueError:
        return None


class GitHubReleaseProvider:
    """Fetches release metadata from the GitHub REST API."""

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 30.0,
        base_url: str = GITHUB_API_BASE,
        token: Optional[str] = None,
    ):
        self.user_agent = user_agent
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self.token = token if token is not None else os.environ.get("GITHUB_TOKEN")

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": GITHUB_ACCEPT, "User-Agent": self.user_agent}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _get_json(
        self,
        path: str,
        repo: str,
        tag: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.base_url}/{path}"
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        logger.debug("github_request", url=url)

        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=self._headers()) as session:
                async with session.get(url, params=params) as response:
                    if response.status == 404:
                        raise ReleaseNotFoundError(repo, tag)
                    if response.status == 429 or (
                        response.status == 403
                        and response.headers.get("x-ratelimit-remaining") == "0"
                    ):
                        raise RateLimitError(_reset_time(response.headers))
                    if response.status == 403:
                        raise ReleaseProviderError(
                            f"Access denied to {repo}. Repository may be private.",
                            details={"repo": repo, "status": 403},
                        )
                    if response.status >= 400:
                        raise ReleaseProviderError(
                            f"GitHub API error: {response.status} {response.reason}",
                            details={"repo": repo, "status": response.status},
                        )
                    return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("github_request_failed", url=url, error=str(e))
            raise ReleaseProviderError(
                f"GitHub API request failed: {e}", details={"repo": repo, "url": url}
            ) from e

    async def get_latest_release(self, owner: str, repo: str) -> Release:
        """Latest non-prerelease release of owner/repo."""
        data = await self._get_json(
            f"{GITHUB_REPOS_PATH}/{owner}/{repo}/{RELEASES_PATH}/{LATEST_PATH}",
            f"{owner}/{repo}",
        )
        release = _release_from_json(data)
        logger.info("release_fetched", repo=f"{owner}/{repo}", tag=release.tag, assets=len(release.assets))
        return release

    async def get_release_by_tag(self, owner: str, repo: str, tag: str) -> Release:
        data = await self._get_json(
            f"{GITHUB_REPOS_PATH}/{owner}/{repo}/{RELEASES_PATH}/{TAGS_PATH}/{tag}",
            f"{owner}/{repo}",
            tag=tag,
        )
        release = _release_from_json(data)
        logger.info("release_fetched", repo=f"{owner}/{repo}", tag=release.tag, assets=len(release.assets))
        return release

    async def list_releases(self, owner: str, repo: str, limit: int = 10) -> List[Release]:
        """Most recent releases, newest first."""
        data = await self._get_json(
            f"{GITHUB_REPOS_PATH}/{owner}/{repo}/{RELEASES_PATH}",
            f"{owner}/{repo}",
            params={"per_page": limit},
        )
        return [_release_from_json(item) for item in data]

    async def get_rate_limit(self) -> Dict[str, Any]:
        data = await self._get_json("rate_limit", "rate_limit")
        core = data["resources"]["core"]
        return {
            "limit": core["limit"],
            "remaining": core["remaining"],
            "reset": datetime.fromtimestamp(core["reset"], timezone.utc).isoformat(),
        }
