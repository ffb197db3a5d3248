"""Release binary acquisition and caching."""
from mcp_release_runner.binaries.platforms import (
    get_current_platform,
    find_matching_asset,
    get_available_platforms,
)
from mcp_release_runner.binaries.downloader import Downloader
from mcp_release_runner.binaries.cache import CacheStore
from mcp_release_runner.binaries.registry import Registry
from mcp_release_runner.binaries.releases import GitHubReleaseProvider, parse_repo

__all__ = [
    "get_current_platform",
    "find_matching_asset",
    "get_available_platforms",
    "Downloader",
    "CacheStore",
    "Registry",
    "GitHubReleaseProvider",
    "parse_repo",
]
