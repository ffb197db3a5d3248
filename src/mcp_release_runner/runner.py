"""Resolve repository references to cached, runnable binaries.

A reference is either ``owner/repo`` or a short name previously recorded in
the registry. Resolution consults the cache first and only talks to the
release provider on a miss (or when an update is forced). A fresh download
goes through match, download, extract, select, cache, register and prune.
"""
import asyncio
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

from mcp.types import INVALID_PARAMS

from mcp_release_runner.types import Asset, Platform, ResolvedBinary
from mcp_release_runner.config import Config, cache_dir
from mcp_release_runner.errors import (
    NoExecutableFoundError,
    NoMatchingAssetError,
    PersistenceError,
    ReleaseRunnerError,
    UnsupportedArchiveError,
)
from mcp_release_runner.binaries.constants import (
    NON_EXECUTABLE_EXTENSIONS,
    UNSUPPORTED_ARCHIVE_EXTENSIONS,
)
from mcp_release_runner.binaries.platforms import (
    find_matching_asset,
    get_available_platforms,
    get_current_platform,
)
from mcp_release_runner.binaries.downloader import (
    Downloader,
    ProgressCallback,
    archive_format,
)
from mcp_release_runner.binaries.cache import CacheStore
from mcp_release_runner.binaries.registry import Registry
from mcp_release_runner.binaries.releases import GitHubReleaseProvider, parse_repo
from mcp_release_runner.executor import BinaryExecutor
from mcp_release_runner.logging import get_logger

logger = get_logger(__name__)

EXTRACT_DIR = "extracted"
PROGRESS_STEP = 25


def choose_best_executable(executables: Sequence[Path], repo_name: str) -> Path:
    """Pick the executable most likely to be the tool itself.

    Preference: exact repo-name stem without extension (not ``_``-prefixed),
    exact stem without extension, exact stem of a non-script non-doc file,
    anything under a ``bin`` directory, then the first candidate.
    """
    if not executables:
        raise ValueError("No executables to choose from")
    if len(executables) == 1:
        return executables[0]

    wanted = repo_name.lower()

    def matches(path: Path) -> bool:
        return path.stem.lower() == wanted

    preferences = (
        lambda p: matches(p) and p.suffix == "" and not p.stem.startswith("_"),
        lambda p: matches(p) and p.suffix == "",
        lambda p: matches(p) and p.suffix.lower() not in NON_EXECUTABLE_EXTENSIONS,
        lambda p: "bin" in p.parts[:-1],
    )
    for preferred in preferences:
        for exe in executables:
            if preferred(exe):
                return exe
    return executables[0]


def _progress_logger(asset_name: str) -> ProgressCallback:
    """Log download progress every PROGRESS_STEP percent."""
    last_step = -1

    def report(progress):
        nonlocal last_step
        step = int(progress.percentage // PROGRESS_STEP)
        if step > last_step:
            last_step = step
            logger.info(
                "download_progress",
                asset=asset_name,
                percentage=round(progress.percentage, 1),
                downloaded=progress.downloaded,
                total=progress.total,
                bytes_per_second=round(progress.bytes_per_second),
            )

    return report


class ReleaseRunner:
    """Coordinates release lookup, download, caching and execution."""

    def __init__(
        self,
        config: Optional[Config] = None,
        provider: Optional[GitHubReleaseProvider] = None,
        downloader: Optional[Downloader] = None,
        cache: Optional[CacheStore] = None,
        registry: Optional[Registry] = None,
        executor: Optional[BinaryExecutor] = None,
        platform: Optional[Platform] = None,
    ):
        self.config = config or Config()
        network = self.config.network
        root = cache_dir(self.config)

        self.provider = provider or GitHubReleaseProvider(
            user_agent=network.user_agent, timeout=network.timeout
        )
        self.downloader = downloader or Downloader(
            timeout=network.timeout, retries=network.retries, user_agent=network.user_agent
        )
        self.cache = cache or CacheStore(root)
        self.registry = registry or Registry(root)
        self.executor = executor or BinaryExecutor()
        self.platform = platform or get_current_platform()

    def resolve_reference(self, reference: str) -> str:
        """Turn ``owner/repo`` or a registered short name into ``owner/repo``."""
        if "/" in reference:
            owner, repo_name = parse_repo(reference)
            return f"{owner}/{repo_name}"

        entry = self.registry.get_entry(reference)
        if entry is None:
            raise ReleaseRunnerError(
                f"Unknown binary {reference!r}. Use owner/repo or a previously installed name.",
                code=INVALID_PARAMS,
                details={"reference": reference},
            )
        return entry.repo

    async def resolve(
        self,
        reference: str,
        version: Optional[str] = None,
        no_cache: bool = False,
        update: bool = False,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ResolvedBinary:
        """Return a local executable for ``reference``, downloading on a miss."""
        repo = self.resolve_reference(reference)
        logger.debug("resolve", repo=repo, version=version, platform=self.platform.key)

        if not (no_cache or update):
            cached = await asyncio.to_thread(self._from_cache, repo, version)
            if cached is not None:
                return cached

        return await self._acquire(repo, version, on_progress)

    def _from_cache(self, repo: str, version: Optional[str]) -> Optional[ResolvedBinary]:
        cached_version = version or self.cache.get_latest_cached(repo, self.platform)
        if cached_version is None:
            return None

        path = self.cache.get_cached_binary(repo, cached_version, self.platform)
        if path is None:
            return None

        self.executor.ensure_executable(path)
        self._touch_registry(repo)

        logger.info("cache_hit", repo=repo, version=cached_version, path=str(path))
        return ResolvedBinary(
            repo=repo, version=cached_version, platform=self.platform, path=path, from_cache=True
        )

    def _touch_registry(self, repo: str) -> None:
        name = repo.split("/")[1]
        entry = self.registry.get_entry(name)
        if entry is None or entry.repo != repo:
            return
        try:
            self.registry.update_last_used(name)
        except PersistenceError as e:
            logger.warning("registry_touch_failed", name=name, error=str(e))

    async def _acquire(
        self,
        repo: str,
        version: Optional[str],
        on_progress: Optional[ProgressCallback],
    ) -> ResolvedBinary:
        owner, repo_name = repo.split("/")
        if version:
            release = await self.provider.get_release_by_tag(owner, repo_name, version)
        else:
            release = await self.provider.get_latest_release(owner, repo_name)

        asset = find_matching_asset(release.assets, self.platform)
        if asset is None:
            available = sorted(get_available_platforms(release.assets))
            raise NoMatchingAssetError(repo, self.platform.key, available)
        logger.info("asset_selected", repo=repo, tag=release.tag, asset=asset.name)

        if on_progress is None and self.config.behavior.show_progress:
            on_progress = _progress_logger(asset.name)

        download = await self.downloader.download_asset(asset, on_progress)
        try:
            binary = await asyncio.to_thread(self._prepare, download, asset, repo_name)

            checksum = None
            if self.config.advanced.checksum_validation:
                checksum = await asyncio.to_thread(self.downloader.calculate_checksum, binary)

            cached = await asyncio.to_thread(
                self.cache.cache_binary,
                repo,
                release.tag,
                self.platform,
                binary,
                asset.name,
                checksum,
            )
        finally:
            self.downloader.cleanup([download, download.parent / EXTRACT_DIR])

        await asyncio.to_thread(self.registry.add_entry, repo_name, repo, release.tag, self.platform)

        if self.config.cache.auto_cleanup:
            await asyncio.to_thread(
                self.cache.prune,
                self.config.cache.max_versions_per_repo,
                self.config.max_total_size_bytes,
                cached.parent,
            )

        return ResolvedBinary(
            repo=repo, version=release.tag, platform=self.platform, path=cached, from_cache=False
        )

    def _prepare(self, download: Path, asset: Asset, repo_name: str) -> Path:
        """Return the executable to cache from a downloaded asset."""
        if archive_format(download) is None:
            if download.name.lower().endswith(UNSUPPORTED_ARCHIVE_EXTENSIONS):
                raise UnsupportedArchiveError(str(download))
            # a bare binary asset is the executable itself
            return download

        extract_dir = self.downloader.extract_archive(download, download.parent / EXTRACT_DIR)
        executables = self.downloader.find_executables(
            extract_dir, windows=self.platform.os == "windows"
        )
        logger.debug(
            "executables_discovered",
            asset=asset.name,
            executables=[str(p.relative_to(extract_dir)) for p in executables],
        )
        if not executables:
            raise NoExecutableFoundError(asset.name)

        return choose_best_executable(executables, repo_name)

    async def run(
        self,
        reference: str,
        args: Sequence[str] = (),
        version: Optional[str] = None,
        update: bool = False,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> int:
        """Resolve and execute with inherited stdio; returns the exit code."""
        resolved = await self.resolve(reference, version=version, update=update)
        return await self.executor.execute(resolved.path, args, cwd=cwd, env=env)

    async def run_with_output(
        self,
        reference: str,
        args: Sequence[str] = (),
        version: Optional[str] = None,
        update: bool = False,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, str, str]:
        resolved = await self.resolve(reference, version=version, update=update)
        return await self.executor.execute_with_output(resolved.path, args, cwd=cwd, env=env)

    def clean_cache(self, dry_run: bool = False) -> Dict[str, Any]:
        """Summarise the cache and, unless ``dry_run``, remove every repository."""
        cached = self.cache.list_cached()
        summary: Dict[str, Any] = {
            "repositories": [
                {"repo": item.repo, "versions": item.versions} for item in cached
            ],
            "totalSize": self.cache.get_cache_size(),
            "dryRun": dry_run,
            "removed": 0,
        }

        if cached and not dry_run:
            summary["removed"] = self.cache.clean_all()

        logger.info(
            "cache_clean",
            repositories=len(cached),
            total_size=summary["totalSize"],
            dry_run=dry_run,
        )
        return summary
