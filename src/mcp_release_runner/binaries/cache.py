"""Binary cache management.

Layout::

    <root>/<owner>/<repo>/<version>/<os>-<arch>/{<binary>, metadata.json, cache-entry.json}
    <root>/<owner>/<repo>/latest -> <version>/<os>-<arch>

Slot state is always re-derived from the filesystem: a slot counts as cached
only while its metadata is valid *and* the binary it names still exists.
"""
import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from mcp_release_runner.types import BinaryMetadata, CacheEntry, CachedRepo, Platform, utc_now
from mcp_release_runner.errors import PersistenceError
from mcp_release_runner.validation import (
    BINARY_METADATA_SCHEMA,
    CACHE_ENTRY_SCHEMA,
    validate,
)
from mcp_release_runner.utils.fs import (
    directory_size,
    make_executable,
    read_json,
    write_json_atomic,
)
from mcp_release_runner.logging import get_logger

logger = get_logger(__name__)

LATEST_POINTER = "latest"
METADATA_FILE = "metadata.json"
CACHE_ENTRY_FILE = "cache-entry.json"

_EPOCH = datetime.fromtimestamp(0, timezone.utc)


def split_repo(repo: str) -> Tuple[str, str]:
    """Split "owner/name" into its two parts."""
    parts = repo.split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f'Repository must be in format "owner/repo": {repo!r}')
    return parts[0], parts[1]


def guess_binary_name(original_asset_name: str, repo_name: str) -> str:
    """Name for a cached binary: the repository short name, when there is one.

    Asset names carry version and platform noise (tool-v1.2-linux-x86_64)
    that would leak into every invocation.
    """
    if repo_name:
        return repo_name
    return Path(original_asset_name).name.split(".")[0]


def _check_segment(kind: str, value: str) -> None:
    if (
        not value
        or value in (".", "..", LATEST_POINTER)
        or any(c in value for c in ("/", "\\", "\0"))
    ):
        raise ValueError(f"Invalid {kind} for cache path: {value!r}")


def _parse_date(value: object) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class _SlotInfo:
    path: Path
    repo: str
    version: str
    platform_key: str
    installed: datetime
    last_used: datetime
    size: int


class CacheStore:
    """Versioned on-disk store of platform-specific binaries."""

    def __init__(self, cache_root: Path):
        self.cache_root = Path(cache_root)

    def cache_path(
        self, owner: str, repo_name: str, version: str, platform: Platform
    ) -> Path:
        """Deterministic slot directory for (owner, repo, version, platform)."""
        _check_segment("owner", owner)
        _check_segment("repository name", repo_name)
        _check_segment("version", version)
        for token in (platform.os, platform.arch):
            _check_segment("platform", token)
            if "-" in token:
                raise ValueError(f"Platform tokens may not contain '-': {token!r}")
        return self.cache_root / owner / repo_name / version / platform.key

    def _slot(self, repo: str, version: str, platform: Platform) -> Path:
        owner, repo_name = split_repo(repo)
        return self.cache_path(owner, repo_name, version, platform)

    def get_metadata(
        self, repo: str, version: str, platform: Platform
    ) -> Optional[BinaryMetadata]:
        """Read slot metadata. Malformed metadata is treated as absent."""
        return self._read_metadata(self._slot(repo, version, platform) / METADATA_FILE)

    def _read_metadata(self, path: Path) -> Optional[BinaryMetadata]:
        if not path.is_file():
            return None

        try:
            data = read_json(path)
        except (OSError, ValueError) as e:
            logger.warning("metadata_unreadable", path=str(path), error=str(e))
            return None

        result = validate(data, BINARY_METADATA_SCHEMA)
        if not result.is_valid:
            logger.warning("metadata_invalid", path=str(path), errors=result.errors)
            return None

        return BinaryMetadata.from_dict(data)

    def is_cached(
        self, owner: str, repo_name: str, version: str, platform: Platform
    ) -> bool:
        """True only if metadata is valid and its binary still exists."""
        metadata = self.get_metadata(f"{owner}/{repo_name}", version, platform)
        return metadata is not None and metadata.binary_path.is_file()

    def cache_binary(
        self,
        repo: str,
        version: str,
        platform: Platform,
        source_binary: Path,
        original_asset_name: str,
        checksum: Optional[str] = None,
    ) -> Path:
        """Copy a binary into its slot and record its metadata.

        The source file is copied, not moved; cleaning it up stays with the
        caller.
        """
        owner, repo_name = split_repo(repo)
        slot = self.cache_path(owner, repo_name, version, platform)
        binary_name = guess_binary_name(original_asset_name, repo_name)
        if platform.os == "windows":
            binary_name += ".exe"
        cached = slot / binary_name

        # The previous binary stays intact until the rename
        tmp: Optional[Path] = None
        try:
            slot.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=slot, prefix=f".{binary_name}.", suffix=".tmp")
            os.close(fd)
            tmp = Path(tmp_name)
            shutil.copy2(source_binary, tmp)
            if platform.os != "windows" and os.name != "nt":
                make_executable(tmp)
            os.replace(tmp, cached)
        except OSError as e:
            if tmp is not None:
                tmp.unlink(missing_ok=True)
            logger.error("cache_copy_failed", repo=repo, version=version, slot=str(slot), error=str(e))
            raise PersistenceError(f"Failed to cache {repo} {version}: {e}", path=str(slot)) from e

        metadata = BinaryMetadata(
            repo=repo,
            version=version,
            platform=platform,
            binary_path=cached,
            install_date=utc_now(),
            checksum=checksum,
        )
        write_json_atomic(slot / METADATA_FILE, metadata.to_dict())

        self._update_latest_pointer(owner, repo_name, version, platform)

        logger.info(
            "binary_cached",
            repo=repo,
            version=version,
            platform=platform.key,
            asset=original_asset_name,
            path=str(cached),
            checksum=checksum,
        )
        return cached

    def get_cached_binary(
        self, repo: str, version: str, platform: Platform
    ) -> Optional[Path]:
        """Return the cached binary path and record the hit, or None."""
        metadata = self.get_metadata(repo, version, platform)
        if metadata is None:
            return None

        if not metadata.binary_path.is_file():
            logger.info(
                "cached_binary_missing",
                repo=repo,
                version=version,
                path=str(metadata.binary_path),
            )
            return None

        self._record_usage(self._slot(repo, version, platform), metadata)
        return metadata.binary_path

    def get_cache_entry(
        self, repo: str, version: str, platform: Platform
    ) -> Optional[CacheEntry]:
        return self._read_cache_entry(self._slot(repo, version, platform) / CACHE_ENTRY_FILE)

    def _read_cache_entry(self, path: Path) -> Optional[CacheEntry]:
        if not path.is_file():
            return None
        try:
            data = read_json(path)
        except (OSError, ValueError) as e:
            logger.warning("cache_entry_unreadable", path=str(path), error=str(e))
            return None
        if not validate(data, CACHE_ENTRY_SCHEMA).is_valid:
            logger.warning("cache_entry_invalid", path=str(path))
            return None
        return CacheEntry.from_dict(data)

    def _record_usage(self, slot: Path, metadata: BinaryMetadata) -> None:
        path = slot / CACHE_ENTRY_FILE
        now = utc_now()
        entry = self._read_cache_entry(path) or CacheEntry(metadata=metadata, last_used=now)
        entry.metadata = metadata
        entry.last_used = now
        entry.usage_count += 1

        try:
            write_json_atomic(path, entry.to_dict())
        except PersistenceError as e:
            # Usage statistics are advisory; a hit is still a hit.
            logger.warning("usage_update_failed", path=str(path), error=str(e))

    def _update_latest_pointer(
        self, owner: str, repo_name: str, version: str, platform: Platform
    ) -> None:
        """Point <repo>/latest at the new slot. Failure is logged, not raised."""
        pointer = self.cache_root / owner / repo_name / LATEST_POINTER
        target = Path(version) / platform.key
        try:
            if pointer.is_symlink() or pointer.is_file():
                pointer.unlink()
            pointer.symlink_to(target, target_is_directory=True)
        except OSError as e:
            logger.warning("latest_pointer_update_failed", pointer=str(pointer), error=str(e))

    def _read_latest_pointer(self, owner: str, repo_name: str) -> Optional[Tuple[str, str]]:
        pointer = self.cache_root / owner / repo_name / LATEST_POINTER
        if not pointer.is_symlink():
            return None
        try:
            parts = Path(os.readlink(pointer)).parts
        except OSError:
            return None
        if len(parts) != 2:
            return None
        return parts[0], parts[1]

    def get_latest_cached(self, repo: str, platform: Platform) -> Optional[str]:
        """Most recent usable version for ``repo`` on ``platform``.

        The latest pointer is advisory: when it is missing, names another
        platform or points at a slot that no longer validates, every version
        directory is scanned instead.
        """
        owner, repo_name = split_repo(repo)

        pointer = self._read_latest_pointer(owner, repo_name)
        if pointer is not None:
            version, platform_key = pointer
            try:
                if platform_key == platform.key and self.is_cached(
                    owner, repo_name, version, platform
                ):
                    return version
            except ValueError:
                logger.warning("latest_pointer_invalid", repo=repo, target=pointer)

        return self._find_most_recent_version(owner, repo_name, platform)

    def _find_most_recent_version(
        self, owner: str, repo_name: str, platform: Platform
    ) -> Optional[str]:
        repo_dir = self.cache_root / owner / repo_name
        if not repo_dir.is_dir():
            return None

        best_version: Optional[str] = None
        best_date: Optional[datetime] = None
        for version_dir in sorted(repo_dir.iterdir()):
            if version_dir.name == LATEST_POINTER or version_dir.is_symlink() or not version_dir.is_dir():
                continue

            metadata = self.get_metadata(f"{owner}/{repo_name}", version_dir.name, platform)
            if metadata is None or not metadata.binary_path.is_file():
                continue

            installed = _parse_date(metadata.install_date)
            if installed is None:
                continue
            if best_date is None or installed > best_date:
                best_version, best_date = version_dir.name, installed

        return best_version

    def _repo_dirs(self) -> List[Tuple[str, Path]]:
        repos = []
        if not self.cache_root.is_dir():
            return repos
        for owner_dir in sorted(self.cache_root.iterdir()):
            if owner_dir.is_symlink() or not owner_dir.is_dir():
                continue
            for repo_dir in sorted(owner_dir.iterdir()):
                if repo_dir.is_symlink() or not repo_dir.is_dir():
                    continue
                repos.append((f"{owner_dir.name}/{repo_dir.name}", repo_dir))
        return repos

    def list_cached(self) -> List[CachedRepo]:
        """List cached repositories and their version directories."""
        cached = []
        for repo, repo_dir in self._repo_dirs():
            versions = sorted(
                p.name
                for p in repo_dir.iterdir()
                if p.name != LATEST_POINTER and p.is_dir() and not p.is_symlink()
            )
            if versions:
                cached.append(CachedRepo(repo=repo, versions=versions))
        return cached

    def clean_all(self) -> int:
        """Remove every cached repository. Top-level files are kept."""
        if not self.cache_root.is_dir():
            return 0

        removed = 0
        for child in self.cache_root.iterdir():
            if child.is_symlink() or not child.is_dir():
                continue
            try:
                shutil.rmtree(child)
            except OSError as e:
                raise PersistenceError(f"Failed to clean {child}: {e}", path=str(child)) from e
            removed += 1

        logger.info("cache_cleaned", root=str(self.cache_root), removed=removed)
        return removed

    def clean_repo(self, repo: str) -> bool:
        owner, repo_name = split_repo(repo)
        _check_segment("owner", owner)
        _check_segment("repository name", repo_name)
        repo_dir = self.cache_root / owner / repo_name
        if not repo_dir.is_dir():
            return False
        try:
            shutil.rmtree(repo_dir)
        except OSError as e:
            raise PersistenceError(f"Failed to clean {repo}: {e}", path=str(repo_dir)) from e
        logger.info("repo_cache_cleaned", repo=repo)
        return True

    def get_cache_size(self) -> int:
        """Total size in bytes of all cached files."""
        if not self.cache_root.is_dir():
            return 0
        return directory_size(self.cache_root)

    def _collect_slots(self) -> List[_SlotInfo]:
        slots = []
        for repo, repo_dir in self._repo_dirs():
            for version_dir in sorted(repo_dir.iterdir()):
                if version_dir.name == LATEST_POINTER or version_dir.is_symlink() or not version_dir.is_dir():
                    continue
                for slot in sorted(version_dir.iterdir()):
                    if slot.is_symlink() or not slot.is_dir():
                        continue

                    # Slots without valid metadata sort as oldest
                    installed = _EPOCH
                    metadata = self._read_metadata(slot / METADATA_FILE)
                    if metadata is not None:
                        installed = _parse_date(metadata.install_date) or _EPOCH
                    last_used = installed

                    entry = self._read_cache_entry(slot / CACHE_ENTRY_FILE)
                    if entry is not None:
                        last_used = _parse_date(entry.last_used) or last_used

                    slots.append(
                        _SlotInfo(
                            path=slot,
                            repo=repo,
                            version=version_dir.name,
                            platform_key=slot.name,
                            installed=installed,
                            last_used=last_used,
                            size=directory_size(slot),
                        )
                    )
        return slots

    def _remove_slot(self, slot: _SlotInfo) -> None:
        try:
            shutil.rmtree(slot.path)
            version_dir = slot.path.parent
            if not any(version_dir.iterdir()):
                version_dir.rmdir()
        except OSError as e:
            raise PersistenceError(f"Failed to remove {slot.path}: {e}", path=str(slot.path)) from e
        logger.info(
            "cache_slot_removed",
            repo=slot.repo,
            version=slot.version,
            platform=slot.platform_key,
            size=slot.size,
        )

    def prune(
        self,
        max_versions_per_repo: Optional[int] = None,
        max_total_size: Optional[int] = None,
        keep: Optional[Path] = None,
    ) -> List[Path]:
        """Evict old slots.

        First keeps only the newest ``max_versions_per_repo`` installs per
        repository and platform, then evicts least recently used slots until
        the cache fits in ``max_total_size`` bytes. The slot directory
        ``keep`` is never evicted.
        """
        slots = self._collect_slots()
        protected = Path(keep) if keep is not None else None
        removed: List[Path] = []

        if max_versions_per_repo is not None and max_versions_per_repo > 0:
            groups: Dict[Tuple[str, str], List[_SlotInfo]] = {}
            for slot in slots:
                groups.setdefault((slot.repo, slot.platform_key), []).append(slot)
            for group in groups.values():
                group.sort(key=lambda s: (s.path == protected, s.installed), reverse=True)
                for slot in group[max_versions_per_repo:]:
                    if slot.path == protected:
                        continue
                    self._remove_slot(slot)
                    removed.append(slot.path)

        if max_total_size is not None:
            remaining = sorted(
                (s for s in slots if s.path not in removed and s.path != protected),
                key=lambda s: s.last_used,
            )
            total = self.get_cache_size()
            while total > max_total_size and remaining:
                slot = remaining.pop(0)
                self._remove_slot(slot)
                removed.append(slot.path)
                total -= slot.size

        if removed:
            logger.info("cache_pruned", removed=len(removed))
        return removed
