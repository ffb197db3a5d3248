"""Asset download, archive extraction and executable discovery."""
import asyncio
import hashlib
import os
import shutil
import tarfile
import tempfile
import time
import zipfile
from pathlib import Path
from typing import Awaitable, Callable, Iterable, List, Optional

import aiohttp

from mcp_release_runner.types import Asset, DownloadProgress
from mcp_release_runner.errors import (
    ArchiveExtractionError,
    DownloadError,
    UnsupportedArchiveError,
)
from mcp_release_runner.binaries.constants import (
    DEFAULT_USER_AGENT,
    MAN_PAGE_DIRS,
    MAN_PAGE_EXTENSIONS,
    NON_EXECUTABLE_EXTENSIONS,
    NON_EXECUTABLE_NAMES,
    WINDOWS_EXECUTABLE_EXTENSIONS,
)
from mcp_release_runner.utils.fs import (
    is_executable,
    make_executable,
    remove_path,
    walk_files,
)
from mcp_release_runner.logging import get_logger

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024
TEMP_PREFIX = "release-runner-"

ProgressCallback = Callable[[DownloadProgress], None]


def archive_format(path: Path) -> Optional[str]:
    """Return the archive suffix of ``path`` or None if unsupported."""
    name = path.name.lower()
    for suffix in (".tar.gz", ".tgz", ".zip"):
        if name.endswith(suffix):
            return suffix
    return None


class Downloader:
    """Downloads release assets and prepares their contents for caching."""

    def __init__(
        self,
        timeout: float = 30.0,
        retries: int = 3,
        user_agent: str = DEFAULT_USER_AGENT,
        temp_dir: Optional[Path] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if retries < 1:
            raise ValueError("retries must be at least 1")
        self.timeout = timeout
        self.retries = retries
        self.user_agent = user_agent
        self.temp_dir = temp_dir
        self._sleep = sleep

    async def download_asset(
        self, asset: Asset, on_progress: Optional[ProgressCallback] = None
    ) -> Path:
        """Download ``asset`` into a fresh temp directory and return the file.

        Retries with exponential backoff (2s, 4s, ...). After the final
        failure the temp directory is removed and DownloadError is raised.
        """
        if self.temp_dir is not None:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
        tmp_dir = Path(tempfile.mkdtemp(prefix=TEMP_PREFIX, dir=self.temp_dir))
        dest = tmp_dir / Path(asset.name).name

        started = time.monotonic()
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.retries + 1):
            try:
                await self._fetch(asset, dest, started, on_progress)
                logger.info(
                    "asset_downloaded",
                    asset=asset.name,
                    path=str(dest),
                    size=dest.stat().st_size,
                    attempt=attempt,
                )
                return dest
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                last_error = e
                logger.warning(
                    "asset_download_failed",
                    asset=asset.name,
                    url=asset.download_url,
                    attempt=attempt,
                    retries=self.retries,
                    error=str(e) or e.__class__.__name__,
                )
                if attempt < self.retries:
                    await self._sleep(2 ** attempt)

        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise DownloadError(
            asset.download_url,
            self.retries,
            str(last_error) or last_error.__class__.__name__,
        ) from last_error

    async def _fetch(
        self,
        asset: Asset,
        dest: Path,
        started: float,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        """Stream one attempt to ``dest``."""
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        headers = {"User-Agent": self.user_agent, "Accept": "application/octet-stream"}

        async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
            async with session.get(asset.download_url) as response:
                response.raise_for_status()

                total = response.content_length or asset.size or 0
                downloaded = 0

                with open(dest, "wb") as f:
                    async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                        f.write(chunk)
                        downloaded += len(chunk)

                        if on_progress and total > 0:
                            elapsed = time.monotonic() - started
                            on_progress(
                                DownloadProgress(
                                    downloaded=downloaded,
                                    total=total,
                                    percentage=downloaded / total * 100,
                                    bytes_per_second=downloaded / elapsed if elapsed > 0 else 0.0,
                                )
                            )

    def extract_archive(self, archive_path: Path, dest_dir: Path) -> Path:
        """Extract a .tar.gz/.tgz/.zip archive, keeping its internal layout."""
        format = archive_format(archive_path)
        if format is None:
            raise UnsupportedArchiveError(str(archive_path))

        dest_dir.mkdir(parents=True, exist_ok=True)
        logger.debug("extract_archive", archive=str(archive_path), dest=str(dest_dir), format=format)

        try:
            if format == ".zip":
                self._extract_zip(archive_path, dest_dir)
            else:
                with tarfile.open(archive_path, "r:gz") as archive:
                    archive.extractall(dest_dir, filter="data")
        except (tarfile.TarError, zipfile.BadZipFile, EOFError) as e:
            logger.error("extract_failed", archive=str(archive_path), format=format, error=str(e))
            raise ArchiveExtractionError(str(archive_path), str(e)) from e

        logger.info("archive_extracted", archive=str(archive_path), extracted_to=str(dest_dir))
        return dest_dir

    def _extract_zip(self, archive_path: Path, dest_dir: Path) -> None:
        root = dest_dir.resolve()
        with zipfile.ZipFile(archive_path) as archive:
            for info in archive.infolist():
                target = (dest_dir / info.filename).resolve()
                if target != root and root not in target.parents:
                    raise ArchiveExtractionError(
                        str(archive_path), f"entry escapes destination: {info.filename}"
                    )

                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue

                target.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(info) as src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)

                # Unix permission bits live in the high word of external_attr
                mode = (info.external_attr >> 16) & 0o777
                if mode:
                    target.chmod(mode)

    def calculate_checksum(self, path: Path, algorithm: str = "sha256") -> str:
        """Compute a hex digest of a file, streaming it in chunks."""
        digest = hashlib.new(algorithm)
        with open(path, "rb") as f:
            for block in iter(lambda: f.read(CHUNK_SIZE), b""):
                digest.update(block)
        return digest.hexdigest()

    def find_executables(self, root: Path, windows: Optional[bool] = None) -> List[Path]:
        """Find executable files under ``root`` in sorted depth-first order.

        On Unix, files with an execute bit are collected; extensionless and
        .bin files without one are made executable and collected. Docs,
        licences, man pages and scripts are skipped regardless of mode.
        On Windows, .exe/.bat/.cmd files are collected.
        """
        if windows is None:
            windows = os.name == "nt"

        executables = []
        for path in walk_files(root):
            suffix = path.suffix.lower()
            if windows:
                if suffix in WINDOWS_EXECUTABLE_EXTENSIONS:
                    executables.append(path)
                continue

            if _is_non_executable(path.relative_to(root)):
                continue
            if is_executable(path):
                executables.append(path)
            elif suffix in ("", ".bin"):
                make_executable(path)
                executables.append(path)

        logger.debug("executables_found", root=str(root), count=len(executables))
        return executables

    def cleanup(self, paths: Iterable[Path]) -> None:
        """Best-effort removal of paths and any parent left empty."""
        for path in paths:
            path = Path(path)
            try:
                remove_path(path)
            except OSError as e:
                logger.debug("cleanup_failed", path=str(path), error=str(e))
                continue
            try:
                path.parent.rmdir()
            except OSError:
                pass  # parent not empty


def _is_man_page(path: Path) -> bool:
    if path.suffix.lower() not in MAN_PAGE_EXTENSIONS:
        return False
    if any(part.lower() in MAN_PAGE_DIRS for part in path.parts[:-1]):
        return True
    # "rg.1" is a man page, "tool-2.0.1" is a versioned binary
    return not path.stem[-1:].isdigit()


def _is_non_executable(path: Path) -> bool:
    if path.suffix.lower() in NON_EXECUTABLE_EXTENSIONS or _is_man_page(path):
        return True
    name = path.name.lower()
    return any(
        name == base or name.startswith((f"{base}-", f"{base}_", f"{base}."))
        for base in NON_EXECUTABLE_NAMES
    )
