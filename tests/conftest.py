import io
import tarfile
import zipfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from mcp_release_runner.types import Platform
from mcp_release_runner.config import Config
from mcp_release_runner.runner import ReleaseRunner
from mcp_release_runner.binaries.downloader import Downloader
from mcp_release_runner.binaries.releases import GitHubReleaseProvider
from mcp_release_runner.binaries.cache import CacheStore
from mcp_release_runner.binaries.registry import Registry

ArchiveFiles = Dict[str, Tuple[bytes, int]]

BINARY = b"\x7fELF fake binary"


def build_tar_gz(files: ArchiveFiles) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, (data, mode) in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def build_zip(files: ArchiveFiles) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        for name, (data, mode) in files.items():
            info = zipfile.ZipInfo(name)
            info.external_attr = mode << 16
            archive.writestr(info, data)
    return buf.getvalue()


class FakeGitHub:
    """In-process stand-in for the GitHub releases API and asset host."""

    def __init__(self):
        self.releases: Dict[Tuple[str, str], List[dict]] = {}
        self.assets: Dict[str, bytes] = {}
        self.asset_failures: Dict[str, int] = {}
        self.api_status: Optional[Tuple[int, Dict[str, str]]] = None
        self.requests: List[str] = []
        self.base_url = ""

    def add_release(self, owner: str, repo: str, tag: str, assets: Dict[str, bytes]) -> None:
        """Publish a release; the most recently added one is the latest."""
        self.assets.update(assets)
        self.releases.setdefault((owner, repo), []).insert(
            0, {"tag_name": tag, "name": tag, "assets": list(assets)}
        )

    def asset_url(self, name: str) -> str:
        return f"{self.base_url}/assets/{name}"

    def _release_json(self, release: dict) -> dict:
        return {
            "tag_name": release["tag_name"],
            "name": release["name"],
            "published_at": "2024-01-01T00:00:00Z",
            "assets": [
                {
                    "name": name,
                    "browser_download_url": self.asset_url(name),
                    "size": len(self.assets[name]),
                    "content_type": "application/octet-stream",
                }
                for name in release["assets"]
            ],
        }

    def _api_error(self) -> Optional[web.Response]:
        if self.api_status is None:
            return None
        status, headers = self.api_status
        return web.json_response({"message": "error"}, status=status, headers=headers)

    async def latest(self, request: web.Request) -> web.Response:
        self.requests.append(request.path)
        error = self._api_error()
        if error is not None:
            return error
        releases = self.releases.get((request.match_info["owner"], request.match_info["repo"]))
        if not releases:
            return web.json_response({"message": "Not Found"}, status=404)
        return web.json_response(self._release_json(releases[0]))

    async def by_tag(self, request: web.Request) -> web.Response:
        self.requests.append(request.path)
        error = self._api_error()
        if error is not None:
            return error
        releases = self.releases.get((request.match_info["owner"], request.match_info["repo"]), [])
        for release in releases:
            if release["tag_name"] == request.match_info["tag"]:
                return web.json_response(self._release_json(release))
        return web.json_response({"message": "Not Found"}, status=404)

    async def listing(self, request: web.Request) -> web.Response:
        self.requests.append(request.path)
        releases = self.releases.get((request.match_info["owner"], request.match_info["repo"]), [])
        limit = int(request.query.get("per_page", 30))
        return web.json_response([self._release_json(r) for r in releases[:limit]])

    async def asset(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        self.requests.append(request.path)
        if self.asset_failures.get(name, 0) > 0:
            self.asset_failures[name] -= 1
            return web.Response(status=503)
        if name not in self.assets:
            return web.Response(status=404)
        return web.Response(body=self.assets[name], content_type="application/octet-stream")

    async def rate_limit(self, request: web.Request) -> web.Response:
        self.requests.append(request.path)
        return web.json_response(
            {"resources": {"core": {"limit": 60, "remaining": 59, "reset": 1700000000}}}
        )

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/repos/{owner}/{repo}/releases/latest", self.latest)
        app.router.add_get("/repos/{owner}/{repo}/releases/tags/{tag}", self.by_tag)
        app.router.add_get("/repos/{owner}/{repo}/releases", self.listing)
        app.router.add_get("/assets/{name}", self.asset)
        app.router.add_get("/rate_limit", self.rate_limit)
        return app


@pytest_asyncio.fixture
async def github():
    """A running fake GitHub server"""
    fake = FakeGitHub()
    server = TestServer(fake.make_app())
    await server.start_server()
    fake.base_url = str(server.make_url("/")).rstrip("/")
    try:
        yield fake
    finally:
        await server.close()


@pytest.fixture
def tar_gz():
    return build_tar_gz


@pytest.fixture
def zip_archive():
    return build_zip


@pytest.fixture
def linux_x64() -> Platform:
    return Platform(os="linux", arch="x86_64")


@pytest.fixture
def cache_root(tmp_path: Path) -> Path:
    root = tmp_path / "cache"
    root.mkdir()
    return root


@pytest.fixture
def cache(cache_root: Path) -> CacheStore:
    return CacheStore(cache_root)


@pytest.fixture
def registry(cache_root: Path) -> Registry:
    return Registry(cache_root)


@pytest.fixture
def binary_file(tmp_path: Path) -> Path:
    """A standalone executable file to cache"""
    path = tmp_path / "src" / "tool"
    path.parent.mkdir()
    path.write_bytes(BINARY)
    path.chmod(0o755)
    return path


@pytest.fixture
def config(cache_root: Path) -> Config:
    config = Config()
    config.cache.directory = str(cache_root)
    return config


@pytest.fixture
def make_runner(tmp_path: Path, config: Config, linux_x64: Platform):
    """Build a runner wired to a fake GitHub server"""
    def make(github: FakeGitHub) -> ReleaseRunner:
        return ReleaseRunner(
            config,
            provider=GitHubReleaseProvider(timeout=5, base_url=github.base_url, token=""),
            downloader=Downloader(timeout=5, retries=1, temp_dir=tmp_path / "downloads"),
            platform=linux_x64,
        )
    return make
