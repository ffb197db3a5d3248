"""Tests for release resolution."""
import hashlib
import os
import threading
from pathlib import Path

import pytest

from mcp_release_runner.errors import (
    NoExecutableFoundError,
    NoMatchingAssetError,
    ReleaseRunnerError,
    UnsupportedArchiveError,
)
from mcp_release_runner.runner import choose_best_executable

BINARY = b"\x7fELF\x02\x01\x01 release binary"
SCRIPT = b"#!/bin/sh\necho \"hello $1\"\necho oops >&2\nexit 3\n"


@pytest.fixture
def tool_release(tar_gz):
    def publish(github, tag="v1.0.0", payload=BINARY):
        github.add_release(
            "acme",
            "tool",
            tag,
            {
                f"tool-{tag}-x86_64-unknown-linux-musl.tar.gz": tar_gz(
                    {
                        f"tool-{tag}/complete/_tool": (b"#compdef tool", 0o644),
                        f"tool-{tag}/README.md": (b"docs", 0o644),
                        f"tool-{tag}/tool": (payload, 0o755),
                    }
                ),
                f"tool-{tag}-aarch64-apple-darwin.tar.gz": tar_gz({"tool": (b"mac", 0o755)}),
                "checksums.txt": b"deadbeef  tool.tar.gz\n",
            },
        )
    return publish


def latest_requests(github):
    return github.requests.count("/repos/acme/tool/releases/latest")


@pytest.mark.asyncio
async def test_resolve_downloads_and_caches(github, make_runner, tool_release, cache_root, tmp_path):
    tool_release(github)
    runner = make_runner(github)

    resolved = await runner.resolve("acme/tool")

    assert not resolved.from_cache
    assert resolved.version == "v1.0.0"
    assert resolved.path == cache_root / "acme" / "tool" / "v1.0.0" / "linux-x86_64" / "tool"
    assert resolved.path.read_bytes() == BINARY
    assert os.access(resolved.path, os.X_OK)

    metadata = runner.cache.get_metadata("acme/tool", "v1.0.0", runner.platform)
    assert metadata.checksum == hashlib.sha256(BINARY).hexdigest()

    entry = runner.registry.get_entry("tool")
    assert entry.repo == "acme/tool"
    assert entry.version == "v1.0.0"

    assert list((tmp_path / "downloads").iterdir()) == []


@pytest.mark.asyncio
async def test_cache_hit_skips_network(github, make_runner, tool_release):
    tool_release(github)
    runner = make_runner(github)
    first = await runner.resolve("acme/tool")
    last_used = runner.registry.get_entry("tool").last_used

    second = await runner.resolve("acme/tool")

    assert second.from_cache
    assert second.path == first.path
    assert latest_requests(github) == 1
    assert runner.cache.get_cache_entry("acme/tool", "v1.0.0", runner.platform).usage_count == 1
    assert runner.registry.get_entry("tool").last_used >= last_used


@pytest.mark.asyncio
async def test_disk_work_runs_off_event_loop(github, make_runner, tool_release):
    """Test cache and registry writes happen in worker threads"""
    tool_release(github)
    runner = make_runner(github)
    loop_thread = threading.current_thread()
    threads = {}

    def recorded(name, func):
        def wrapper(*args, **kwargs):
            threads.setdefault(name, threading.current_thread())
            return func(*args, **kwargs)
        return wrapper

    runner.cache.cache_binary = recorded("cache_binary", runner.cache.cache_binary)
    runner.cache.get_cached_binary = recorded("get_cached_binary", runner.cache.get_cached_binary)
    runner.registry.add_entry = recorded("add_entry", runner.registry.add_entry)
    runner.registry.update_last_used = recorded("update_last_used", runner.registry.update_last_used)

    await runner.resolve("acme/tool")
    assert (await runner.resolve("acme/tool")).from_cache

    assert set(threads) == {"cache_binary", "get_cached_binary", "add_entry", "update_last_used"}
    assert loop_thread not in threads.values()


@pytest.mark.asyncio
async def test_resolve_by_short_name(github, make_runner, tool_release):
    tool_release(github)
    runner = make_runner(github)
    await runner.resolve("acme/tool")

    resolved = await make_runner(github).resolve("tool")

    assert resolved.repo == "acme/tool"
    assert resolved.from_cache


@pytest.mark.asyncio
async def test_unknown_short_name(github, make_runner):
    with pytest.raises(ReleaseRunnerError, match="Unknown binary"):
        await make_runner(github).resolve("nothing")


@pytest.mark.asyncio
async def test_invalid_reference(github, make_runner):
    with pytest.raises(ValueError):
        await make_runner(github).resolve("acme/tool/extra")


@pytest.mark.asyncio
async def test_redownload_after_binary_deleted(github, make_runner, tool_release):
    """Test an out-of-band deletion turns the next resolve into a download"""
    tool_release(github)
    runner = make_runner(github)
    first = await runner.resolve("acme/tool")

    first.path.unlink()
    again = await runner.resolve("acme/tool")

    assert not again.from_cache
    assert again.path == first.path
    assert again.path.read_bytes() == BINARY
    assert latest_requests(github) == 2


@pytest.mark.asyncio
async def test_update_bypasses_cache(github, make_runner, tool_release):
    tool_release(github)
    runner = make_runner(github)
    await runner.resolve("acme/tool")
    tool_release(github, tag="v1.1.0", payload=b"newer")

    cached = await runner.resolve("acme/tool")
    updated = await runner.resolve("acme/tool", update=True)

    assert cached.version == "v1.0.0"
    assert updated.version == "v1.1.0"
    assert updated.path.read_bytes() == b"newer"
    assert runner.registry.get_entry("tool").version == "v1.1.0"
    assert (await runner.resolve("acme/tool")).version == "v1.1.0"


@pytest.mark.asyncio
async def test_resolve_specific_version(github, make_runner, tool_release):
    tool_release(github, tag="v1.0.0", payload=b"first")
    tool_release(github, tag="v2.0.0", payload=b"second")
    runner = make_runner(github)

    resolved = await runner.resolve("acme/tool", version="v1.0.0")

    assert resolved.version == "v1.0.0"
    assert resolved.path.read_bytes() == b"first"
    assert "/repos/acme/tool/releases/tags/v1.0.0" in github.requests

    assert (await runner.resolve("acme/tool", version="v1.0.0")).from_cache


@pytest.mark.asyncio
async def test_no_matching_asset_lists_platforms(github, make_runner, tar_gz, tmp_path):
    github.add_release(
        "acme",
        "tool",
        "v1.0.0",
        {
            "tool-aarch64-apple-darwin.tar.gz": tar_gz({"tool": (b"mac", 0o755)}),
            "tool-x86_64-pc-windows-msvc.zip": b"zip",
        },
    )

    with pytest.raises(NoMatchingAssetError) as exc_info:
        await make_runner(github).resolve("acme/tool")

    error = exc_info.value
    assert error.details["platform"] == "linux-x86_64"
    assert error.details["available"] == ["darwin-aarch64", "windows-x86_64"]
    assert "Available platforms: darwin-aarch64, windows-x86_64" in str(error)
    assert not any(r.startswith("/assets/") for r in github.requests)


@pytest.mark.asyncio
async def test_bare_binary_asset(github, make_runner):
    github.add_release("acme", "tool", "v1.0.0", {"tool-linux-amd64": BINARY})

    resolved = await make_runner(github).resolve("acme/tool")

    assert resolved.path.name == "tool"
    assert resolved.path.read_bytes() == BINARY
    assert os.access(resolved.path, os.X_OK)


@pytest.mark.asyncio
async def test_unsupported_archive(github, make_runner, tmp_path):
    github.add_release("acme", "tool", "v1.0.0", {"tool-linux-amd64.tar.xz": b"xz"})
    runner = make_runner(github)

    with pytest.raises(UnsupportedArchiveError):
        await runner.resolve("acme/tool")

    assert list((tmp_path / "downloads").iterdir()) == []
    assert runner.cache.list_cached() == []


@pytest.mark.asyncio
async def test_archive_without_executables(github, make_runner, tar_gz, tmp_path):
    github.add_release(
        "acme", "tool", "v1.0.0", {"tool-linux-amd64.tar.gz": tar_gz({"README.md": (b"docs", 0o644)})}
    )
    runner = make_runner(github)

    with pytest.raises(NoExecutableFoundError):
        await runner.resolve("acme/tool")

    assert list((tmp_path / "downloads").iterdir()) == []
    assert runner.registry.get_entry("tool") is None


@pytest.mark.asyncio
async def test_checksum_disabled(github, make_runner, tool_release, config):
    config.advanced.checksum_validation = False
    tool_release(github)
    runner = make_runner(github)

    await runner.resolve("acme/tool")

    assert runner.cache.get_metadata("acme/tool", "v1.0.0", runner.platform).checksum is None


@pytest.mark.asyncio
async def test_auto_cleanup_prunes_old_versions(github, make_runner, tool_release, config):
    config.cache.max_versions_per_repo = 1
    tool_release(github, tag="v1.0.0")
    runner = make_runner(github)
    await runner.resolve("acme/tool")

    tool_release(github, tag="v1.1.0")
    await runner.resolve("acme/tool", update=True)

    assert [c.versions for c in runner.cache.list_cached()] == [["v1.1.0"]]


@pytest.mark.asyncio
async def test_auto_cleanup_disabled(github, make_runner, tool_release, config):
    config.cache.max_versions_per_repo = 1
    config.cache.auto_cleanup = False
    tool_release(github, tag="v1.0.0")
    runner = make_runner(github)
    await runner.resolve("acme/tool")

    tool_release(github, tag="v1.1.0")
    await runner.resolve("acme/tool", update=True)

    assert [c.versions for c in runner.cache.list_cached()] == [["v1.0.0", "v1.1.0"]]


@pytest.mark.asyncio
async def test_progress_callback(github, make_runner, tool_release):
    tool_release(github)
    reports = []

    await make_runner(github).resolve("acme/tool", on_progress=reports.append)

    assert reports
    assert reports[-1].percentage == pytest.approx(100.0)


@pytest.mark.skipif(os.name == "nt", reason="shell script binary")
@pytest.mark.asyncio
async def test_run_with_output(github, make_runner):
    github.add_release("acme", "tool", "v1.0.0", {"tool-linux-amd64": SCRIPT})

    code, stdout, stderr = await make_runner(github).run_with_output("acme/tool", ["world"])

    assert code == 3
    assert stdout == "hello world"
    assert stderr == "oops"


@pytest.mark.skipif(os.name == "nt", reason="shell script binary")
@pytest.mark.asyncio
async def test_run_returns_exit_code(github, make_runner):
    github.add_release("acme", "tool", "v1.0.0", {"tool-linux-amd64": SCRIPT})

    assert await make_runner(github).run("acme/tool", ["world"]) == 3


@pytest.mark.asyncio
async def test_clean_cache(github, make_runner, tool_release, cache_root):
    tool_release(github)
    runner = make_runner(github)
    await runner.resolve("acme/tool")

    preview = runner.clean_cache(dry_run=True)
    assert preview["repositories"] == [{"repo": "acme/tool", "versions": ["v1.0.0"]}]
    assert preview["totalSize"] > 0
    assert preview["removed"] == 0
    assert runner.cache.list_cached()

    summary = runner.clean_cache()
    assert summary["removed"] == 1
    assert runner.cache.list_cached() == []
    assert runner.registry.path.is_file()


@pytest.mark.parametrize(
    "candidates,expected",
    [
        (["pkg/tool"], "pkg/tool"),
        (["pkg/_tool", "pkg/tool"], "pkg/tool"),
        (["pkg/tool.1", "pkg/Tool"], "pkg/Tool"),
        (["pkg/tool.bash", "pkg/tool.exe"], "pkg/tool.exe"),
        (["pkg/helper", "pkg/bin/other"], "pkg/bin/other"),
        (["pkg/helper", "pkg/other"], "pkg/helper"),
    ],
)
def test_choose_best_executable(candidates, expected):
    chosen = choose_best_executable([Path(c) for c in candidates], "tool")
    assert chosen == Path(expected)


def test_choose_best_executable_requires_candidates():
    with pytest.raises(ValueError):
        choose_best_executable([], "tool")
