"""Tests for the short-name registry."""
import json

import pytest

from mcp_release_runner.types import Platform, RegistryEntry
from mcp_release_runner.errors import PersistenceError
from mcp_release_runner.binaries.registry import Registry
from mcp_release_runner.utils import fs


def reload(registry):
    return Registry(registry.registry_root)


def test_load_creates_empty_registry(registry):
    document = registry.load()

    assert document.entries == {}
    assert document.version == "1.0"
    assert registry.path.is_file()
    assert json.loads(registry.path.read_text())["entries"] == {}


def test_load_is_memoised(registry):
    assert registry.load() is registry.load()
    registry.invalidate()
    assert registry.load() is not None


def test_add_entry_with_alias_round_trip(registry, linux_x64):
    entry = registry.add_entry("rg", "BurntSushi/ripgrep", "14.1.0", linux_x64)

    assert entry.binary_name == "rg"
    assert registry.get_entry("ripgrep") == entry

    fresh = reload(registry)
    assert fresh.get_entry("rg") == entry
    assert fresh.get_entry("ripgrep") == entry
    assert fresh.has_entry("rg")
    assert not fresh.has_entry("fd")


def test_add_entry_without_alias(registry, linux_x64):
    registry.add_entry("fd", "sharkdp/fd", "v9.0.0", linux_x64)
    assert list(registry.load().entries) == ["fd"]


def test_remove_entry_removes_alias(registry, linux_x64):
    registry.add_entry("rg", "BurntSushi/ripgrep", "14.1.0", linux_x64)

    fresh = reload(registry)
    assert fresh.remove_entry("rg")
    assert fresh.get_entry("ripgrep") is None
    assert not fresh.remove_entry("rg")


def test_remove_entry_keeps_repointed_alias(registry, linux_x64):
    """Test an alias now owned by another install survives removal"""
    registry.add_entry("rg", "BurntSushi/ripgrep", "14.1.0", linux_x64)
    other = registry.add_entry("ripgrep", "someone/ripgrep", "1.0.0", linux_x64)

    assert registry.remove_entry("rg")
    assert registry.get_entry("ripgrep") == other
    assert reload(registry).get_entry("ripgrep") == other


def test_update_last_used_updates_aliases(registry, linux_x64):
    entry = registry.add_entry("rg", "BurntSushi/ripgrep", "14.1.0", linux_x64)
    registry.load().entries["rg"] = entry.touched("2000-01-01T00:00:00+00:00")
    registry.load().entries["ripgrep"] = registry.load().entries["rg"]
    registry.save()

    touched = reload(registry).update_last_used("ripgrep")

    fresh = reload(registry)
    assert touched.last_used > "2000-01-01T00:00:00+00:00"
    assert fresh.get_entry("rg") == touched
    assert fresh.get_entry("ripgrep") == touched
    assert registry.update_last_used("missing") is None


def test_list_entries_deduplicates(registry, linux_x64):
    registry.add_entry("rg", "BurntSushi/ripgrep", "14.1.0", linux_x64)
    registry.add_entry("fd", "sharkdp/fd", "v9.0.0", linux_x64)

    entries = reload(registry).list_entries()

    assert sorted(e.repo for e in entries) == ["BurntSushi/ripgrep", "sharkdp/fd"]
    assert len(registry.find_by_repo("BurntSushi/ripgrep")) == 1
    assert registry.find_by_repo("nobody/nothing") == []


def test_get_stats(registry, linux_x64):
    registry.add_entry("rg", "BurntSushi/ripgrep", "14.1.0", linux_x64)
    registry.add_entry("fd", "sharkdp/fd", "v9.0.0", linux_x64)

    stats = registry.get_stats()

    assert stats["totalEntries"] == 2
    assert stats["lastUpdated"] == registry.load().last_updated


def test_repair_registry(registry, linux_x64):
    good = RegistryEntry(
        repo="sharkdp/fd",
        binary_name="fd",
        version="v9.0.0",
        install_date="2024-01-01T00:00:00+00:00",
        last_used="2024-01-01T00:00:00+00:00",
        platform=linux_x64,
    )
    registry.path.write_text(
        json.dumps(
            {
                "version": "1.0",
                "lastUpdated": "2024-01-01T00:00:00+00:00",
                "entries": {
                    "fd": good.to_dict(),
                    "broken": {"repo": "acme/broken"},
                    "junk": "not an entry",
                },
            }
        )
    )

    assert registry.get_entry("broken") is None
    assert len(registry.load().entries) == 3

    assert registry.repair_registry() == 2

    on_disk = json.loads(registry.path.read_text())
    assert list(on_disk["entries"]) == ["fd"]
    assert reload(registry).get_entry("fd") == good


def test_corrupt_registry_restored_from_backup(registry, linux_x64):
    registry.add_entry("fd", "sharkdp/fd", "v9.0.0", linux_x64)
    registry.add_entry("rg", "BurntSushi/ripgrep", "14.1.0", linux_x64)
    assert registry.backup_path.is_file()

    registry.path.write_text("{ truncated")

    fresh = reload(registry)
    assert fresh.get_entry("fd") is not None
    assert fresh.get_entry("rg") is None
    assert json.loads(registry.path.read_text())["entries"].keys() == {"fd"}


def test_corrupt_registry_does_not_overwrite_backup(registry, linux_x64):
    registry.add_entry("fd", "sharkdp/fd", "v9.0.0", linux_x64)
    registry.add_entry("rg", "BurntSushi/ripgrep", "14.1.0", linux_x64)
    backup = registry.backup_path.read_text()

    registry.path.write_text("[]")
    reload(registry).load()

    assert registry.backup_path.read_text() == backup


def test_corrupt_registry_and_backup_reinitialise(registry, linux_x64):
    registry.add_entry("fd", "sharkdp/fd", "v9.0.0", linux_x64)
    registry.add_entry("rg", "BurntSushi/ripgrep", "14.1.0", linux_x64)
    registry.path.write_text("garbage")
    registry.backup_path.write_text("more garbage")

    fresh = reload(registry)

    assert fresh.load().entries == {}
    assert fresh.get_stats()["totalEntries"] == 0


def test_restore_from_backup(registry, linux_x64):
    assert not registry.restore_from_backup()

    registry.add_entry("fd", "sharkdp/fd", "v9.0.0", linux_x64)
    registry.add_entry("rg", "BurntSushi/ripgrep", "14.1.0", linux_x64)

    assert registry.restore_from_backup()
    assert registry.get_entry("rg") is None
    assert registry.get_entry("fd") is not None


def test_save_failure_leaves_registry_intact(registry, linux_x64, monkeypatch):
    """Test an interrupted commit raises and keeps the previous document"""
    registry.add_entry("fd", "sharkdp/fd", "v9.0.0", linux_x64)
    before = registry.path.read_text()

    def fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(fs.os, "replace", fail_replace)

    with pytest.raises(PersistenceError):
        registry.add_entry("rg", "BurntSushi/ripgrep", "14.1.0", linux_x64)

    monkeypatch.undo()
    assert registry.path.read_text() == before
    assert [p.name for p in registry.registry_root.iterdir() if p.name.endswith(".tmp")] == []
    assert reload(registry).get_entry("rg") is None


def test_save_rejects_invalid_document(registry):
    registry.load().version = 1

    with pytest.raises(PersistenceError):
        registry.save()

    assert json.loads(registry.path.read_text())["version"] == "1.0"


def test_load_never_raises_when_unwritable(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    registry = Registry(blocker / "nested")

    document = registry.load()

    assert document.entries == {}
    assert not registry.path.exists()


def test_platform_round_trip(registry):
    arm = Platform("darwin", "aarch64")
    registry.add_entry("tool", "acme/tool", "v1", arm)
    assert reload(registry).get_entry("tool").platform == arm
