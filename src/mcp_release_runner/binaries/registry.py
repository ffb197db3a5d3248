"""Short-name registry of installed binaries.

registry.json maps a short name (the binary name, and the repository name
when it differs) to the install it currently resolves to. Every save keeps the
previous valid document in registry.json.backup, which load() falls back to
when the main file is unreadable.
"""
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp_release_runner.types import Platform, RegistryDocument, RegistryEntry, utc_now
from mcp_release_runner.errors import PersistenceError, ValidationError
from mcp_release_runner.validation import (
    REGISTRY_ENTRY_SCHEMA,
    REGISTRY_SCHEMA,
    require_valid,
    validate,
)
from mcp_release_runner.utils.fs import read_json, write_json_atomic
from mcp_release_runner.logging import get_logger

logger = get_logger(__name__)

REGISTRY_FILE = "registry.json"
BACKUP_SUFFIX = ".backup"


def _repo_short_name(repo: str) -> str:
    return repo.rsplit("/", 1)[-1]


def _to_document(data: Dict[str, Any]) -> RegistryDocument:
    entries: Dict[str, Any] = {}
    for name, raw in data["entries"].items():
        result = validate(raw, REGISTRY_ENTRY_SCHEMA)
        if result.is_valid:
            entries[name] = RegistryEntry.from_dict(raw)
        else:
            logger.warning("registry_entry_invalid", name=name, errors=result.errors)
            entries[name] = raw
    return RegistryDocument(
        version=data["version"], entries=entries, last_updated=data["lastUpdated"]
    )


class Registry:
    """Persistent name -> install mapping with backup recovery."""

    def __init__(self, registry_root: Path):
        self.registry_root = Path(registry_root)
        self.path = self.registry_root / REGISTRY_FILE
        self.backup_path = self.registry_root / (REGISTRY_FILE + BACKUP_SUFFIX)
        self._document: Optional[RegistryDocument] = None

    def _read(self, path: Path) -> RegistryDocument:
        data = read_json(path)
        require_valid(data, REGISTRY_SCHEMA)
        return _to_document(data)

    def load(self) -> RegistryDocument:
        """Return the registry document, loading it on first use.

        Never raises: an unreadable registry is replaced by its backup, or
        failing that by a fresh empty document.
        """
        if self._document is not None:
            return self._document

        try:
            self._document = self._read(self.path)
            return self._document
        except FileNotFoundError:
            logger.debug("registry_missing", path=str(self.path))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("registry_invalid", path=str(self.path), error=str(e))

        if self._recover_from_backup():
            return self._document

        self._document = RegistryDocument()
        try:
            self.save()
        except PersistenceError as e:
            logger.error("registry_init_failed", path=str(self.path), error=str(e))
        return self._document

    def _recover_from_backup(self) -> bool:
        try:
            document = self._read(self.backup_path)
        except FileNotFoundError:
            return False
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("registry_backup_invalid", path=str(self.backup_path), error=str(e))
            return False

        self._document = document
        logger.warning("registry_restored_from_backup", path=str(self.backup_path))
        try:
            self.save()
        except PersistenceError as e:
            logger.error("registry_restore_save_failed", path=str(self.path), error=str(e))
        return True

    def restore_from_backup(self) -> bool:
        """Replace the in-memory and on-disk registry with the backup."""
        return self._recover_from_backup()

    def invalidate(self) -> None:
        """Drop the memoised document so the next access re-reads disk."""
        self._document = None

    def _backup_current(self) -> None:
        if not self.path.is_file():
            return
        # Only a valid document may overwrite the last good backup
        try:
            self._read(self.path)
        except (OSError, ValueError, ValidationError):
            logger.debug("registry_backup_skipped", path=str(self.path))
            return
        try:
            shutil.copy2(self.path, self.backup_path)
        except OSError as e:
            raise PersistenceError(
                f"Failed to back up registry: {e}", path=str(self.backup_path)
            ) from e

    def save(self) -> None:
        """Commit the in-memory document. Raises PersistenceError on failure."""
        if self._document is None:
            return

        self._document.last_updated = utc_now()
        try:
            self.registry_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(
                f"Failed to create registry directory: {e}", path=str(self.registry_root)
            ) from e
        self._backup_current()
        write_json_atomic(
            self.path,
            self._document.to_dict(),
            verify=lambda data: require_valid(data, REGISTRY_SCHEMA),
        )
        logger.debug("registry_saved", path=str(self.path), entries=len(self._document.entries))

    def add_entry(
        self, name: str, repo: str, version: str, platform: Platform
    ) -> RegistryEntry:
        """Record an install under ``name`` and the repository short name."""
        document = self.load()
        now = utc_now()
        entry = RegistryEntry(
            repo=repo,
            binary_name=name,
            version=version,
            install_date=now,
            last_used=now,
            platform=platform,
        )

        document.entries[name] = entry
        alias = _repo_short_name(repo)
        if alias and alias != name:
            document.entries[alias] = entry

        self.save()
        logger.info("registry_entry_added", name=name, repo=repo, version=version)
        return entry

    def get_entry(self, name: str) -> Optional[RegistryEntry]:
        entry = self.load().entries.get(name)
        return entry if isinstance(entry, RegistryEntry) else None

    def has_entry(self, name: str) -> bool:
        return self.get_entry(name) is not None

    def remove_entry(self, name: str) -> bool:
        """Remove ``name`` and its repository alias.

        The alias is only removed while it still holds the same entry; an
        alias re-pointed at another install is left alone.
        """
        document = self.load()
        entry = document.entries.pop(name, None)
        if entry is None:
            return False

        if isinstance(entry, RegistryEntry):
            alias = _repo_short_name(entry.repo)
            if alias != name and document.entries.get(alias) == entry:
                del document.entries[alias]

        self.save()
        logger.info("registry_entry_removed", name=name)
        return True

    def update_last_used(self, name: str) -> Optional[RegistryEntry]:
        entry = self.get_entry(name)
        if entry is None:
            return None

        document = self.load()
        touched = entry.touched()
        for key, value in list(document.entries.items()):
            if value == entry:
                document.entries[key] = touched

        self.save()
        return touched

    def list_entries(self) -> List[RegistryEntry]:
        """Valid entries, with alias duplicates collapsed."""
        seen = set()
        entries = []
        for entry in self.load().entries.values():
            if not isinstance(entry, RegistryEntry):
                continue
            key = (entry.repo, entry.binary_name)
            if key not in seen:
                seen.add(key)
                entries.append(entry)
        return entries

    def find_by_repo(self, repo: str) -> List[RegistryEntry]:
        return [entry for entry in self.list_entries() if entry.repo == repo]

    def get_stats(self) -> Dict[str, Any]:
        document = self.load()
        return {
            "totalEntries": len({entry.repo for entry in self.list_entries()}),
            "lastUpdated": document.last_updated,
        }

    def repair_registry(self) -> int:
        """Drop entries that failed validation and return how many went."""
        document = self.load()
        valid = {
            name: entry
            for name, entry in document.entries.items()
            if isinstance(entry, RegistryEntry)
        }
        removed = len(document.entries) - len(valid)
        document.entries = valid
        self.save()

        logger.info("registry_repaired", removed=removed)
        return removed
