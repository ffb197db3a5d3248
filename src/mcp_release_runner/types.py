"""Core type definitions"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

REGISTRY_SCHEMA_VERSION = "1.0"


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Platform:
    """Normalized operating system / architecture pair"""
    os: str
    arch: str

    @property
    def key(self) -> str:
        return f"{self.os}-{self.arch}"

    def to_dict(self) -> Dict[str, str]:
        return {"os": self.os, "arch": self.arch}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Platform":
        return cls(os=data["os"], arch=data["arch"])


@dataclass(frozen=True)
class Asset:
    """A downloadable file attached to a release"""
    name: str
    download_url: str
    size: int = 0
    content_type: str = ""


@dataclass(frozen=True)
class Release:
    """A tagged release and its assets"""
    tag: str
    assets: List[Asset]
    name: Optional[str] = None
    published_at: Optional[str] = None


@dataclass(frozen=True)
class DownloadProgress:
    downloaded: int
    total: int
    percentage: float
    bytes_per_second: float


@dataclass(frozen=True)
class BinaryMetadata:
    """Install-time facts about one cached binary"""
    repo: str
    version: str
    platform: Platform
    binary_path: Path
    install_date: str
    checksum: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "repo": self.repo,
            "version": self.version,
            "platform": self.platform.to_dict(),
            "binaryPath": str(self.binary_path),
            "installDate": self.install_date,
        }
        if self.checksum is not None:
            data["checksum"] = self.checksum
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BinaryMetadata":
        return cls(
            repo=data["repo"],
            version=data["version"],
            platform=Platform.from_dict(data["platform"]),
            binary_path=Path(data["binaryPath"]),
            install_date=data["installDate"],
            checksum=data.get("checksum"),
        )


@dataclass
class CacheEntry:
    """Usage tracking for a cache slot, stored beside its metadata"""
    metadata: BinaryMetadata
    last_used: str
    usage_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metadata": self.metadata.to_dict(),
            "lastUsed": self.last_used,
            "usageCount": self.usage_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            metadata=BinaryMetadata.from_dict(data["metadata"]),
            last_used=data["lastUsed"],
            usage_count=data["usageCount"],
        )


@dataclass(frozen=True)
class RegistryEntry:
    """The current known install for a short binary name"""
    repo: str
    binary_name: str
    version: str
    install_date: str
    last_used: str
    platform: Platform

    def touched(self, when: Optional[str] = None) -> "RegistryEntry":
        return replace(self, last_used=when or utc_now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repo": self.repo,
            "binaryName": self.binary_name,
            "version": self.version,
            "installDate": self.install_date,
            "lastUsed": self.last_used,
            "platform": self.platform.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegistryEntry":
        return cls(
            repo=data["repo"],
            binary_name=data["binaryName"],
            version=data["version"],
            install_date=data["installDate"],
            last_used=data["lastUsed"],
            platform=Platform.from_dict(data["platform"]),
        )


@dataclass
class RegistryDocument:
    """In-memory form of registry.json.

    Entries that failed validation on load are kept as raw values so that
    repair can count and drop them.
    """
    version: str = REGISTRY_SCHEMA_VERSION
    entries: Dict[str, Any] = field(default_factory=dict)
    last_updated: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "entries": {
                name: entry.to_dict() if isinstance(entry, RegistryEntry) else entry
                for name, entry in self.entries.items()
            },
            "lastUpdated": self.last_updated,
        }


@dataclass(frozen=True)
class ResolvedBinary:
    """Result of resolving a repository reference to a local executable"""
    repo: str
    version: str
    platform: Platform
    path: Path
    from_cache: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repo": self.repo,
            "version": self.version,
            "platform": self.platform.key,
            "path": str(self.path),
            "fromCache": self.from_cache,
        }


@dataclass(frozen=True)
class CachedRepo:
    repo: str
    versions: List[str]
