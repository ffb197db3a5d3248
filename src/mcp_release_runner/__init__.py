"""MCP Release Runner package."""

from mcp_release_runner.types import (
    Platform,
    Asset,
    Release,
    BinaryMetadata,
    CacheEntry,
    RegistryEntry,
    ResolvedBinary,
)
from mcp_release_runner.config import Config, ConfigManager, parse_size
from mcp_release_runner.runner import ReleaseRunner, choose_best_executable
from mcp_release_runner.errors import (
    ReleaseRunnerError,
    AcquisitionError,
    DownloadError,
    NoMatchingAssetError,
    NoExecutableFoundError,
    ReleaseProviderError,
    PersistenceError,
    ValidationError,
    BinaryExecutionError,
)

__version__ = "0.1.0"

__all__ = [
    # Data types
    "Platform",
    "Asset",
    "Release",
    "BinaryMetadata",
    "CacheEntry",
    "RegistryEntry",
    "ResolvedBinary",

    # Configuration
    "Config",
    "ConfigManager",
    "parse_size",

    # Resolution
    "ReleaseRunner",
    "choose_best_executable",

    # Error types
    "ReleaseRunnerError",
    "AcquisitionError",
    "DownloadError",
    "NoMatchingAssetError",
    "NoExecutableFoundError",
    "ReleaseProviderError",
    "PersistenceError",
    "ValidationError",
    "BinaryExecutionError",
]
