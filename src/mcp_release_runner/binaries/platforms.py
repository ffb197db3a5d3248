"""Platform detection and release asset matching."""
import platform
import re
from functools import lru_cache
from typing import Iterable, List, Optional, Sequence, Set

from mcp_release_runner.types import Asset, Platform
from mcp_release_runner.binaries.constants import (
    ARCH_NORMALIZATION,
    ARCH_PATTERNS,
    ARCH_TOKENS,
    ARCHIVE_EXTENSIONS,
    ARCHIVE_SCORE,
    ARCH_MATCH_SCORE,
    CHECKSUM_MARKERS,
    DEBUG_MARKERS,
    DEBUG_PENALTY,
    OS_MATCH_SCORE,
    OS_NORMALIZATION,
    OS_PATTERNS,
    OS_TOKENS,
    SIGNATURE_MARKERS,
    SOURCE_MARKERS,
    TAR_GZ_BONUS,
)

# Vendor fields of target triples sit between arch and OS
VENDOR_TOKENS = {"unknown", "pc"}


def normalize(host_os: str, host_arch: str) -> Platform:
    """Map native OS/architecture identifiers onto the platform taxonomy."""
    os_name = host_os.lower()
    arch = host_arch.lower()
    return Platform(
        os=OS_NORMALIZATION.get(os_name, os_name),
        arch=ARCH_NORMALIZATION.get(arch, arch),
    )


def get_current_platform() -> Platform:
    """Get current platform information."""
    return normalize(platform.system(), platform.machine())


@lru_cache(maxsize=None)
def _token_pattern(alias: str, whole: bool) -> "re.Pattern[str]":
    # Aliases must begin a token so "win" never matches inside "darwin".
    # Whole-token aliases also may not run on, so "x86" skips "x86_64".
    suffix = r"(?![a-z0-9]|_64)" if whole else ""
    return re.compile(r"(?<![a-z0-9])" + re.escape(alias) + suffix)


def _has_token(filename: str, aliases: Iterable[str], whole: bool = False) -> bool:
    return any(_token_pattern(a.lower(), whole).search(filename) for a in aliases)


def is_excluded(filename: str) -> bool:
    """True for source archives, checksum files and signatures."""
    name = filename.lower()
    if _has_token(name, SOURCE_MARKERS):
        return True
    return any(m in name for m in CHECKSUM_MARKERS + SIGNATURE_MARKERS)


def is_supported_archive(filename: str) -> bool:
    return filename.lower().endswith(ARCHIVE_EXTENSIONS)


def score_asset(asset: Asset, platform: Platform) -> int:
    """Score how well an asset filename matches a platform. 0 means unusable."""
    filename = asset.name.lower()

    if is_excluded(filename):
        return 0

    # OS match is mandatory
    if not _has_token(filename, OS_PATTERNS.get(platform.os, [platform.os])):
        return 0
    score = OS_MATCH_SCORE

    if _has_token(filename, ARCH_PATTERNS.get(platform.arch, [platform.arch]), whole=True):
        score += ARCH_MATCH_SCORE

    if filename.endswith((".tar.gz", ".zip")):
        score += ARCHIVE_SCORE
    if filename.endswith(".tar.gz"):
        score += TAR_GZ_BONUS

    if _has_token(filename, DEBUG_MARKERS):
        score -= DEBUG_PENALTY

    return score


def find_matching_asset(
    assets: Sequence[Asset], platform: Optional[Platform] = None
) -> Optional[Asset]:
    """Return the best scoring asset for ``platform``.

    Ties are broken by list order: the first asset reaching the maximum score
    wins. Returns None when no asset scores above zero.
    """
    platform = platform or get_current_platform()

    best: Optional[Asset] = None
    best_score = 0
    for asset in assets:
        score = score_asset(asset, platform)
        if score > best_score:
            best, best_score = asset, score
    return best


def _tokenize(filename: str) -> List[str]:
    tokens = re.findall(r"x86_64|[a-z0-9]+", filename.lower())
    return [t for t in tokens if t not in VENDOR_TOKENS]


def get_available_platforms(assets: Iterable[Asset]) -> Set[str]:
    """Collect normalized "os-arch" keys advertised by asset filenames."""
    platforms: Set[str] = set()

    for asset in assets:
        if is_excluded(asset.name):
            continue

        tokens = _tokenize(asset.name)
        for current, following in zip(tokens, tokens[1:]):
            if current in OS_TOKENS and following in ARCH_TOKENS:
                platforms.add(f"{OS_TOKENS[current]}-{ARCH_TOKENS[following]}")
            elif current in ARCH_TOKENS and following in OS_TOKENS:
                platforms.add(f"{OS_TOKENS[following]}-{ARCH_TOKENS[current]}")

    return platforms


def is_platform_supported(
    assets: Sequence[Asset], platform: Optional[Platform] = None
) -> bool:
    """Check if any asset matches the platform."""
    return find_matching_asset(assets, platform) is not None
