"""Platform taxonomy, asset filename markers and API constants."""

# GitHub API URL structure
GITHUB_API_BASE = "https://api.github.com"
GITHUB_REPOS_PATH = "repos"
RELEASES_PATH = "releases"
LATEST_PATH = "latest"
TAGS_PATH = "tags"
GITHUB_ACCEPT = "application/vnd.github.v3+json"

DEFAULT_USER_AGENT = "mcp-release-runner/0.1.0"

# Host identifiers -> normalized taxonomy
OS_NORMALIZATION = {
    "darwin": "darwin",
    "macos": "darwin",
    "linux": "linux",
    "windows": "windows",
    "win32": "windows",
    "cygwin": "windows",
    "freebsd": "freebsd",
}

ARCH_NORMALIZATION = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "i386": "i686",
    "i686": "i686",
    "x86": "i686",
    "ia32": "i686",
    "armv7l": "armv7",
    "armv7": "armv7",
    "arm": "armv7",
}

# Normalized taxonomy -> filename aliases seen in release assets
OS_PATTERNS = {
    "darwin": ["darwin", "apple-darwin", "macos", "osx"],
    "linux": ["linux", "linux-gnu", "linux-musl", "unknown-linux-gnu", "unknown-linux-musl"],
    "windows": ["windows", "win", "pc-windows-msvc", "pc-windows-gnu"],
}

ARCH_PATTERNS = {
    "x86_64": ["x86_64", "amd64", "x64"],
    "aarch64": ["aarch64", "arm64"],
    "i686": ["i686", "i386", "386", "x86"],
    "armv7": ["armv7", "armv7l", "armv7hf", "armhf", "arm"],
}

# Filename tokens used when listing what a release offers
OS_TOKENS = {
    "darwin": "darwin",
    "apple": "darwin",
    "macos": "darwin",
    "osx": "darwin",
    "linux": "linux",
    "windows": "windows",
    "win": "windows",
    "win64": "windows",
    "win32": "windows",
    "freebsd": "freebsd",
}

ARCH_TOKENS = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
    "i686": "i686",
    "i386": "i686",
    "386": "i686",
    "armv7": "armv7",
    "armv7l": "armv7",
    "armv7hf": "armv7",
    "armhf": "armv7",
    "arm": "armv7",
}

SOURCE_MARKERS = ("source",)
CHECKSUM_MARKERS = ("sha256", "sha512", "checksum", "md5")
SIGNATURE_MARKERS = (".sig", ".asc", "signature", ".pem")
DEBUG_MARKERS = ("debug", "dev")

ARCHIVE_EXTENSIONS = (".tar.gz", ".tgz", ".zip")

# Archives that may match a platform but cannot be unpacked
UNSUPPORTED_ARCHIVE_EXTENSIONS = (
    ".tar.xz", ".txz", ".tar.bz2", ".tbz", ".tar.zst", ".tar", ".7z", ".rar",
    ".xz", ".bz2", ".gz", ".zst", ".deb", ".rpm", ".apk", ".dmg", ".pkg", ".msi",
)

# Scoring weights
OS_MATCH_SCORE = 10
ARCH_MATCH_SCORE = 10
ARCHIVE_SCORE = 5
TAR_GZ_BONUS = 2
DEBUG_PENALTY = 5

# Files that are never the binary, whatever their mode bits say
NON_EXECUTABLE_EXTENSIONS = {
    ".md", ".txt", ".rst", ".html", ".pdf",
    ".bash", ".zsh", ".fish", ".elv", ".nu", ".ps1", ".sh",
    ".ts", ".js", ".py", ".rb", ".pl",
    ".json", ".yml", ".yaml", ".toml", ".ini", ".cfg",
    ".h", ".c", ".a", ".lib", ".so", ".dylib", ".dll",
}

# Man page sections; also the tail of dotted versions such as tool-2.0.1
MAN_PAGE_EXTENSIONS = {".1", ".2", ".3", ".4", ".5", ".6", ".7", ".8"}
MAN_PAGE_DIRS = {"man", "doc", "docs", "share"} | {f"man{n}" for n in range(1, 9)}

NON_EXECUTABLE_NAMES = (
    "license", "licence", "copying", "readme", "changelog", "changes",
    "notice", "authors", "contributing", "history",
)

WINDOWS_EXECUTABLE_EXTENSIONS = {".exe", ".bat", ".cmd"}
