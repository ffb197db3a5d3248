"""Error handling for the release runner."""
from typing import Any, Dict, List, Optional

from mcp.types import ErrorData, INVALID_PARAMS, INVALID_REQUEST, INTERNAL_ERROR

from mcp_release_runner.logging import get_logger


def log_error(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    logger: Optional[Any] = None,
) -> None:
    """Log an error with context."""
    logger = logger or get_logger(__name__)

    error_info: Dict[str, Any] = {
        "error_type": error.__class__.__name__,
        "error_message": str(error),
    }
    if context:
        error_info["context"] = context
    if isinstance(error, ReleaseRunnerError):
        error_info["code"] = error.code
        error_info["details"] = error.details

    logger.error("release_runner_error", **error_info)


class ReleaseRunnerError(Exception):
    """Base error class for the release runner."""
    def __init__(
        self,
        message: str,
        code: int = INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.details = details or {}

    def to_error_data(self) -> ErrorData:
        """Convert to ErrorData format."""
        return ErrorData(code=self.code, message=str(self), data=self.details)


class AcquisitionError(ReleaseRunnerError):
    """A binary could not be obtained for the current platform."""


class DownloadError(AcquisitionError):
    """Download failed after exhausting all retries."""
    def __init__(self, url: str, attempts: int, reason: str):
        super().__init__(
            f"Failed to download {url} after {attempts} attempt(s): {reason}",
            details={"url": url, "attempts": attempts, "reason": reason},
        )


class UnsupportedArchiveError(AcquisitionError):
    def __init__(self, path: str):
        super().__init__(
            f"Unsupported archive format: {path}", details={"path": path}
        )


class ArchiveExtractionError(AcquisitionError):
    """An archive is corrupt or contains unsafe members."""
    def __init__(self, path: str, reason: str):
        super().__init__(
            f"Failed to extract {path}: {reason}",
            details={"path": path, "reason": reason},
        )


class NoMatchingAssetError(AcquisitionError):
    """No release asset matches the requested platform."""
    def __init__(self, repo: str, platform_key: str, available: List[str]):
        listing = ", ".join(available) if available else "none detected"
        super().__init__(
            f"No compatible binary found for {platform_key} in {repo}\n"
            f"Available platforms: {listing}",
            code=INVALID_REQUEST,
            details={"repo": repo, "platform": platform_key, "available": available},
        )


class NoExecutableFoundError(AcquisitionError):
    def __init__(self, asset_name: str):
        super().__init__(
            f"No executable files found in {asset_name}",
            details={"asset": asset_name},
        )


class ReleaseProviderError(AcquisitionError):
    """Release metadata could not be fetched."""


class ReleaseNotFoundError(ReleaseProviderError):
    def __init__(self, repo: str, tag: Optional[str] = None):
        message = (
            f"Release {tag} not found in {repo}"
            if tag
            else f"Repository {repo} not found or has no releases"
        )
        super().__init__(
            message, code=INVALID_PARAMS, details={"repo": repo, "tag": tag}
        )


class RateLimitError(ReleaseProviderError):
    def __init__(self, reset_at: Optional[str] = None):
        message = "GitHub API rate limit exceeded"
        if reset_at:
            message += f". Resets at {reset_at}"
        super().__init__(message, details={"reset_at": reset_at})


class PersistenceError(ReleaseRunnerError):
    """A cache slot or registry write could not be committed."""
    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, details={"path": path} if path else None)


class ValidationError(ReleaseRunnerError):
    """A metadata or registry document is malformed."""
    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(
            message, code=INVALID_PARAMS, details={"errors": errors or []}
        )
        self.errors = errors or []


class BinaryExecutionError(ReleaseRunnerError):
    """The resolved binary could not be started."""
    def __init__(self, message: str, binary: str, errno: Optional[int] = None):
        super().__init__(
            message, code=INVALID_REQUEST, details={"binary": binary, "errno": errno}
        )
        self.errno = errno
