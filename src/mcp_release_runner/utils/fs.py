import json
import os
import shutil
import stat
import tempfile
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from mcp_release_runner.errors import PersistenceError
from mcp_release_runner.logging import get_logger

logger = get_logger(__name__)

EXECUTE_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH


def read_json(path: Path) -> Any:
    """Read and parse a JSON file. Raises OSError or ValueError."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def write_json_atomic(
    path: Path, data: Any, verify: Optional[Callable[[Any], None]] = None
) -> None:
    """Write JSON through a temp file in the same directory, then rename.

    The temp file is re-parsed (and passed to ``verify`` if given) before the
    rename, so ``path`` only ever holds a complete, well-formed document.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())

        parsed = read_json(tmp)
        if verify:
            verify(parsed)

        os.replace(tmp, path)
    except Exception as e:
        tmp.unlink(missing_ok=True)
        logger.error("atomic_write_failed", path=str(path), error=str(e))
        raise PersistenceError(f"Failed to write {path}: {e}", path=str(path)) from e

    logger.debug("atomic_write_complete", path=str(path))


def is_executable(path: Path) -> bool:
    return bool(path.stat().st_mode & EXECUTE_BITS)


def make_executable(path: Path) -> None:
    """Add read/execute permission for everyone (chmod +rx)."""
    mode = path.stat().st_mode
    path.chmod(mode | 0o755)


def walk_files(root: Path) -> Iterator[Path]:
    """Yield regular files under ``root`` depth-first, sorted by name.

    Uses an explicit stack rather than recursion. Symlinks are not followed.
    """
    stack = [root]
    while stack:
        current = stack.pop()
        if current.is_symlink():
            continue
        if current.is_dir():
            children = sorted(current.iterdir(), key=lambda p: p.name)
            stack.extend(reversed(children))
        elif current.is_file():
            yield current


def directory_size(root: Path) -> int:
    """Total size in bytes of regular files under ``root``."""
    total = 0
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as entries:
                for entry in entries:
                    if entry.is_dir(follow_symlinks=False):
                        stack.append(Path(entry.path))
                    elif entry.is_file(follow_symlinks=False):
                        total += entry.stat(follow_symlinks=False).st_size
        except FileNotFoundError:
            continue
    return total


def remove_path(path: Path) -> None:
    """Remove a file, symlink or directory tree."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()
