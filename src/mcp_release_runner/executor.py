"""Process execution for resolved binaries."""
import asyncio
import os
import signal
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from mcp_release_runner.errors import BinaryExecutionError
from mcp_release_runner.utils.fs import EXECUTE_BITS, make_executable
from mcp_release_runner.logging import get_logger

logger = get_logger(__name__)

VERSION_FLAGS = ("--version", "-V", "-v", "version")
FORWARDED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _merged_env(env: Optional[Dict[str, str]]) -> Dict[str, str]:
    return {**os.environ, **(env or {})}


async def _spawn(
    binary: Path,
    args: Sequence[str],
    cwd: Optional[Path],
    env: Optional[Dict[str, str]],
    capture: bool,
) -> asyncio.subprocess.Process:
    pipe = asyncio.subprocess.PIPE if capture else None
    try:
        return await asyncio.create_subprocess_exec(
            str(binary),
            *args,
            stdout=pipe,
            stderr=pipe,
            cwd=str(cwd) if cwd else None,
            env=_merged_env(env),
        )
    except FileNotFoundError as e:
        raise BinaryExecutionError(
            f"Binary not found or not executable: {binary}", str(binary), e.errno
        ) from e
    except PermissionError as e:
        raise BinaryExecutionError(
            f"Permission denied executing binary: {binary}", str(binary), e.errno
        ) from e
    except OSError as e:
        raise BinaryExecutionError(
            f"Failed to execute binary: {e}", str(binary), e.errno
        ) from e


class BinaryExecutor:
    """Runs binaries as child processes."""

    async def execute(
        self,
        binary: Path,
        args: Sequence[str] = (),
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> int:
        """Run ``binary`` with inherited stdio and return its exit code.

        SIGINT and SIGTERM received while the child runs are forwarded to it.
        """
        process = await _spawn(binary, args, cwd, env, capture=False)
        logger.info("binary_started", binary=str(binary), pid=process.pid, args=list(args))

        loop = asyncio.get_running_loop()
        installed: List[signal.Signals] = []
        for sig in FORWARDED_SIGNALS:
            try:
                loop.add_signal_handler(sig, process.send_signal, sig)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                break  # no loop signal support on this platform

        try:
            code = await process.wait()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

        logger.info("binary_exited", binary=str(binary), code=code)
        return code

    async def execute_with_output(
        self,
        binary: Path,
        args: Sequence[str] = (),
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, str, str]:
        """Run ``binary`` and capture its output as (code, stdout, stderr)."""
        process = await _spawn(binary, args, cwd, env, capture=True)
        stdout, stderr = await process.communicate()
        return (
            process.returncode,
            stdout.decode(errors="replace").strip(),
            stderr.decode(errors="replace").strip(),
        )

    def ensure_executable(self, path: Path) -> None:
        if os.name == "nt":
            return
        try:
            if not path.stat().st_mode & EXECUTE_BITS:
                make_executable(path)
        except OSError as e:
            raise BinaryExecutionError(
                f"Failed to set execute permissions: {e}", str(path), e.errno
            ) from e

    async def get_binary_version(self, path: Path) -> Optional[str]:
        """Try common version flags and return the first version-like line."""
        for flag in VERSION_FLAGS:
            try:
                code, stdout, stderr = await self.execute_with_output(path, [flag])
            except BinaryExecutionError:
                return None
            if code != 0:
                continue
            for line in (stdout or stderr).splitlines():
                line = line.strip()
                if line and any(c.isdigit() for c in line):
                    return line
        return None
