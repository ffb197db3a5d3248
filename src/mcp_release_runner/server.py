"""MCP server implementation."""

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.server.models import InitializationOptions
from mcp.server import stdio

from mcp_release_runner import __version__
from mcp_release_runner.config import ConfigManager
from mcp_release_runner.errors import ReleaseRunnerError, log_error
from mcp_release_runner.runner import ReleaseRunner
from mcp_release_runner.logging import configure_logging, get_logger

logger = get_logger("server")

SERVER_NAME = "mcp-release-runner"

_REPO_PROPERTY = {
    "type": "string",
    "description": "GitHub repository (owner/repo) or a previously installed binary name",
}
_VERSION_PROPERTY = {
    "type": "string",
    "description": "Release tag to use instead of the latest release",
}
_UPDATE_PROPERTY = {
    "type": "boolean",
    "description": "Ignore the cache and fetch the release again",
}

tools = [
    types.Tool(
        name="release_run",
        description="Resolve a GitHub release binary for this platform and run it, capturing its output",
        inputSchema={
            "type": "object",
            "properties": {
                "repo": _REPO_PROPERTY,
                "args": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Arguments passed to the binary",
                },
                "version": _VERSION_PROPERTY,
                "update": _UPDATE_PROPERTY,
            },
            "required": ["repo"],
        },
    ),
    types.Tool(
        name="release_resolve",
        description="Download and cache a GitHub release binary without running it",
        inputSchema={
            "type": "object",
            "properties": {
                "repo": _REPO_PROPERTY,
                "version": _VERSION_PROPERTY,
                "update": _UPDATE_PROPERTY,
            },
            "required": ["repo"],
        },
    ),
    types.Tool(
        name="release_cache_list",
        description="List cached repositories and versions",
        inputSchema={"type": "object", "properties": {}},
    ),
    types.Tool(
        name="release_cache_clean",
        description="Remove every cached binary",
        inputSchema={
            "type": "object",
            "properties": {
                "dry_run": {
                    "type": "boolean",
                    "description": "Only report what would be removed",
                }
            },
        },
    ),
    types.Tool(
        name="release_registry_list",
        description="List installed binaries by short name",
        inputSchema={"type": "object", "properties": {}},
    ),
    types.Tool(
        name="release_registry_repair",
        description="Drop malformed registry entries",
        inputSchema={"type": "object", "properties": {}},
    ),
    types.Tool(
        name="release_config_show",
        description="Show the effective configuration and storage paths",
        inputSchema={"type": "object", "properties": {}},
    ),
]


def _result(payload: Dict[str, Any]) -> List[types.TextContent]:
    return [types.TextContent(text=json.dumps(payload, default=str), type="text")]


def _ok(data: Any) -> List[types.TextContent]:
    return _result({"success": True, "data": data})


async def _dispatch(
    name: str,
    arguments: Dict[str, Any],
    runner: ReleaseRunner,
    config_path: Optional[Path],
) -> Optional[List[types.TextContent]]:
    if name == "release_run":
        resolved = await runner.resolve(
            arguments["repo"],
            version=arguments.get("version"),
            update=bool(arguments.get("update", False)),
        )
        # stdout carries the protocol, so output is always captured
        code, stdout, stderr = await runner.executor.execute_with_output(
            resolved.path, [str(a) for a in arguments.get("args", [])]
        )
        return _ok(
            {**resolved.to_dict(), "exitCode": code, "stdout": stdout, "stderr": stderr}
        )

    elif name == "release_resolve":
        resolved = await runner.resolve(
            arguments["repo"],
            version=arguments.get("version"),
            update=bool(arguments.get("update", False)),
        )
        return _ok(resolved.to_dict())

    elif name == "release_cache_list":
        cached = runner.cache.list_cached()
        return _ok(
            {
                "repositories": [{"repo": c.repo, "versions": c.versions} for c in cached],
                "totalSize": runner.cache.get_cache_size(),
            }
        )

    elif name == "release_cache_clean":
        return _ok(runner.clean_cache(dry_run=bool(arguments.get("dry_run", False))))

    elif name == "release_registry_list":
        return _ok(
            {
                "entries": [e.to_dict() for e in runner.registry.list_entries()],
                "stats": runner.registry.get_stats(),
            }
        )

    elif name == "release_registry_repair":
        return _ok({"removed": runner.registry.repair_registry()})

    elif name == "release_config_show":
        return _ok(
            {
                "config": runner.config.to_dict(),
                "configPath": str(config_path) if config_path else None,
                "cacheDir": str(runner.cache.cache_root),
                "registryPath": str(runner.registry.path),
                "platform": runner.platform.key,
            }
        )

    return None


async def handle_tool_call(
    name: str,
    arguments: Optional[Dict[str, Any]],
    runner: ReleaseRunner,
    config_path: Optional[Path] = None,
) -> List[types.TextContent]:
    """Run one tool and wrap the outcome as a JSON text result."""
    arguments = arguments or {}
    logger.debug("tool_called", tool=name, arguments=arguments)

    try:
        result = await _dispatch(name, arguments, runner, config_path)
        if result is None:
            return _result({"success": False, "error": f"Unknown tool: {name}"})
        return result

    except ReleaseRunnerError as e:
        log_error(e, {"tool": name}, logger)
        return _result(
            {"success": False, "error": str(e), "code": e.code, "details": e.details}
        )
    except KeyError as e:
        return _result(
            {"success": False, "error": f"Missing required argument: {e.args[0]}"}
        )
    except ValueError as e:
        return _result({"success": False, "error": str(e)})
    except Exception as e:
        logger.exception("tool_invocation_failed", tool=name)
        return _result({"success": False, "error": str(e)})


def init_server(runner: ReleaseRunner, config_path: Optional[Path] = None) -> Server:
    logger.info("tools_registered", tools=[t.name for t in tools])

    server = Server(SERVER_NAME)

    @server.list_tools()
    async def list_tools() -> List[types.Tool]:
        return tools

    @server.call_tool()
    async def call_tool(name: str, arguments: Dict[str, Any]) -> List[types.TextContent]:
        return await handle_tool_call(name, arguments, runner, config_path)

    return server


async def serve() -> None:
    manager = ConfigManager()
    config = manager.get_config()
    configure_logging("DEBUG" if config.behavior.verbose else "INFO")
    logger.info("server_starting", version=__version__)

    runner = ReleaseRunner(config)
    server = init_server(runner, manager.config_path)
    async with stdio.stdio_server() as (read_stream, write_stream):
        init_options = InitializationOptions(
            server_name=SERVER_NAME,
            server_version=__version__,
            capabilities=types.ServerCapabilities(
                tools=types.ToolsCapability(listChanged=False),
                logging=types.LoggingCapability(),
            ),
        )
        await server.run(read_stream, write_stream, init_options)


def handle_shutdown(signum, frame):
    logger.info("server_shutdown", signal=signum)
    sys.exit(0)


def setup_handlers() -> None:
    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)


def main() -> None:
    configure_logging()
    setup_handlers()
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")
    except Exception:
        logger.exception("server_fatal_error")
        sys.exit(1)
