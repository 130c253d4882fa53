"""Discovery and start-up of the MCP servers a flow relies on."""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import socket
import subprocess
import threading
import time
import urllib.error
import urllib.request
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from .model import Flow, Step

logger = logging.getLogger(__name__)

_MCP_USE = re.compile(r"^mcp://([^/]+)/([\w.-]+)$", re.ASCII)
_ENV_REF = "$env:"
DEFAULT_TIMEOUT = 15.0
_INITIAL_INTERVAL = 0.5
_MAX_INTERVAL = 5.0


class MCPError(Exception):
    """Raised when an MCP server is misconfigured, fails to start or is not ready."""


@dataclass
class MCPServerConfig:
    """How to start and reach one MCP server."""

    command: str = ""
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    port: int = 0
    transport: str = ""
    endpoint: str = ""


@dataclass
class MCPCommand:
    """A prepared MCP server process: executable, argument vector and environment."""

    path: str
    args: list[str]
    env: dict[str, str]
    name: str = ""
    process: subprocess.Popen[bytes] | None = field(default=None, repr=False)

    def start(self) -> subprocess.Popen[bytes]:
        """Launch the process, logging its standard error."""
        if self.process is not None:
            raise MCPError(f"MCP command {self.path!r} already started")
        if not self.path:
            raise MCPError("no command to start")
        try:
            process = subprocess.Popen(
                self.args,
                executable=self.path,
                env=self.env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            raise MCPError(str(exc)) from exc
        self.process = process
        threading.Thread(
            target=self._forward_stderr,
            args=(process,),
            name=f"mcp-stderr:{self.name or self.path}",
            daemon=True,
        ).start()
        return process

    def _forward_stderr(self, process: subprocess.Popen[bytes]) -> None:
        prefix = f"[MCP {self.name or self.path} ERR] "
        assert process.stderr is not None
        with process.stderr:
            for line in process.stderr:
                logger.error("%s%s", prefix, line.decode("utf-8", errors="replace").rstrip())


def _find_in_steps(steps: Iterable[Step], servers: set[str]) -> None:
    for step in steps:
        match = _MCP_USE.match(step.use)
        if match:
            servers.add(match.group(1))
        _find_in_steps(step.do, servers)


def find_mcp_servers_in_flow(flow: Flow) -> set[str]:
    """Names of the MCP servers used by a flow's steps and catch steps."""
    servers: set[str] = set()
    _find_in_steps(flow.steps, servers)
    _find_in_steps(flow.catch, servers)
    return servers


def new_mcp_command(info: MCPServerConfig) -> MCPCommand:
    """Prepare the process for an MCP server, resolving "$env:NAME" values."""
    env = dict(os.environ)
    for key, value in info.env.items():
        if value.startswith(_ENV_REF):
            resolved = os.environ.get(value[len(_ENV_REF):], "") if value != _ENV_REF else ""
            if resolved:
                env[key] = resolved
        else:
            env[key] = value
    path = ""
    if info.command:
        path = shutil.which(info.command) or info.command
    return MCPCommand(path=path, args=[info.command, *info.args], env=env)


def is_port_open(port: int) -> bool:
    """Whether something accepts TCP connections on a local port."""
    try:
        with socket.create_connection(("127.0.0.1", port), timeout=1.0):
            return True
    except OSError:
        return False


def _list_tools(base_url: str, request_timeout: float) -> None:
    body = json.dumps(
        {"jsonrpc": "2.0", "id": 1, "method": "tools/list", "params": {}}
    ).encode("utf-8")
    request = urllib.request.Request(
        base_url.rstrip("/") + "/mcp",
        data=body,
        headers={"Content-Type": "application/json", "Accept": "application/json"},
        method="POST",
    )
    with urllib.request.urlopen(request, timeout=request_timeout) as response:
        reply = json.loads(response.read().decode("utf-8"))
    if not isinstance(reply, dict) or "result" not in reply:
        raise MCPError(f"unexpected reply to tools/list: {reply!r}")


def wait_for_mcp(base_url: str, timeout: float) -> None:
    """Poll an MCP server until it lists its tools, backing off up to five seconds."""
    deadline = time.monotonic() + timeout
    interval = _INITIAL_INTERVAL
    while True:
        remaining = deadline - time.monotonic()
        try:
            _list_tools(base_url, max(0.1, min(_MAX_INTERVAL, remaining)))
            return
        except (OSError, ValueError, MCPError) as exc:
            error = exc
        remaining = deadline - time.monotonic()
        if remaining < 0:
            raise MCPError(
                f"timeout after {timeout}s waiting for MCP at {base_url}: {error}"
            ) from error
        time.sleep(min(interval, remaining + 0.01))
        interval = min(interval * 2, _MAX_INTERVAL)


def ensure_mcp_servers(
    flow: Flow,
    servers: Mapping[str, MCPServerConfig],
    timeout: float = DEFAULT_TIMEOUT,
) -> dict[str, subprocess.Popen[bytes]]:
    """Start every MCP server a flow uses and return the started processes."""
    started: dict[str, subprocess.Popen[bytes]] = {}
    for server in sorted(find_mcp_servers_in_flow(flow)):
        info = servers.get(server)
        if info is None:
            raise MCPError(
                f"MCP server '{server}' is not configured; "
                "please add it to 'mcpServers' in runtime config"
            )
        missing = []
        for value in info.env.values():
            if not value.startswith(_ENV_REF):
                continue
            name = value[len(_ENV_REF):]
            logger.info("MCP server %s expects env %s", server, name)
            if not (os.environ.get(name, "") if name else ""):
                missing.append(name)
        if missing:
            raise MCPError(
                f"environment variable(s) [{' '.join(missing)}] required for MCP server "
                f"{server} but not set. Check your .env or shell environment."
            )
        if not info.command:
            raise MCPError(
                f"MCP server '{server}' config is missing 'command' "
                "(stdio only supported; HTTP fallback is disabled)"
            )
        logger.info("Spawning MCP server %s: %s %s", server, info.command, info.args)
        command = new_mcp_command(info)
        command.name = server
        try:
            started[server] = command.start()
        except MCPError as exc:
            logger.error("Failed to start MCP server %s: %s", server, exc)
            raise MCPError(f"failed to start MCP server {server}: {exc}") from exc
        logger.debug("MCP server %s started", server)
        if info.endpoint:
            try:
                wait_for_mcp(info.endpoint, timeout)
            except MCPError as exc:
                raise MCPError(f"MCP server '{server}' did not become ready: {exc}") from exc
    return started