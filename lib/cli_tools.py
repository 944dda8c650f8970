"""
Allow-listed interactive CLI tools and their one-shot availability probe.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger("opshub.tools")

KNOWN_TOOLS = ("codex", "claude", "opencode")

TERMINAL_ENV = {"TERM": "xterm-256color", "COLORTERM": "truecolor"}


@dataclass
class CliTool:
    """One launchable tool; ``command`` and ``args`` are fixed, never caller-supplied."""
    id: str
    name: str
    command: str
    description: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    available: Optional[bool] = None
    version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "command": self.command,
            "description": self.description,
            "available": bool(self.available),
        }
        if self.version:
            data["version"] = self.version
        return data


def default_tools(overrides: Optional[Mapping[str, str]] = None) -> Dict[str, CliTool]:
    """The fixed tool table; ``overrides`` may only swap the binary for a known id."""
    overrides = overrides or {}
    tools = [
        CliTool(
            id="codex",
            name="Codex CLI",
            command="codex",
            description="OpenAI Codex assistant CLI",
        ),
        CliTool(
            id="claude",
            name="Claude Code",
            command="claude",
            description="Anthropic Claude Code interactive CLI",
        ),
        CliTool(
            id="opencode",
            name="OpenCode",
            command="opencode",
            description="OpenCode terminal UI",
        ),
    ]
    for tool in tools:
        tool.env = dict(TERMINAL_ENV)
        binary = overrides.get(tool.id)
        if binary:
            tool.command = binary
    return {tool.id: tool for tool in tools}


async def probe_tool(tool: CliTool, timeout: float) -> CliTool:
    """Run ``<command> --version`` once and record availability plus the first output line."""
    executable = shutil.which(tool.command)
    if executable is None:
        tool.available = False
        tool.version = None
        logger.info("%s not available: %s", tool.name, tool.command)
        return tool

    try:
        process = await asyncio.create_subprocess_exec(
            executable,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        tool.available = False
        logger.info("%s not available: %s", tool.name, exc)
        return tool

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        tool.available = False
        logger.info("%s version probe timed out after %.1fs", tool.name, timeout)
        return tool

    if process.returncode != 0:
        tool.available = False
        logger.info("%s version probe exited with %s", tool.name, process.returncode)
        return tool

    lines = stdout.decode("utf-8", errors="replace").strip().splitlines()
    tool.available = True
    tool.version = lines[0].strip() if lines else None
    logger.info("Detected %s: %s", tool.name, tool.version or "unknown version")
    return tool


async def probe_tools(tools: Iterable[CliTool], timeout: float) -> None:
    await asyncio.gather(*(probe_tool(tool, timeout) for tool in tools))
