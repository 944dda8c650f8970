"""
Git plumbing for worktree management: an async command runner, the
``git worktree list --porcelain`` parser and ref-name validation.
"""

from __future__ import annotations

import asyncio
import logging
import os
import posixpath
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from opshub_errors import ExternalToolError, ValidationError
from project_id import normalize_path

logger = logging.getLogger("opshub.worktrees")

DEFAULT_GIT_TIMEOUT = 20.0
BRANCH_NAME_MAX_LENGTH = 200
_BRANCH_CHARS_RE = re.compile(r"^[A-Za-z0-9._/\-]+$")
_HUMANIZE_SPLIT_RE = re.compile(r"[/\-_]+")
_REV_SUFFIX_RE = re.compile(r"([~^][0-9]*)+")


@dataclass(frozen=True)
class GitResult:
    stdout: str
    stderr: str
    returncode: int


class GitRunner:
    """Run ``git`` with an argument list (never a shell string)."""

    def __init__(self, git: str = "git", *, timeout: float = DEFAULT_GIT_TIMEOUT) -> None:
        self.git = git
        self.timeout = timeout

    async def run(self, *args: str, cwd: str, timeout: Optional[float] = None, check: bool = True) -> GitResult:
        command = [self.git, *args]
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExternalToolError(f"Failed to run git: {exc}", command=command) from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout or self.timeout)
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            raise ExternalToolError(
                f"git {' '.join(args[:2])} timed out after {timeout or self.timeout:.0f}s", command=command
            )

        result = GitResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            returncode=process.returncode if process.returncode is not None else -1,
        )
        if check and result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
            raise ExternalToolError(f"git {args[0] if args else ''} failed: {detail}", command=command, stderr=result.stderr)
        return result

    async def succeeds(self, *args: str, cwd: str) -> bool:
        result = await self.run(*args, cwd=cwd, check=False)
        return result.returncode == 0


@dataclass
class ParsedWorktree:
    path: str
    relative_path: str
    branch: Optional[str] = None
    head: Optional[str] = None
    is_primary: bool = False
    is_detached: bool = False
    is_locked: bool = False
    lock_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "path": self.path,
            "relativePath": self.relative_path,
            "isPrimary": self.is_primary,
            "isDetached": self.is_detached,
            "isLocked": self.is_locked,
        }
        if self.branch:
            data["branch"] = self.branch
        if self.head:
            data["head"] = self.head
        if self.lock_reason:
            data["lockReason"] = self.lock_reason
        return data


def has_prunable(output: str) -> bool:
    return any(line.strip().startswith("prunable") for line in output.splitlines())


def parse_worktree_porcelain(output: str, project_path: str) -> List[ParsedWorktree]:
    """
    Parse ``git worktree list --porcelain``.

    Blocks marked ``prunable`` are dropped entirely. ``is_primary`` is a raw
    string comparison here; callers that care about symlinks recompute it.
    """
    project = normalize_path(project_path)
    blocks: List[Dict[str, Any]] = []
    current: Optional[Dict[str, Any]] = None

    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("worktree "):
            current = {"path": normalize_path(line[len("worktree "):].strip())}
            blocks.append(current)
            continue
        if current is None:
            continue
        if line.startswith("branch "):
            ref = line[len("branch "):].strip()
            current["branch"] = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref
        elif line.startswith("HEAD "):
            current["head"] = line[len("HEAD "):].strip()
        elif line == "detached":
            current["detached"] = True
        elif line.startswith("locked"):
            current["locked"] = True
            reason = line[len("locked"):].strip()
            if reason:
                current["lock_reason"] = reason
        elif line.startswith("prunable"):
            current["prunable"] = True

    result: List[ParsedWorktree] = []
    for block in blocks:
        if block.get("prunable"):
            continue
        path = block["path"]
        relative = "" if path == project else posixpath.relpath(path, project)
        result.append(
            ParsedWorktree(
                path=path,
                relative_path=relative,
                branch=block.get("branch"),
                head=block.get("head"),
                is_primary=path == project,
                is_detached=bool(block.get("detached")),
                is_locked=bool(block.get("locked")),
                lock_reason=block.get("lock_reason"),
            )
        )
    return result


def checked_out_branches(output: str) -> set[str]:
    """Local branch names held by any worktree in a porcelain listing."""
    branches: set[str] = set()
    for line in output.splitlines():
        if line.startswith("branch "):
            ref = line[len("branch "):].strip()
            short = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref
            if short:
                branches.add(short)
    return branches


def validate_branch_name(name: Optional[str]) -> str:
    branch = (name or "").strip()
    if not branch:
        raise ValidationError("Branch name cannot be empty")
    if len(branch) > BRANCH_NAME_MAX_LENGTH:
        raise ValidationError(f"Branch name is limited to {BRANCH_NAME_MAX_LENGTH} characters")
    if branch.startswith("-"):
        raise ValidationError("Invalid branch name: must not start with '-'")
    if not _BRANCH_CHARS_RE.match(branch):
        raise ValidationError("Invalid branch name: only letters, digits, '.', '_', '-' and '/' are allowed")
    if branch.startswith("/") or branch.endswith("/"):
        raise ValidationError("Invalid branch name: must not start or end with '/'")
    if "//" in branch:
        raise ValidationError("Invalid branch name: must not contain '//'")
    if ".." in branch:
        raise ValidationError("Invalid branch name: must not contain '..'")
    if branch.endswith(".lock") or branch.endswith("."):
        raise ValidationError("Invalid branch name: must not end with '.lock' or '.'")
    if any(part.startswith(".") for part in branch.split("/")):
        raise ValidationError("Invalid branch name: path components must not start with '.'")
    return branch


def validate_ref(ref: Optional[str], *, label: str = "Base ref") -> str:
    """Plain ref names, optionally with `~N` / `^N` ancestry suffixes (`HEAD~2`)."""
    value = (ref or "").strip()
    if not value:
        raise ValidationError(f"{label} cannot be empty")
    if value.startswith("-"):
        raise ValidationError(f"Invalid {label.lower()}: must not start with '-'")
    base = re.split(r"[~^]", value, maxsplit=1)[0]
    suffix = value[len(base):]
    if not base or not _BRANCH_CHARS_RE.match(base) or ".." in base:
        raise ValidationError(f"Invalid {label.lower()}: {value!r}")
    if suffix and not _REV_SUFFIX_RE.fullmatch(suffix):
        raise ValidationError(f"Invalid {label.lower()}: {value!r}")
    return value


def humanize_slug(value: Optional[str]) -> str:
    """``feature/login-form`` -> ``Feature Login Form``."""
    text = (value or "").strip()
    if not text:
        return ""
    parts = [part for part in _HUMANIZE_SPLIT_RE.split(text) if part]
    return " ".join(part[:1].upper() + part[1:] for part in parts)


def split_remote_ref(ref: str) -> Optional[tuple[str, str]]:
    """``origin/feature/x`` -> (``origin``, ``feature/x``); None without a slash."""
    if "/" not in ref:
        return None
    remote, _, name = ref.partition("/")
    if not remote or not name:
        return None
    return remote, name


async def list_remotes(git: GitRunner, cwd: str) -> List[str]:
    result = await git.run("remote", cwd=cwd)
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def relative_posix(path: str, start: str) -> str:
    rel = posixpath.relpath(normalize_path(path), normalize_path(start))
    return "" if rel == "." else rel


def is_symbolic_remote_head(name: str) -> bool:
    return name == "HEAD" or name.endswith("/HEAD")

