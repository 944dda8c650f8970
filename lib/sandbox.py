"""
Working-directory sandbox.

Anything the hub spawns must run inside the home directory or the system temp
directory, compared after symlink resolution so a link cannot escape.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable

from opshub_errors import SandboxError, ValidationError
from project_id import canonicalize_path, is_within, normalize_path, real_path


def sandbox_root_paths(roots: Iterable[str | Path]) -> list[str]:
    """Normalized roots plus their real paths (``/tmp`` vs ``/private/tmp``)."""
    out: list[str] = []
    for root in roots:
        for candidate in (normalize_path(root), canonicalize_path(root)):
            if candidate and candidate not in out:
                out.append(candidate)
    return out


def path_within_roots(path: str, roots: Iterable[str | Path]) -> bool:
    return any(is_within(path, root) for root in sandbox_root_paths(roots))


def resolve_within_sandbox(path: str | Path, roots: Iterable[str | Path]) -> str:
    """
    Return the symlink-resolved directory for ``path``.

    Raises ValidationError when the path is empty, missing or not a directory,
    and SandboxError when the resolved location is outside every root.
    """
    if not str(path or "").strip():
        raise ValidationError("Working directory is required")
    normalized = normalize_path(path)
    resolved = real_path(normalized)
    if resolved is None:
        raise ValidationError(f"Working directory does not exist: {normalized}")
    if not os.path.isdir(resolved):
        raise ValidationError(f"Working directory is not a directory: {normalized}")
    if not path_within_roots(resolved, roots):
        raise SandboxError("Working directory must be within the home or temp directory")
    return resolved
