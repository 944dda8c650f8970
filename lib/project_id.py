from __future__ import annotations

import hashlib
import os
import posixpath
import re
from pathlib import Path
from typing import Optional


_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]+")
SLUG_MAX_LENGTH = 64


def normalize_path(value: str | Path) -> str:
    """
    Normalize a path into a stable absolute string for matching.

    - Expands "~" and absolutizes relative paths against the current directory.
    - Forces "/" separators and collapses redundant separators and dot segments.
    - Drops any trailing slash (except for the filesystem root).
    - Does not resolve symlinks; see canonicalize_path for that.
    """
    raw = str(value).strip()
    if not raw:
        return ""

    if raw.startswith("~"):
        raw = os.path.expanduser(raw)

    s = raw.replace("\\", "/")
    if not s.startswith("/"):
        s = str(Path.cwd() / s).replace("\\", "/")

    s = posixpath.normpath(s)
    # POSIX normpath keeps a leading "//"; treat it as a single root.
    if s.startswith("//"):
        s = "/" + s.lstrip("/")
    if len(s) > 1:
        s = s.rstrip("/")
    return s


def real_path(value: str | Path) -> Optional[str]:
    """Symlink-resolved normalized path, or None when the path cannot be resolved."""
    normalized = normalize_path(value)
    if not normalized:
        return None
    try:
        return normalize_path(os.path.realpath(normalized, strict=True))
    except (OSError, RuntimeError):
        return None


def canonicalize_path(value: str | Path) -> str:
    """Resolve symlinks when possible; keep the normalized form otherwise."""
    return real_path(value) or normalize_path(value)


def compute_project_id(canonical_path: str | Path) -> str:
    """
    Stable project id derived from the canonical absolute path.

    Re-registering the same directory always yields the same id; no external
    processes are consulted.
    """
    norm = normalize_path(canonical_path)
    return hashlib.sha256(norm.encode("utf-8")).hexdigest()[:16]


def slugify(value: str, fallback: str = "worktree") -> str:
    slug = _SLUG_STRIP_RE.sub("-", (value or "").lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH] or fallback


def is_within(child: str, parent: str) -> bool:
    """True when normalized ``child`` equals ``parent`` or lies below it."""
    if not child or not parent:
        return False
    if child == parent:
        return True
    prefix = parent if parent.endswith("/") else parent + "/"
    return child.startswith(prefix)
