"""
Project registry: registered repositories, their settings and worktree metadata.

Persisted as one JSON document (``{"projects": [...]}``) that is rewritten
whole whenever something changed. The file is read lazily on first access; a
file that cannot be parsed is reported as a RegistryError and never
overwritten.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional

from opshub_config import OpsHubSettings
from opshub_errors import NotFoundError, RegistryError, ValidationError
from project_id import canonicalize_path, compute_project_id, normalize_path, slugify

logger = logging.getLogger("opshub.registry")

DEFAULT_WORKTREE_ID = "default"

DEFAULT_PROMPT_LIMIT = 8000
MIN_PROMPT_LIMIT = 1000
MAX_PROMPT_LIMIT = 20000


@dataclass
class WorktreeMetadata:
    id: str
    path: str
    title: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "path": self.path, "title": self.title}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorktreeMetadata":
        return cls(
            id=str(data.get("id") or ""),
            path=str(data.get("path") or ""),
            title=str(data.get("title") or ""),
        )


def clamp_prompt_limit(value: Any) -> int:
    try:
        limit = int(value)
    except (TypeError, ValueError):
        limit = DEFAULT_PROMPT_LIMIT
    return min(MAX_PROMPT_LIMIT, max(MIN_PROMPT_LIMIT, limit))


@dataclass
class CodexSettings:
    auto_prompt: bool = True
    prompt_char_limit: int = DEFAULT_PROMPT_LIMIT

    def __post_init__(self) -> None:
        self.auto_prompt = bool(self.auto_prompt)
        self.prompt_char_limit = clamp_prompt_limit(self.prompt_char_limit)


@dataclass
class ProjectSettings:
    codex: CodexSettings = field(default_factory=CodexSettings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "codex": {
                "autoPrompt": self.codex.auto_prompt,
                "promptCharLimit": self.codex.prompt_char_limit,
            }
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ProjectSettings":
        codex = (data or {}).get("codex") or {}
        auto_prompt = codex.get("autoPrompt")
        return cls(
            codex=CodexSettings(
                auto_prompt=True if auto_prompt is None else auto_prompt,
                prompt_char_limit=codex.get("promptCharLimit", DEFAULT_PROMPT_LIMIT),
            )
        )


@dataclass
class Project:
    id: str
    name: str
    path: str
    last_accessed: int  # epoch milliseconds
    worktrees: List[WorktreeMetadata] = field(default_factory=list)
    settings: ProjectSettings = field(default_factory=ProjectSettings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "lastAccessed": self.last_accessed,
            "worktrees": [w.to_dict() for w in self.worktrees],
            "settings": self.settings.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Project":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            path=str(data["path"]),
            last_accessed=int(data.get("lastAccessed") or 0),
            worktrees=[WorktreeMetadata.from_dict(w) for w in data.get("worktrees") or [] if isinstance(w, Mapping)],
            settings=ProjectSettings.from_dict(data.get("settings")),
        )


def _looks_sluggy(title: str, *, metadata: Optional[WorktreeMetadata] = None) -> bool:
    """Heuristic for machine-derived titles (branch names, paths, ids)."""
    if not title:
        return True
    if title == slugify(title, fallback=""):
        return True
    if "/" in title or "_" in title:
        return True
    if metadata is not None:
        if title in (metadata.id, metadata.path, os.path.basename(metadata.path)):
            return True
    return False


class ProjectRegistry:
    """Registered projects keyed by id; the only writer of the projects file."""

    def __init__(self, projects_file: Optional[Path | str] = None, *, clock: Callable[[], float] = time.time):
        if projects_file is None:
            self.projects_file = OpsHubSettings.from_env().projects_file
        else:
            self.projects_file = Path(projects_file)
        self._clock = clock
        self._lock = Lock()
        self._projects: Dict[str, Project] = {}
        self._loaded = False
        self._dirty = False

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # -- persistence ----------------------------------------------------

    def _load(self) -> None:
        if self._loaded:
            return

        with self._lock:
            if self._loaded:
                return

            projects: Dict[str, Project] = {}
            if self.projects_file.exists():
                try:
                    with open(self.projects_file, "r", encoding="utf-8") as f:
                        data = json.load(f)
                    entries = (data.get("projects") or []) if isinstance(data, dict) else None
                    if entries is None:
                        raise ValueError("top-level value is not an object")
                    for entry in entries:
                        project = Project.from_dict(entry)
                        if not os.path.isdir(project.path):
                            logger.warning("Skipping missing project path: %s", project.path)
                            continue
                        self._ensure_default_worktree(project)
                        projects[project.id] = project
                except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
                    raise RegistryError(f"Failed to load projects from {self.projects_file}: {e}") from e
                logger.info("Loaded %d projects", len(projects))
            else:
                logger.info("No existing projects file found")

            self._projects = projects
            self._loaded = True

    def save(self) -> None:
        """Rewrite the projects file if anything changed since the last save."""
        if not self._loaded or not self._dirty:
            return
        self.projects_file.parent.mkdir(parents=True, exist_ok=True)
        data = {"projects": [p.to_dict() for p in self._projects.values()]}
        with open(self.projects_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        self.projects_file.chmod(0o600)
        self._dirty = False

    def mark_dirty(self) -> None:
        self._dirty = True

    def shutdown(self) -> None:
        logger.info("Shutting down project registry")
        self.save()

    # -- invariants -----------------------------------------------------

    def _ensure_default_worktree(self, project: Project) -> None:
        project.path = canonicalize_path(project.path)
        default = next((w for w in project.worktrees if w.id == DEFAULT_WORKTREE_ID), None)
        if default is None:
            project.worktrees.insert(0, WorktreeMetadata(DEFAULT_WORKTREE_ID, project.path, DEFAULT_WORKTREE_ID))
        for worktree in project.worktrees:
            if worktree.id == DEFAULT_WORKTREE_ID:
                worktree.path = project.path
                worktree.title = DEFAULT_WORKTREE_ID
            else:
                worktree.path = canonicalize_path(worktree.path or project.path)
                worktree.title = worktree.title or worktree.id

    def _generate_worktree_id(self, project: Project, title: str) -> str:
        base = slugify(title)
        reserved = {w.id for w in project.worktrees}
        reserved.add(DEFAULT_WORKTREE_ID)
        if base not in reserved:
            return base
        counter = 2
        while f"{base}-{counter}" in reserved:
            counter += 1
        return f"{base}-{counter}"

    # -- projects -------------------------------------------------------

    def add_project(self, path: str, name: Optional[str] = None) -> Project:
        """Register ``path``; re-registering the same directory returns the same project."""
        self._load()
        if not path or not os.path.isabs(os.path.expanduser(path)):
            raise ValidationError(f'Project path must be absolute: received "{path}"')
        normalized = normalize_path(path)
        if not os.path.exists(normalized):
            raise ValidationError(f"Project path does not exist: {normalized}")
        if not os.path.isdir(normalized):
            raise ValidationError(f"Project path is not a directory: {normalized}")

        canonical = canonicalize_path(normalized)
        project_id = compute_project_id(canonical)
        incoming_name = (name or "").strip()

        existing = self._projects.get(project_id)
        if existing is not None:
            if existing.path != canonical or (incoming_name and existing.name != incoming_name):
                existing.path = canonical
                existing.name = incoming_name or existing.name
                self._ensure_default_worktree(existing)
            existing.last_accessed = self._now_ms()
            self.mark_dirty()
            self.save()
            return existing

        project = Project(
            id=project_id,
            name=incoming_name or os.path.basename(canonical) or "Unknown Project",
            path=canonical,
            last_accessed=self._now_ms(),
        )
        self._ensure_default_worktree(project)
        self._projects[project_id] = project
        self.mark_dirty()
        self.save()
        logger.info("Added project: %s (%s)", project.name, project_id)
        return project

    def get_project(self, project_id: str) -> Project:
        self._load()
        project = self._projects.get(project_id)
        if project is None:
            raise NotFoundError(f"Project {project_id} not found")
        return project

    def list_projects(self) -> List[Project]:
        self._load()
        return sorted(self._projects.values(), key=lambda p: p.last_accessed, reverse=True)

    def update_project(self, project_id: str, name: str) -> Project:
        project = self.get_project(project_id)
        name = (name or "").strip()
        if not name:
            raise ValidationError("Project name is required")
        if project.name != name:
            project.name = name
            self.mark_dirty()
            self.save()
        return project

    def remove_project(self, project_id: str) -> bool:
        """Forget a project. The directory on disk is left untouched."""
        self._load()
        project = self._projects.pop(project_id, None)
        if project is None:
            return False
        self.mark_dirty()
        self.save()
        logger.info("Removed project: %s (%s)", project.name, project_id)
        return True

    # -- settings -------------------------------------------------------

    def get_settings(self, project_id: str) -> ProjectSettings:
        return self.get_project(project_id).settings

    def update_settings(self, project_id: str, partial: Mapping[str, Any]) -> ProjectSettings:
        """Merge ``{"codex": {"autoPrompt"?, "promptCharLimit"?}}`` into the current settings."""
        project = self.get_project(project_id)
        codex = partial.get("codex") or {}
        current = project.settings.codex
        project.settings = ProjectSettings(
            codex=CodexSettings(
                auto_prompt=codex["autoPrompt"] if codex.get("autoPrompt") is not None else current.auto_prompt,
                prompt_char_limit=(
                    codex["promptCharLimit"]
                    if codex.get("promptCharLimit") is not None
                    else current.prompt_char_limit
                ),
            )
        )
        self.mark_dirty()
        self.save()
        return project.settings

    # -- worktree metadata ----------------------------------------------

    def get_worktrees(self, project_id: str) -> List[WorktreeMetadata]:
        project = self.get_project(project_id)
        self._ensure_default_worktree(project)
        return list(project.worktrees)

    def find_worktree(self, project_id: str, worktree_id: str) -> Optional[WorktreeMetadata]:
        return next((w for w in self.get_worktrees(project_id) if w.id == worktree_id), None)

    def ensure_worktree_metadata(
        self, project_id: str, worktree_path: str, title: Optional[str] = None
    ) -> WorktreeMetadata:
        """
        Find the metadata record for ``worktree_path`` (by canonical path) or create one.

        An existing title is only replaced when it looks machine-derived and
        the incoming one does not, so a user-chosen name survives reconciles.
        """
        project = self.get_project(project_id)
        self._ensure_default_worktree(project)
        canonical = canonicalize_path(worktree_path)

        existing = next((w for w in project.worktrees if canonicalize_path(w.path) == canonical), None)
        if existing is not None:
            if existing.path != canonical:
                existing.path = canonical
                self.mark_dirty()
            incoming = (title or "").strip()
            if incoming and existing.id != DEFAULT_WORKTREE_ID and existing.title != incoming:
                current = (existing.title or "").strip()
                if not current or (
                    _looks_sluggy(current, metadata=existing) and not _looks_sluggy(incoming)
                ):
                    existing.title = incoming
                    self.mark_dirty()
            return existing

        worktree_title = (title or "").strip() or os.path.basename(canonical) or "worktree"
        metadata = WorktreeMetadata(
            id=self._generate_worktree_id(project, worktree_title),
            path=canonical,
            title=worktree_title,
        )
        project.worktrees.append(metadata)
        self.mark_dirty()
        return metadata

    def update_worktree_title(self, project_id: str, worktree_id: str, title: str) -> WorktreeMetadata:
        project = self.get_project(project_id)
        self._ensure_default_worktree(project)
        if worktree_id == DEFAULT_WORKTREE_ID:
            raise ValidationError("The default worktree cannot be renamed")
        title = (title or "").strip()
        if not title:
            raise ValidationError("Worktree title is required")
        metadata = next((w for w in project.worktrees if w.id == worktree_id), None)
        if metadata is None:
            raise NotFoundError(f"Worktree {worktree_id} not found for project {project_id}")
        if metadata.title != title:
            metadata.title = title
            self.mark_dirty()
        return metadata

    def remove_worktree_metadata(self, project_id: str, worktree_id: str) -> bool:
        project = self.get_project(project_id)
        self._ensure_default_worktree(project)
        if worktree_id == DEFAULT_WORKTREE_ID:
            raise ValidationError("Cannot remove default worktree")
        before = len(project.worktrees)
        project.worktrees = [w for w in project.worktrees if w.id != worktree_id]
        if len(project.worktrees) != before:
            self.mark_dirty()
            return True
        return False
