"""
Worktree reconciler: merges ``git worktree list`` with persisted metadata.

Every listing is recomputed from git. Along the way it heals drift between
git, the filesystem and the registry: stale git entries are pruned, missing
metadata is synthesized and metadata for worktrees that no longer exist is
dropped. The ``default`` entry is never touched by cleanup.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from git_worktrees import (
    GitRunner,
    ParsedWorktree,
    checked_out_branches,
    has_prunable,
    humanize_slug,
    is_symbolic_remote_head,
    list_remotes,
    parse_worktree_porcelain,
    relative_posix,
    split_remote_ref,
    validate_branch_name,
    validate_ref,
)
from opshub_config import OpsHubSettings
from opshub_errors import ExternalToolError, NotFoundError, SandboxError, ValidationError
from project_id import normalize_path, real_path, slugify
from project_registry import DEFAULT_WORKTREE_ID, ProjectRegistry, WorktreeMetadata
from sandbox import path_within_roots

logger = logging.getLogger("opshub.worktrees")

_WORKTREES_PREFIX_RE = re.compile(r"^worktrees/+")


def creation_title(requested: Optional[str], branch: Optional[str], worktree_path: str) -> str:
    """
    Title for a newly created worktree.

    A requested title that looks like a slug (has ``/``, ``_`` or ``-``, or is
    all lower case) is replaced by the humanized branch name, then the
    humanized directory name.
    """
    title = (requested or "").strip()
    looks_sluggy = not title or any(ch in title for ch in "/_-") or title == title.lower()
    if not looks_sluggy:
        return title
    return humanize_slug(branch) or humanize_slug(os.path.basename(worktree_path)) or "Worktree"


@dataclass
class _Candidate:
    meta: WorktreeMetadata
    normalized: str
    real: Optional[str]

    @classmethod
    def of(cls, meta: WorktreeMetadata) -> "_Candidate":
        return cls(meta=meta, normalized=normalize_path(meta.path), real=real_path(meta.path))


def _match(candidates: List[_Candidate], entry_path: str, entry_real: Optional[str]) -> Optional[WorktreeMetadata]:
    for item in candidates:
        if item.normalized == entry_path:
            return item.meta
    if entry_real:
        for item in candidates:
            if item.normalized == entry_real or item.real == entry_real:
                return item.meta
    for item in candidates:
        if item.real and item.real == entry_path:
            return item.meta
    return None


class WorktreeReconciler:
    def __init__(
        self,
        registry: ProjectRegistry,
        git: Optional[GitRunner] = None,
        settings: Optional[OpsHubSettings] = None,
    ) -> None:
        self.registry = registry
        self.settings = settings
        self.git = git or GitRunner(timeout=settings.git_timeout if settings else 20.0)
        self.worktrees_base = self._resolve_worktrees_base()

    def _resolve_worktrees_base(self) -> Optional[str]:
        if self.settings is None or self.settings.worktrees_dir is None:
            return None
        base = normalize_path(self.settings.worktrees_dir)
        if not path_within_roots(base, self.settings.sandbox_roots):
            logger.warning("Ignoring worktrees dir outside the home/temp directories: %s", base)
            return None
        return base

    def resolve_worktree_path(self, project_path: str, worktree_path: str) -> str:
        if os.path.isabs(worktree_path):
            return normalize_path(worktree_path)
        if self.worktrees_base:
            project_folder = slugify(os.path.basename(project_path), fallback="project")
            relative = _WORKTREES_PREFIX_RE.sub("", worktree_path.replace("\\", "/"))
            return normalize_path(os.path.join(self.worktrees_base, project_folder, relative))
        return normalize_path(os.path.join(project_path, worktree_path))

    async def _porcelain(self, project_path: str) -> str:
        result = await self.git.run("worktree", "list", "--porcelain", cwd=project_path)
        return result.stdout

    # -- listing --------------------------------------------------------

    async def list_worktrees(self, project_id: str) -> List[Dict[str, Any]]:
        project = self.registry.get_project(project_id)

        output = await self._porcelain(project.path)
        if has_prunable(output):
            try:
                await self.git.run("worktree", "prune", cwd=project.path)
                output = await self._porcelain(project.path)
                logger.info("Pruned stale worktrees for project %s", project_id)
            except ExternalToolError as exc:
                logger.warning("git worktree prune failed: %s", exc)

        entries = [entry for entry in parse_worktree_porcelain(output, project.path) if os.path.isdir(entry.path)]

        metadata_list = self.registry.get_worktrees(project_id)
        candidates = [_Candidate.of(meta) for meta in metadata_list]
        project_real = real_path(project.path) or normalize_path(project.path)

        responses: List[Dict[str, Any]] = []
        present: set[str] = set()
        for entry in entries:
            entry_real = real_path(entry.path)
            present.add(entry.path)
            if entry_real:
                present.add(entry_real)

            metadata = _match(candidates, entry.path, entry_real)
            if metadata is None:
                metadata = self.registry.ensure_worktree_metadata(
                    project_id,
                    entry.path,
                    entry.branch or entry.relative_path or os.path.basename(entry.path),
                )
                candidates.append(_Candidate.of(metadata))

            is_primary = entry.is_primary or (entry_real is not None and entry_real == project_real)
            responses.append(self._response(metadata, entry, is_primary))

        for meta in metadata_list:
            if meta.id == DEFAULT_WORKTREE_ID:
                continue
            if normalize_path(meta.path) in present or real_path(meta.path) in present:
                continue
            if self.registry.remove_worktree_metadata(project_id, meta.id):
                logger.info("Removed orphaned worktree metadata %s (%s)", meta.id, meta.path)

        self.registry.save()
        return responses

    @staticmethod
    def _response(metadata: WorktreeMetadata, entry: ParsedWorktree, is_primary: bool) -> Dict[str, Any]:
        data = entry.to_dict()
        data.update(id=metadata.id, title=metadata.title, path=metadata.path, isPrimary=is_primary)
        return data

    # -- mutations ------------------------------------------------------

    async def _ensure_local_branch(self, project_path: str, ref: str) -> str:
        """Return a local branch for ``ref``, creating a tracking branch for ``remote/name`` refs."""
        if await self.git.succeeds("show-ref", "--verify", "--quiet", f"refs/heads/{ref}", cwd=project_path):
            return ref
        split = split_remote_ref(ref)
        if split is None:
            return ref
        remote, name = split
        if remote not in await list_remotes(self.git, project_path):
            return ref
        if await self.git.succeeds("show-ref", "--verify", "--quiet", f"refs/heads/{name}", cwd=project_path):
            return name

        try:
            await self.git.run("fetch", remote, name, cwd=project_path)
        except ExternalToolError as exc:
            raise ExternalToolError(
                f"Unable to fetch {remote}/{name}. Ensure the branch exists and you have access.",
                command=exc.command,
                stderr=exc.stderr,
            ) from exc
        try:
            await self.git.run("branch", "--track", name, ref, cwd=project_path)
        except ExternalToolError as exc:
            raise ExternalToolError(
                f"Unable to create local branch {name} tracking {ref}.", command=exc.command, stderr=exc.stderr
            ) from exc
        logger.info("Created local branch %s tracking %s", name, ref)
        return name

    async def create_worktree(
        self,
        project_id: str,
        path: str,
        title: Optional[str] = None,
        branch: Optional[str] = None,
        base_ref: Optional[str] = None,
        create_branch: bool = False,
        force: bool = False,
    ) -> Dict[str, Any]:
        """
        Run ``git worktree add`` and record metadata for the new checkout.

        Metadata is only written once git has succeeded, so a failed add leaves
        the registry untouched.
        """
        project = self.registry.get_project(project_id)
        requested_path = (path or "").strip()
        if not requested_path:
            raise ValidationError("Worktree path is required")
        resolved = self.resolve_worktree_path(project.path, requested_path)
        if self.settings is not None and not path_within_roots(resolved, self.settings.sandbox_roots):
            raise SandboxError("Worktree path must be within the home or temp directory")

        args = ["worktree", "add"]
        if force:
            args.append("--force")
        checkout: Optional[str] = None
        if create_branch:
            if not (branch or "").strip():
                raise ValidationError("Branch name required when creating a new branch")
            checkout = validate_branch_name(branch)
            base = validate_ref(base_ref or "HEAD")
            args += ["-b", checkout, "--", resolved, base]
        elif (branch or "").strip():
            checkout = await self._ensure_local_branch(project.path, validate_branch_name(branch))
            args += ["--", resolved, checkout]
        else:
            args += ["--", resolved]

        display_title = creation_title(title, checkout, resolved)
        try:
            os.makedirs(os.path.dirname(resolved), exist_ok=True)
        except OSError as exc:
            logger.debug("Could not create parent directory for %s: %s", resolved, exc)

        await self.git.run(*args, cwd=project.path)
        logger.info("Created worktree %s for project %s", resolved, project_id)

        metadata = self.registry.ensure_worktree_metadata(project_id, resolved, display_title)
        if metadata.id != DEFAULT_WORKTREE_ID and metadata.title != display_title:
            metadata = self.registry.update_worktree_title(project_id, metadata.id, display_title)
        self.registry.save()

        head = await self.git.run("rev-parse", "--verify", "HEAD", cwd=metadata.path, check=False)
        if os.path.isabs(requested_path):
            relative = relative_posix(metadata.path, project.path)
        else:
            relative = requested_path.replace("\\", "/")

        data: Dict[str, Any] = {
            "id": metadata.id,
            "title": metadata.title,
            "path": metadata.path,
            "relativePath": relative,
            "isPrimary": relative == "",
            "isDetached": False,
            "isLocked": False,
        }
        if checkout:
            data["branch"] = checkout
        if head.returncode == 0 and head.stdout.strip():
            data["head"] = head.stdout.strip()
        return data

    async def remove_worktree(self, project_id: str, worktree_id: str, force: bool = False) -> None:
        if worktree_id == DEFAULT_WORKTREE_ID:
            raise ValidationError("Cannot remove default worktree")
        project = self.registry.get_project(project_id)
        metadata = self.registry.find_worktree(project_id, worktree_id)
        if metadata is None:
            raise NotFoundError("Worktree not found")

        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args += ["--", metadata.path]
        await self.git.run(*args, cwd=project.path)

        self.registry.remove_worktree_metadata(project_id, metadata.id)
        logger.info("Removed worktree %s (%s) from project %s", metadata.id, metadata.path, project_id)
        await self.list_worktrees(project_id)

    async def rename_worktree(self, project_id: str, worktree_id: str, title: str) -> Dict[str, Any]:
        updated = self.registry.update_worktree_title(project_id, worktree_id, title)
        self.registry.save()
        for worktree in await self.list_worktrees(project_id):
            if worktree["id"] == updated.id:
                return worktree
        raise NotFoundError(f"Worktree {worktree_id} is no longer present on disk")

    async def list_branches(self, project_id: str) -> List[Dict[str, Any]]:
        """Local branches, then remote-tracking ones, each flagged when a worktree has it checked out."""
        project = self.registry.get_project(project_id)
        try:
            await self.git.run("fetch", "--all", "--prune", cwd=project.path)
        except ExternalToolError as exc:
            logger.debug("git fetch --all --prune failed (continuing): %s", exc)

        local = await self._refs(project.path, "refs/heads/")
        remote = [name for name in await self._refs(project.path, "refs/remotes/") if not is_symbolic_remote_head(name)]
        checked_out = checked_out_branches(await self._porcelain(project.path))

        result = [{"name": name, "checkedOut": name in checked_out} for name in local]
        for name in remote:
            local_equivalent = name.split("/", 1)[1] if "/" in name else name
            result.append({"name": name, "checkedOut": local_equivalent in checked_out})
        return result

    async def _refs(self, project_path: str, prefix: str) -> List[str]:
        result = await self.git.run("for-each-ref", "--format=%(refname)", prefix.rstrip("/"), cwd=project_path)
        names = []
        for line in result.stdout.splitlines():
            ref = line.strip()
            if ref.startswith(prefix):
                names.append(ref[len(prefix):])
        return names
