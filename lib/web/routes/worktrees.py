"""
Worktree and branch API routes (mounted under ``/api/projects``).
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from worktree_reconciler import WorktreeReconciler
from web.state import get_reconciler

router = APIRouter()


class WorktreeCreate(BaseModel):
    """Create a git worktree; ``path`` may be relative to the project root."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    path: str = Field(min_length=1)
    title: Optional[str] = None
    branch: Optional[str] = None
    base_ref: Optional[str] = None
    create_branch: bool = False
    force: bool = False


class WorktreeRename(BaseModel):
    title: str = Field(min_length=1)


@router.get("/{project_id}/worktrees")
async def list_worktrees(
    project_id: str,
    reconciler: WorktreeReconciler = Depends(get_reconciler),
) -> List[Dict[str, Any]]:
    return await reconciler.list_worktrees(project_id)


@router.post("/{project_id}/worktrees", status_code=201)
async def create_worktree(
    project_id: str,
    body: WorktreeCreate,
    reconciler: WorktreeReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    return await reconciler.create_worktree(
        project_id,
        body.path,
        title=body.title,
        branch=body.branch,
        base_ref=body.base_ref,
        create_branch=body.create_branch,
        force=body.force,
    )


@router.patch("/{project_id}/worktrees/{worktree_id}")
async def rename_worktree(
    project_id: str,
    worktree_id: str,
    body: WorktreeRename,
    reconciler: WorktreeReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    return await reconciler.rename_worktree(project_id, worktree_id, body.title)


@router.delete("/{project_id}/worktrees/{worktree_id}")
async def remove_worktree(
    project_id: str,
    worktree_id: str,
    force: bool = False,
    reconciler: WorktreeReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    """Remove a worktree; ``default`` is always rejected, even with ``force``."""
    await reconciler.remove_worktree(project_id, worktree_id, force=force)
    return {"success": True}


@router.get("/{project_id}/git/branches")
async def list_branches(
    project_id: str,
    reconciler: WorktreeReconciler = Depends(get_reconciler),
) -> List[Dict[str, Any]]:
    return await reconciler.list_branches(project_id)
