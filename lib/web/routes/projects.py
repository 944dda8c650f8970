"""
Project registry API routes.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from project_registry import ProjectRegistry
from web.state import get_registry

router = APIRouter()


class ProjectCreate(BaseModel):
    """Register a directory as a project."""
    path: str = Field(min_length=1)
    name: Optional[str] = None


class ProjectUpdate(BaseModel):
    name: str = Field(min_length=1)


class CodexSettingsUpdate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    auto_prompt: Optional[bool] = None
    prompt_char_limit: Optional[int] = None


class SettingsUpdate(BaseModel):
    codex: Optional[CodexSettingsUpdate] = None


@router.get("")
async def list_projects(registry: ProjectRegistry = Depends(get_registry)) -> List[Dict[str, Any]]:
    """List projects, most recently accessed first."""
    return [project.to_dict() for project in registry.list_projects()]


@router.post("")
async def add_project(body: ProjectCreate, registry: ProjectRegistry = Depends(get_registry)) -> Dict[str, Any]:
    """Register a project; registering the same directory again returns the existing one."""
    return registry.add_project(body.path, body.name).to_dict()


@router.get("/{project_id}")
async def get_project(project_id: str, registry: ProjectRegistry = Depends(get_registry)) -> Dict[str, Any]:
    return registry.get_project(project_id).to_dict()


@router.patch("/{project_id}")
async def update_project(
    project_id: str,
    body: ProjectUpdate,
    registry: ProjectRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    return registry.update_project(project_id, body.name).to_dict()


@router.delete("/{project_id}")
async def remove_project(project_id: str, registry: ProjectRegistry = Depends(get_registry)) -> Dict[str, Any]:
    """Forget a project (the directory is left alone)."""
    registry.get_project(project_id)
    registry.remove_project(project_id)
    return {"success": True}


@router.get("/{project_id}/settings")
async def get_settings(project_id: str, registry: ProjectRegistry = Depends(get_registry)) -> Dict[str, Any]:
    return registry.get_settings(project_id).to_dict()


@router.patch("/{project_id}/settings")
async def update_settings(
    project_id: str,
    body: SettingsUpdate,
    registry: ProjectRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    partial = body.model_dump(by_alias=True, exclude_none=True)
    return registry.update_settings(project_id, partial).to_dict()
