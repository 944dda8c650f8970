"""
CLI session API routes.
"""

from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cli_sessions import MAX_INITIAL_INPUT, CliSessionManager
from opshub_errors import NotFoundError
from project_registry import ProjectRegistry
from session_token import SessionTokenCodec
from web.auth import with_token
from web.state import get_codec, get_registry, get_sessions

router = APIRouter()


class SessionCreate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    project_id: str = Field(min_length=1)
    worktree_id: str = Field(min_length=1)
    tool: Literal["codex", "claude", "opencode"]
    title: Optional[str] = None
    command_args: Optional[List[str]] = None
    initial_input: Optional[str] = Field(default=None, max_length=MAX_INITIAL_INPUT)


@router.get("/tools")
async def list_tools(sessions: CliSessionManager = Depends(get_sessions)) -> Dict[str, Any]:
    return {"tools": sessions.list_tools()}


@router.get("/sessions")
async def list_sessions(
    sessions: CliSessionManager = Depends(get_sessions),
    codec: SessionTokenCodec = Depends(get_codec),
) -> Dict[str, Any]:
    """Live sessions, each with a freshly minted attachment token."""
    return {"sessions": [with_token(codec, info) for info in sessions.list_sessions()]}


@router.post("/sessions", status_code=201)
async def create_session(
    body: SessionCreate,
    sessions: CliSessionManager = Depends(get_sessions),
    registry: ProjectRegistry = Depends(get_registry),
    codec: SessionTokenCodec = Depends(get_codec),
) -> Dict[str, Any]:
    registry.get_project(body.project_id)
    worktree = registry.find_worktree(body.project_id, body.worktree_id)
    if worktree is None:
        raise NotFoundError("Worktree not found")

    session = await sessions.create_session(
        body.project_id,
        body.worktree_id,
        worktree.path,
        body.tool,
        title=body.title,
        extra_args=body.command_args,
        initial_input=body.initial_input,
    )
    return {"session": session, "wsToken": codec.issue(session["id"])}


@router.delete("/sessions/{session_id}")
async def close_session(session_id: str, sessions: CliSessionManager = Depends(get_sessions)) -> Dict[str, Any]:
    """Close a session; closing an unknown or already closed session also succeeds."""
    await sessions.close(session_id)
    return {"success": True}
