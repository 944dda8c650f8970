"""
Live CLI sessions: PTY-backed child processes and their output fan-out.

The manager is the only owner of the session table. Each session keeps a
bounded snapshot buffer and a set of attachments (one per transport
connection). Output chunks are appended to the buffer and pushed, in emission
order, onto every attachment's queue; a per-attachment sender task drains that
queue so a slow or dead connection never blocks the child or its siblings.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from cli_tools import CliTool, default_tools, probe_tools
from opshub_config import OpsHubSettings
from opshub_errors import (
    CapacityError,
    ExternalToolError,
    NotFoundError,
    SessionStateError,
    ValidationError,
)
from sandbox import resolve_within_sandbox
from terminal import DEFAULT_COLS, DEFAULT_ROWS, PtyProcess, spawn_pty
from terminal_protocol import (
    DataMessage,
    ExitMessage,
    ServerMessage,
    SessionStatus,
    SnapshotMessage,
    StatusMessage,
    encode_message,
)

logger = logging.getLogger("opshub.sessions")

ESC = "\x1b"
TERMINAL_STATUSES = ("exited", "error")

MAX_EXTRA_ARGS = 16
MAX_ARG_LENGTH = 512
MAX_INITIAL_INPUT = 4000
_FORBIDDEN_ARG_CHARS = frozenset(";&|`$<>\n\r\x00")

MAX_PENDING_MESSAGES = 4096
ATTACHMENT_DRAIN_TIMEOUT = 1.0
FINISHED_HISTORY = 100

CLOSE_NORMAL = 1000
CLOSE_OVERLOADED = 1013

Spawner = Callable[..., Awaitable[PtyProcess]]


def trim_to_safe_start(buf: str, limit: int) -> str:
    """
    Keep roughly the last ``limit`` characters of a terminal buffer, starting
    at a boundary that cannot be in the middle of a control sequence.

    Preference order from the naive cutoff: the next ESC (start of a control
    sequence), the character after the next newline, the character after the
    next carriage return, and finally a hard cut.
    """
    if len(buf) <= limit:
        return buf
    start = len(buf) - limit
    next_esc = buf.find(ESC, start)
    if next_esc != -1:
        return buf[next_esc:]
    next_nl = buf.find("\n", start)
    if next_nl != -1:
        return buf[next_nl + 1:]
    next_cr = buf.find("\r", start)
    if next_cr != -1:
        return buf[next_cr + 1:]
    return buf[start:]


def validate_extra_args(extra_args: Optional[Sequence[str]]) -> List[str]:
    args = list(extra_args or [])
    if len(args) > MAX_EXTRA_ARGS:
        raise ValidationError(f"At most {MAX_EXTRA_ARGS} extra arguments are allowed")
    for arg in args:
        if not isinstance(arg, str):
            raise ValidationError("Extra arguments must be strings")
        if len(arg) > MAX_ARG_LENGTH:
            raise ValidationError(f"Extra arguments are limited to {MAX_ARG_LENGTH} characters")
        if any(ch in _FORBIDDEN_ARG_CHARS for ch in arg):
            raise ValidationError(f"Extra argument contains a disallowed character: {arg!r}")
    return args


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Connection(Protocol):
    """The transport side of an attachment (e.g. a WebSocket adapter)."""

    async def send(self, message: str) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...


_CLOSE = object()


class Attachment:
    """Non-owning link from a session to one connection, with an ordered send queue."""

    def __init__(self, connection: Connection, on_failure: Callable[["Attachment", BaseException], None]) -> None:
        self.connection = connection
        self._on_failure = on_failure
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def push(self, message: str) -> bool:
        if self._task.done():
            return False
        if self._queue.qsize() >= MAX_PENDING_MESSAGES:
            return False
        self._queue.put_nowait(message)
        return True

    def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Close after everything already queued has been sent."""
        if not self._task.done():
            self._queue.put_nowait((_CLOSE, code, reason))

    def cancel(self) -> None:
        if self._task is not asyncio.current_task() and not self._task.done():
            self._task.cancel()

    async def wait_closed(self, timeout: float = ATTACHMENT_DRAIN_TIMEOUT) -> None:
        await asyncio.wait({self._task}, timeout=timeout)

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if isinstance(item, tuple) and item and item[0] is _CLOSE:
                _, code, reason = item
                try:
                    await self.connection.close(code, reason)
                except Exception as exc:
                    logger.debug("Closing connection failed: %s", exc)
                return
            try:
                await self.connection.send(item)
            except Exception as exc:
                self._on_failure(self, exc)
                return


@dataclass
class CliSession:
    id: str
    title: str
    project_id: str
    worktree_id: str
    cwd: str
    tool: str
    process: PtyProcess = field(repr=False)
    status: SessionStatus = "starting"
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    buffer: str = field(default="", repr=False)
    last_activity: float = field(default_factory=time.time)
    exit_code: Optional[int] = None
    attachments: Dict[Any, Attachment] = field(default_factory=dict, repr=False)
    retired: List[Attachment] = field(default_factory=list, repr=False)
    exited: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    pump_task: Optional[asyncio.Task] = field(default=None, repr=False)

    def set_status(self, status: SessionStatus) -> None:
        self.status = status
        self.updated_at = _now_iso()

    def to_info(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "projectId": self.project_id,
            "worktreeId": self.worktree_id,
            "cwd": self.cwd,
            "tool": self.tool,
            "status": self.status,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.exit_code is not None:
            info["exitCode"] = self.exit_code
        return info


class CliSessionManager:
    """
    Owner of all live CLI sessions.

    Lifecycle: construct, ``await init()`` (tool probe + idle reaper), then
    ``await shutdown()`` to stop the reaper and close every session.
    """

    def __init__(
        self,
        settings: OpsHubSettings,
        tools: Optional[Dict[str, CliTool]] = None,
        *,
        spawner: Spawner = spawn_pty,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self._tools = tools if tools is not None else default_tools(settings.tool_overrides)
        self._spawner = spawner
        self._clock = clock
        self._sessions: Dict[str, CliSession] = {}
        self._owners: Dict[Any, str] = {}
        self._pending: Dict[str, int] = {}
        self._finished: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._idle_task: Optional[asyncio.Task] = None

    # -- lifecycle ------------------------------------------------------

    async def init(self) -> None:
        unprobed = [tool for tool in self._tools.values() if tool.available is None]
        if unprobed:
            await probe_tools(unprobed, self.settings.probe_timeout)
        if self._idle_task is None:
            self._idle_task = asyncio.get_running_loop().create_task(self._idle_loop())

    async def shutdown(self) -> None:
        logger.info("Shutting down CLI session manager")
        if self._idle_task is not None:
            self._idle_task.cancel()
            try:
                await self._idle_task
            except asyncio.CancelledError:
                pass
            self._idle_task = None
        await asyncio.gather(*(self.close(session_id) for session_id in list(self._sessions)))

    # -- read-only views ------------------------------------------------

    def list_tools(self) -> List[Dict[str, Any]]:
        return [tool.to_dict() for tool in self._tools.values()]

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [session.to_info() for session in self._sessions.values()]

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get_session_info(self, session_id: str) -> Optional[Dict[str, Any]]:
        session = self._sessions.get(session_id)
        if session is not None:
            return session.to_info()
        finished = self._finished.get(session_id)
        return dict(finished) if finished is not None else None

    # -- creation -------------------------------------------------------

    def _project_count(self, project_id: str) -> int:
        live = sum(1 for session in self._sessions.values() if session.project_id == project_id)
        return live + self._pending.get(project_id, 0)

    async def create_session(
        self,
        project_id: str,
        worktree_id: str,
        cwd: str,
        tool: str,
        title: Optional[str] = None,
        extra_args: Optional[Sequence[str]] = None,
        initial_input: Optional[str] = None,
    ) -> Dict[str, Any]:
        total = len(self._sessions) + sum(self._pending.values())
        if total >= self.settings.max_sessions_total:
            raise CapacityError(f"Maximum total sessions ({self.settings.max_sessions_total}) reached")
        if self._project_count(project_id) >= self.settings.max_sessions_per_project:
            raise CapacityError(
                f"Maximum sessions per project ({self.settings.max_sessions_per_project}) reached"
            )

        tool_config = self._tools.get(tool)
        if tool_config is None:
            raise ValidationError(f"Unsupported CLI tool: {tool}")
        if tool_config.available is not True:
            raise ExternalToolError(f"{tool_config.name} is not available on this system")

        args = validate_extra_args(extra_args)
        if initial_input is not None and len(initial_input) > MAX_INITIAL_INPUT:
            raise ValidationError(f"Initial input is limited to {MAX_INITIAL_INPUT} characters")

        resolved_cwd = resolve_within_sandbox(cwd, self.settings.sandbox_roots)
        argv = [tool_config.command, *tool_config.args, *args]
        env = {**os.environ, **tool_config.env}

        logger.info("Creating %s session for project %s (worktree %s) in %s", tool, project_id, worktree_id, resolved_cwd)
        self._pending[project_id] = self._pending.get(project_id, 0) + 1
        try:
            process = await self._spawner(argv, cwd=resolved_cwd, env=env, cols=DEFAULT_COLS, rows=DEFAULT_ROWS)
        except OSError as exc:
            raise ExternalToolError(f"Failed to start {tool_config.name}: {exc}", command=argv) from exc
        finally:
            remaining = self._pending.get(project_id, 1) - 1
            if remaining > 0:
                self._pending[project_id] = remaining
            else:
                self._pending.pop(project_id, None)

        session = CliSession(
            id=str(uuid.uuid4()),
            title=(title or "").strip() or f"{tool_config.name} · {worktree_id}",
            project_id=project_id,
            worktree_id=worktree_id,
            cwd=resolved_cwd,
            tool=tool_config.id,
            process=process,
            last_activity=self._clock(),
        )
        self._sessions[session.id] = session
        session.pump_task = asyncio.get_running_loop().create_task(self._pump_output(session))
        asyncio.get_running_loop().call_soon(self._mark_running, session.id, initial_input)
        logger.info("Session created: %s (%s)", session.id, tool_config.id)
        return session.to_info()

    def _mark_running(self, session_id: str, initial_input: Optional[str]) -> None:
        session = self._sessions.get(session_id)
        if session is None or session.status != "starting":
            return
        session.set_status("running")
        self._broadcast(session, StatusMessage(status="running"))
        if initial_input:
            try:
                self.write(session_id, initial_input)
            except (SessionStateError, NotFoundError) as exc:
                logger.warning("Initial input for %s not delivered: %s", session_id, exc)

    # -- I/O ------------------------------------------------------------

    def _require_live(self, session_id: str) -> CliSession:
        session = self._sessions.get(session_id)
        if session is None:
            finished = self._finished.get(session_id)
            if finished is not None:
                raise SessionStateError(f"Session {session_id} is no longer running (status: {finished['status']})")
            raise NotFoundError("Session not found")
        if session.status in TERMINAL_STATUSES:
            raise SessionStateError(f"Session {session_id} is no longer running (status: {session.status})")
        return session

    def write(self, session_id: str, data: str) -> None:
        session = self._require_live(session_id)
        session.last_activity = self._clock()
        try:
            session.process.write(data)
        except OSError as exc:
            logger.warning("Write to session %s failed: %s", session_id, exc)
            self._fail(session)
            raise SessionStateError(f"Session {session_id} terminal is no longer writable") from exc

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        session = self._require_live(session_id)
        try:
            session.process.resize(cols, rows)
        except OSError as exc:
            logger.warning("Resize of session %s failed: %s", session_id, exc)

    async def _pump_output(self, session: CliSession) -> None:
        try:
            async for chunk in session.process.chunks():
                session.last_activity = self._clock()
                self._append_buffer(session, chunk)
                self._broadcast(session, DataMessage(data=chunk))
            code = await session.process.wait()
        except Exception:
            logger.exception("Output pump for session %s failed", session.id)
            self._fail(session)
            return
        if session.status not in TERMINAL_STATUSES:
            logger.info("Session exited: %s (code %s)", session.id, code)
            session.exit_code = code
            session.set_status("exited")
            self._broadcast(session, ExitMessage(code=code))
        session.exited.set()
        self._cleanup(session.id)

    def _append_buffer(self, session: CliSession, chunk: str) -> None:
        session.buffer += chunk
        if len(session.buffer) > self.settings.buffer_limit:
            session.buffer = trim_to_safe_start(session.buffer, self.settings.buffer_limit)

    def _broadcast(self, session: CliSession, message: ServerMessage) -> None:
        payload = encode_message(message)
        for connection, attachment in list(session.attachments.items()):
            if not attachment.push(payload):
                logger.warning("Dropping lagging connection from session %s", session.id)
                self._unlink(connection)
                attachment.close(CLOSE_OVERLOADED, "connection too slow")
                session.retired.append(attachment)

    def _fail(self, session: CliSession) -> None:
        if session.status in TERMINAL_STATUSES:
            return
        session.set_status("error")
        self._broadcast(session, StatusMessage(status="error"))
        session.process.kill()
        session.exited.set()
        self._cleanup(session.id)

    # -- attachments ----------------------------------------------------

    def attach(self, session_id: str, connection: Connection) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("Session not found")
        self.detach(connection)
        attachment = Attachment(connection, self._on_send_failure)
        session.attachments[connection] = attachment
        self._owners[connection] = session_id
        snapshot = trim_to_safe_start(session.buffer, self.settings.buffer_limit)
        if snapshot:
            attachment.push(encode_message(SnapshotMessage(data=snapshot)))
        attachment.push(encode_message(StatusMessage(status=session.status)))

    def _unlink(self, connection: Connection) -> Optional[Attachment]:
        session_id = self._owners.pop(connection, None)
        if session_id is None:
            return None
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return session.attachments.pop(connection, None)

    def detach(self, connection: Connection) -> None:
        """Remove the connection's attachment, if any. Safe to call repeatedly."""
        attachment = self._unlink(connection)
        if attachment is not None:
            attachment.cancel()

    def _on_send_failure(self, attachment: Attachment, exc: BaseException) -> None:
        logger.warning("Failed sending CLI payload, detaching connection: %s", exc)
        self.detach(attachment.connection)

    # -- teardown -------------------------------------------------------

    def _cleanup(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        logger.info("Cleaning up session %s (%d attachment(s))", session_id, len(session.attachments))
        for connection, attachment in session.attachments.items():
            self._owners.pop(connection, None)
            attachment.close(CLOSE_NORMAL, "session closed")
            session.retired.append(attachment)
        session.attachments.clear()
        self._finished[session_id] = session.to_info()
        while len(self._finished) > FINISHED_HISTORY:
            self._finished.popitem(last=False)

    async def close(self, session_id: str) -> None:
        """Terminate gracefully, forcing cleanup after the grace period. Unknown ids are a no-op."""
        session = self._sessions.get(session_id)
        if session is None:
            return
        logger.info("Closing session: %s", session_id)
        session.process.terminate()
        try:
            await asyncio.wait_for(session.exited.wait(), timeout=self.settings.close_grace)
        except asyncio.TimeoutError:
            logger.warning(
                "Session %s did not exit within %.1fs, forcing cleanup", session_id, self.settings.close_grace
            )
            session.process.kill()
            if session.status not in TERMINAL_STATUSES:
                session.set_status("exited")
                self._broadcast(session, ExitMessage(code=None))
        self._cleanup(session_id)
        if session.retired:
            await asyncio.gather(*(attachment.wait_closed() for attachment in session.retired))

    async def reap_idle_sessions(self, now: Optional[float] = None) -> List[str]:
        now = self._clock() if now is None else now
        idle = [
            session
            for session in self._sessions.values()
            if session.status == "running"
            and not session.attachments
            and now - session.last_activity > self.settings.idle_timeout
        ]
        for session in idle:
            logger.info(
                "Cleaning up idle session %s (idle for %ds)", session.id, int(now - session.last_activity)
            )
        await asyncio.gather(*(self.close(session.id) for session in idle))
        return [session.id for session in idle]

    async def _idle_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.idle_sweep_interval)
            try:
                await self.reap_idle_sessions()
            except Exception:
                logger.exception("Idle session sweep failed")
