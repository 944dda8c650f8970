"""
WebSocket route for attaching a browser terminal to a CLI session.
"""

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from cli_bridge import TransportBridge
from web.auth import extract_token
from web.state import get_bridge

router = APIRouter()


class WebSocketConnection:
    """Adapts a FastAPI WebSocket to the session manager's connection interface."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send(self, message: str) -> None:
        await self.websocket.send_text(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        if self.websocket.client_state == WebSocketState.DISCONNECTED:
            return
        await self.websocket.close(code=code, reason=reason)


@router.websocket("/cli")
async def cli_terminal(websocket: WebSocket, bridge: TransportBridge = Depends(get_bridge)):
    """Token-authenticated terminal stream: ``/ws/cli?token=...``."""
    await websocket.accept()
    connection = WebSocketConnection(websocket)

    session_id = await bridge.verify_and_attach(extract_token(websocket), connection)
    if session_id is None:
        return

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is not None:
                bridge.handle_message(session_id, raw)
    except WebSocketDisconnect:
        pass
    finally:
        bridge.detach(connection)
