"""
Transport bridge between terminal connections and the session manager.

A connection presents a token once; after that every inbound frame is parsed
as a control message and routed to the session the token names. Bad frames are
logged and dropped, never fatal to the connection or the session.
"""

from __future__ import annotations

import logging
from typing import Optional

from cli_sessions import CliSessionManager, Connection
from opshub_errors import NotFoundError, OpsHubError
from session_token import SessionTokenCodec
from terminal_protocol import InputMessage, ProtocolError, ResizeMessage, parse_client_message

logger = logging.getLogger("opshub.bridge")

CLOSE_MISSING_TOKEN = 4401
CLOSE_INVALID_TOKEN = 4403
CLOSE_SESSION_NOT_FOUND = 4004


class TransportBridge:
    def __init__(self, codec: SessionTokenCodec, sessions: CliSessionManager) -> None:
        self.codec = codec
        self.sessions = sessions

    async def verify_and_attach(self, token: Optional[str], connection: Connection) -> Optional[str]:
        """
        Attach ``connection`` to the session named by ``token``.

        Returns the session id, or None after closing the connection with the
        matching close code.
        """
        if not token:
            await connection.close(CLOSE_MISSING_TOKEN, "missing_token")
            return None
        decoded = self.codec.verify(token)
        if decoded is None:
            await connection.close(CLOSE_INVALID_TOKEN, "invalid_token")
            return None
        try:
            self.sessions.attach(decoded.session_id, connection)
        except NotFoundError:
            await connection.close(CLOSE_SESSION_NOT_FOUND, "session_not_found")
            return None
        logger.info("Connection attached to session %s", decoded.session_id)
        return decoded.session_id

    def handle_message(self, session_id: str, raw: str | bytes) -> None:
        try:
            message = parse_client_message(raw)
        except ProtocolError as exc:
            logger.warning("Ignoring malformed message for session %s: %s", session_id, exc)
            return
        try:
            if isinstance(message, InputMessage):
                self.sessions.write(session_id, message.data)
            elif isinstance(message, ResizeMessage):
                self.sessions.resize(session_id, message.cols, message.rows)
        except OpsHubError as exc:
            logger.warning("Dropping %s message for session %s: %s", message.type, session_id, exc)

    def detach(self, connection: Connection) -> None:
        self.sessions.detach(connection)
