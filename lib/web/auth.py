"""
Session tokens at the HTTP/WebSocket edge.

HTTP responses that expose a session carry a freshly minted ``wsToken``; the
WebSocket endpoint reads the token back from the query string (or a bearer
header for non-browser clients).
"""

from typing import Any, Dict, Optional

from fastapi import WebSocket

from session_token import SessionTokenCodec


def with_token(codec: SessionTokenCodec, session: Dict[str, Any]) -> Dict[str, Any]:
    """Session info plus a new token; tokens are never reused across responses."""
    return {**session, "wsToken": codec.issue(session["id"])}


def extract_token(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token

    authorization = websocket.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()

    return None
