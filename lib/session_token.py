from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional


DEFAULT_TTL_SECONDS = 60 * 60


@dataclass(frozen=True)
class SessionToken:
    session_id: str
    expires_at: int  # epoch milliseconds


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class SessionTokenCodec:
    """
    Sign and verify short-lived tokens binding a transport connection to one session.

    Token format: ``<base64url(json payload)>.<base64url(hmac-sha256(payload part))>``
    with payload ``{"sessionId": ..., "exp": <epoch ms>}``. The only state is the
    secret; when none is configured a random one is generated, so tokens do not
    survive a restart (neither do sessions).
    """

    def __init__(
        self,
        secret: Optional[str | bytes] = None,
        *,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if secret is None:
            secret = secrets.token_hex(32)
        self._secret = secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)
        self._ttl = float(ttl)
        self._clock = clock

    def _sign(self, payload_part: str) -> str:
        digest = hmac.new(self._secret, payload_part.encode("ascii"), hashlib.sha256).digest()
        return _b64url_encode(digest)

    def issue(self, session_id: str) -> str:
        expires_at = int((self._clock() + self._ttl) * 1000)
        payload = json.dumps({"sessionId": session_id, "exp": expires_at}, separators=(",", ":"))
        payload_part = _b64url_encode(payload.encode("utf-8"))
        return f"{payload_part}.{self._sign(payload_part)}"

    def verify(self, token: Optional[str]) -> Optional[SessionToken]:
        """Return the decoded token, or None for any malformed, forged or expired input."""
        if not token or not isinstance(token, str):
            return None
        parts = token.split(".")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return None
        payload_part, signature = parts
        try:
            expected = self._sign(payload_part)
        except UnicodeEncodeError:
            return None
        if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("ascii")):
            return None
        try:
            data = json.loads(_b64url_decode(payload_part).decode("utf-8"))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            return None
        if not isinstance(data, dict):
            return None
        session_id = data.get("sessionId")
        expires_at = data.get("exp")
        if not isinstance(session_id, str) or not session_id:
            return None
        if not isinstance(expires_at, int) or isinstance(expires_at, bool):
            return None
        if expires_at < int(self._clock() * 1000):
            return None
        return SessionToken(session_id=session_id, expires_at=expires_at)
