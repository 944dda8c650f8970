"""
Runtime configuration for the operations hub.

All values come from ``OPSHUB_*`` environment variables; anything missing or
unparseable falls back to the defaults below.
"""

from __future__ import annotations

import logging
import os
import secrets
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from env_utils import env_bool, env_float, env_int, env_str

DEFAULT_CONFIG_DIRNAME = ".opshub"
TEST_CONFIG_DIRNAME = ".opshub-test"
PROJECTS_FILE = "web-projects.json"

DEFAULT_MAX_SESSIONS = 50
DEFAULT_MAX_SESSIONS_PER_PROJECT = 10
DEFAULT_IDLE_TIMEOUT = 48 * 60 * 60
DEFAULT_IDLE_SWEEP_INTERVAL = 5 * 60
DEFAULT_CLOSE_GRACE = 5.0
DEFAULT_BUFFER_LIMIT = 64 * 1024
DEFAULT_TOKEN_TTL = 60 * 60
DEFAULT_PROBE_TIMEOUT = 5.0
DEFAULT_GIT_TIMEOUT = 20.0

LOG_FORMAT = "[%(levelname)s] %(name)s: %(message)s"


def _home_dir(env: Mapping[str, str]) -> Path:
    home = env_str("HOME", env=env)
    return Path(home) if home else Path.home()


@dataclass
class OpsHubSettings:
    """Process-wide policy; constructed once and passed to each service."""

    config_dir: Path
    max_sessions_total: int = DEFAULT_MAX_SESSIONS
    max_sessions_per_project: int = DEFAULT_MAX_SESSIONS_PER_PROJECT
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    idle_sweep_interval: float = DEFAULT_IDLE_SWEEP_INTERVAL
    close_grace: float = DEFAULT_CLOSE_GRACE
    buffer_limit: int = DEFAULT_BUFFER_LIMIT
    token_ttl: float = DEFAULT_TOKEN_TTL
    ws_secret: str = field(default_factory=lambda: secrets.token_hex(32), repr=False)
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    git_timeout: float = DEFAULT_GIT_TIMEOUT
    worktrees_dir: Optional[Path] = None
    sandbox_roots: tuple[Path, ...] = ()
    tool_overrides: dict[str, str] = field(default_factory=dict)
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    host: str = "127.0.0.1"
    port: int = 3099
    static_dir: Optional[Path] = None

    @property
    def projects_file(self) -> Path:
        return self.config_dir / PROJECTS_FILE

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "OpsHubSettings":
        source: Mapping[str, str] = os.environ if env is None else env
        home = _home_dir(source)

        override = env_str("OPSHUB_CONFIG_DIR", env=source)
        if override:
            config_dir = Path(override).expanduser()
        elif env_bool("OPSHUB_TEST_MODE", False, env=source):
            config_dir = home / TEST_CONFIG_DIRNAME
        else:
            config_dir = home / DEFAULT_CONFIG_DIRNAME

        sandbox_roots = (home, Path(tempfile.gettempdir()))

        worktrees_dir: Optional[Path] = None
        raw_worktrees = env_str("OPSHUB_WORKTREES_DIR", env=source)
        if raw_worktrees:
            if raw_worktrees.startswith("~"):
                raw_worktrees = str(home) + raw_worktrees[1:]
            worktrees_dir = Path(raw_worktrees)

        tool_overrides: dict[str, str] = {}
        for tool_id in ("codex", "claude", "opencode"):
            binary = env_str(f"OPSHUB_{tool_id.upper()}_BIN", env=source)
            if binary:
                tool_overrides[tool_id] = binary

        log_level = (env_str("OPSHUB_LOG_LEVEL", "INFO", env=source) or "INFO").upper()
        if log_level not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            log_level = "INFO"
        log_file = env_str("OPSHUB_LOG_FILE", env=source)
        static_dir = env_str("OPSHUB_STATIC_DIR", env=source)

        secret = env_str("OPSHUB_WS_SECRET", env=source) or secrets.token_hex(32)

        return cls(
            config_dir=config_dir,
            max_sessions_total=env_int("OPSHUB_MAX_SESSIONS", DEFAULT_MAX_SESSIONS, source, minimum=1),
            max_sessions_per_project=env_int(
                "OPSHUB_MAX_SESSIONS_PER_PROJECT", DEFAULT_MAX_SESSIONS_PER_PROJECT, source, minimum=1
            ),
            idle_timeout=env_float("OPSHUB_IDLE_TIMEOUT", DEFAULT_IDLE_TIMEOUT, source),
            idle_sweep_interval=env_float("OPSHUB_IDLE_SWEEP_INTERVAL", DEFAULT_IDLE_SWEEP_INTERVAL, source)
            or DEFAULT_IDLE_SWEEP_INTERVAL,
            close_grace=env_float("OPSHUB_CLOSE_GRACE", DEFAULT_CLOSE_GRACE, source),
            buffer_limit=env_int("OPSHUB_BUFFER_LIMIT", DEFAULT_BUFFER_LIMIT, source, minimum=1024),
            token_ttl=env_float("OPSHUB_TOKEN_TTL", DEFAULT_TOKEN_TTL, source) or DEFAULT_TOKEN_TTL,
            ws_secret=secret,
            probe_timeout=env_float("OPSHUB_PROBE_TIMEOUT", DEFAULT_PROBE_TIMEOUT, source) or DEFAULT_PROBE_TIMEOUT,
            git_timeout=env_float("OPSHUB_GIT_TIMEOUT", DEFAULT_GIT_TIMEOUT, source) or DEFAULT_GIT_TIMEOUT,
            worktrees_dir=worktrees_dir,
            sandbox_roots=sandbox_roots,
            tool_overrides=tool_overrides,
            log_level=log_level,
            log_file=Path(log_file).expanduser() if log_file else None,
            host=env_str("OPSHUB_HOST", "127.0.0.1", env=source) or "127.0.0.1",
            port=env_int("OPSHUB_PORT", 3099, source, minimum=1),
            static_dir=Path(static_dir).expanduser() if static_dir else None,
        )


def configure_logging(settings: OpsHubSettings) -> logging.Logger:
    """Install the stream (and optional file) handler on the ``opshub`` logger."""
    logger = logging.getLogger("opshub")
    logger.setLevel(settings.log_level)
    if not logger.handlers:
        stream = logging.StreamHandler()
        stream.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(stream)
        if settings.log_file is not None:
            settings.log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(settings.log_file, encoding="utf-8")
            file_handler.setFormatter(logging.Formatter("%(asctime)s " + LOG_FORMAT))
            logger.addHandler(file_handler)
    return logger
