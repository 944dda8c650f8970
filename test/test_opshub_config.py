from __future__ import annotations

import logging
from pathlib import Path

from opshub_config import OpsHubSettings, configure_logging


def test_defaults_from_empty_env(tmp_path: Path) -> None:
    settings = OpsHubSettings.from_env({"HOME": str(tmp_path)})

    assert settings.config_dir == tmp_path / ".opshub"
    assert settings.projects_file == tmp_path / ".opshub" / "web-projects.json"
    assert settings.max_sessions_total == 50
    assert settings.max_sessions_per_project == 10
    assert settings.idle_timeout == 48 * 60 * 60
    assert settings.buffer_limit == 64 * 1024
    assert settings.sandbox_roots[0] == tmp_path
    assert settings.worktrees_dir is None
    assert len(settings.ws_secret) == 64


def test_test_mode_and_overrides(tmp_path: Path) -> None:
    settings = OpsHubSettings.from_env(
        {
            "HOME": str(tmp_path),
            "OPSHUB_TEST_MODE": "1",
            "OPSHUB_MAX_SESSIONS": "5",
            "OPSHUB_MAX_SESSIONS_PER_PROJECT": "0",
            "OPSHUB_WORKTREES_DIR": "~/wts",
            "OPSHUB_CODEX_BIN": "/opt/codex",
            "OPSHUB_LOG_LEVEL": "debug",
            "OPSHUB_WS_SECRET": "fixed",
        }
    )
    assert settings.config_dir == tmp_path / ".opshub-test"
    assert settings.max_sessions_total == 5
    assert settings.max_sessions_per_project == 10
    assert settings.worktrees_dir == tmp_path / "wts"
    assert settings.tool_overrides == {"codex": "/opt/codex"}
    assert settings.log_level == "DEBUG"
    assert settings.ws_secret == "fixed"

    explicit = OpsHubSettings.from_env({"HOME": str(tmp_path), "OPSHUB_CONFIG_DIR": str(tmp_path / "cfg")})
    assert explicit.config_dir == tmp_path / "cfg"


def test_unparseable_values_fall_back(tmp_path: Path) -> None:
    settings = OpsHubSettings.from_env(
        {"HOME": str(tmp_path), "OPSHUB_IDLE_TIMEOUT": "soon", "OPSHUB_LOG_LEVEL": "chatty", "OPSHUB_PORT": "x"}
    )
    assert settings.idle_timeout == 48 * 60 * 60
    assert settings.log_level == "INFO"
    assert settings.port == 3099


def test_configure_logging_writes_log_file(tmp_path: Path) -> None:
    logger = logging.getLogger("opshub")
    saved = list(logger.handlers)
    for handler in saved:
        logger.removeHandler(handler)
    try:
        log_file = tmp_path / "logs" / "opshub.log"
        settings = OpsHubSettings(config_dir=tmp_path, log_level="DEBUG", log_file=log_file)
        configure_logging(settings)
        logging.getLogger("opshub.registry").debug("hello %s", "file")
        for handler in logger.handlers:
            handler.flush()
        assert "[DEBUG] opshub.registry: hello file" in log_file.read_text(encoding="utf-8")
    finally:
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)
        for handler in saved:
            logger.addHandler(handler)
