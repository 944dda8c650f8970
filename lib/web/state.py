"""
Accessors for the services a request handler needs.

The app factory stores each service on ``app.state``; handlers get them via
``Depends`` so tests can build an app around their own instances.
"""

from fastapi.requests import HTTPConnection

from cli_bridge import TransportBridge
from cli_sessions import CliSessionManager
from opshub_config import OpsHubSettings
from project_registry import ProjectRegistry
from session_token import SessionTokenCodec
from worktree_reconciler import WorktreeReconciler


def get_settings(conn: HTTPConnection) -> OpsHubSettings:
    return conn.app.state.settings


def get_registry(conn: HTTPConnection) -> ProjectRegistry:
    return conn.app.state.registry


def get_sessions(conn: HTTPConnection) -> CliSessionManager:
    return conn.app.state.sessions


def get_reconciler(conn: HTTPConnection) -> WorktreeReconciler:
    return conn.app.state.reconciler


def get_codec(conn: HTTPConnection) -> SessionTokenCodec:
    return conn.app.state.codec


def get_bridge(conn: HTTPConnection) -> TransportBridge:
    return conn.app.state.bridge
