#!/usr/bin/env python3
"""
opshub - serve the operations console.

Usage:
    opshub [--host HOST] [--port PORT] [--config-dir DIR] [--static-dir DIR]
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

import uvicorn

from opshub_config import OpsHubSettings, configure_logging


def build_parser(settings: OpsHubSettings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="opshub", description="Serve the OpsHub operations console")
    parser.add_argument("--host", default=settings.host, help=f"bind address (default: {settings.host})")
    parser.add_argument("--port", type=int, default=settings.port, help=f"bind port (default: {settings.port})")
    parser.add_argument("--config-dir", type=Path, default=None, help="directory holding web-projects.json")
    parser.add_argument("--static-dir", type=Path, default=None, help="built web UI to serve at /")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        default=None,
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    settings = OpsHubSettings.from_env(os.environ)
    args = build_parser(settings).parse_args(argv)

    settings.host = args.host
    settings.port = args.port
    if args.config_dir is not None:
        settings.config_dir = args.config_dir.expanduser()
    if args.static_dir is not None:
        settings.static_dir = args.static_dir.expanduser()
    if args.log_level:
        settings.log_level = args.log_level

    configure_logging(settings)

    from web.app import create_app

    app = create_app(settings)
    print("\n  OpsHub")
    print(f"  http://{settings.host}:{settings.port}")
    print(f"  Projects file: {settings.projects_file}\n")
    uvicorn.run(app, host=settings.host, port=settings.port, log_level="warning")
    return 0


if __name__ == "__main__":
    sys.exit(main())
