#!/usr/bin/env python3
"""Launcher for the Therapeutic Story Studio API."""

from __future__ import annotations

import argparse
import os
import socket
import sys
from pathlib import Path

import uvicorn

ROOT_DIR = Path(__file__).resolve().parent
BACKEND_DIR = ROOT_DIR / "backend"


def find_available_port(start_port: int) -> int:
    port = start_port
    while True:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if sock.connect_ex(("127.0.0.1", port)) != 0:
                return port
        port += 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Launch the story studio backend")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=None, help="first port to try (default 8000)")
    parser.add_argument("--data-dir", type=Path, default=None, help="overrides THERASTORY_DATA_DIR")
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args()

    if args.data_dir is not None:
        os.environ["THERASTORY_DATA_DIR"] = str(args.data_dir.resolve())
    port = args.port or find_available_port(8000)
    sys.path.insert(0, str(BACKEND_DIR))
    print(f"[launcher] backend: http://{args.host}:{port}/api/health")
    uvicorn.run("main:app", host=args.host, port=port, reload=args.reload, app_dir=str(BACKEND_DIR))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
