#!/usr/bin/env python
"""
Server Entry Point

Usage:
    Development:  python run_server.py --dev
    Production:   python run_server.py

    Or with Gunicorn:
    gunicorn src.main:app -c gunicorn.conf.py
"""

import argparse
import os
import subprocess
import sys
from pathlib import Path

import uvicorn

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from src.config import get_settings  # noqa: E402

settings = get_settings()


def run_dev_server(port: int) -> None:
    """Single process with auto-reload."""
    uvicorn.run(
        "src.main:app",
        host=settings.api_host,
        port=port,
        reload=True,
        reload_dirs=["src"],
        log_level="debug",
        access_log=False,
    )


def run_prod_server(port: int) -> None:
    uvicorn.run(
        "src.main:app",
        host=settings.api_host,
        port=port,
        workers=int(os.getenv("WORKERS", settings.api_workers)),
        log_level=settings.monitoring.log_level.lower(),
        access_log=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
        server_header=False,
    )


def run_gunicorn() -> None:
    subprocess.run(["gunicorn", "src.main:app", "-c", "gunicorn.conf.py"], check=False)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Forum Analytics API Server")
    parser.add_argument("--dev", action="store_true", help="Run in development mode with auto-reload")
    parser.add_argument("--gunicorn", action="store_true", help="Run with Gunicorn (production)")
    parser.add_argument("--port", type=int, default=settings.api_port, help="Port to run on")
    args = parser.parse_args()

    if args.dev:
        print("🚀 Starting development server...")
        run_dev_server(args.port)
    elif args.gunicorn:
        os.environ["BIND"] = f"{settings.api_host}:{args.port}"
        print("🚀 Starting production server with Gunicorn...")
        run_gunicorn()
    else:
        print("🚀 Starting production server with Uvicorn...")
        run_prod_server(args.port)
