#!/usr/bin/env python3
"""Serve the oauthabl HTTP API with uvicorn.

Usage:
    python scripts/serve.py [--host 0.0.0.0] [--port 8000] [--reload]

    # Equivalent to:
    uvicorn oauthabl.app:app --host 0.0.0.0 --port 8000

Storage and logging are configured through the usual environment variables
(REDIS_URL, USE_MEMORY_STORE, LOG_LEVEL, LOG_JSON, ...).
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import List, Optional

import uvicorn

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8000


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Serve the oauthabl API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--host", default=os.environ.get("HOST", DEFAULT_HOST))
    parser.add_argument(
        "--port", type=int, default=int(os.environ.get("PORT", DEFAULT_PORT))
    )
    parser.add_argument("--reload", action="store_true", help="Restart on code changes")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    # The app is passed by import string so --reload can re-import it
    uvicorn.run("oauthabl.app:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
