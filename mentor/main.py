# mentor/main.py
"""
Mentor gateway entrypoint.

    python -m mentor.main --host 0.0.0.0 --port 8000

Configuration comes from the environment / .env (see mentor/config/settings.py).
"""

from __future__ import annotations

import argparse

import uvicorn

from mentor.utils.logging import get_logger

logger = get_logger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run the Mentor gateway API server.")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1).")
    parser.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000).")
    parser.add_argument("--reload", action="store_true", help="Auto-reload on code changes (development).")
    args = parser.parse_args(argv)

    logger.info("Starting Mentor gateway on %s:%d", args.host, args.port)
    uvicorn.run("mentor.api.server:app", host=args.host, port=args.port, reload=args.reload)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
