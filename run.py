#!/usr/bin/env python
"""
Entry point for running the SessionLite operations service.

Usage:
    python run.py                  # Start with settings from SESSIONLITE_* env vars
    python run.py --port 8080      # Custom port
    python run.py --memory         # Use the in-memory backing store (development)
"""

import argparse
import logging

import uvicorn

from sessionlite.config import SessionLiteConfig, StoreBackend
from sessionlite.index import create_app


def main():
    """Main entry point."""
    config = SessionLiteConfig.from_env()

    parser = argparse.ArgumentParser(description="SessionLite Operations Service")
    parser.add_argument(
        "--host",
        type=str,
        default=config.host,
        help=f"Host to bind to (default: {config.host})"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=config.http_port,
        help=f"Port to bind to (default: {config.http_port})"
    )
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Use the in-memory backing store instead of Redis"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=config.log_level.value.lower(),
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)"
    )

    args = parser.parse_args()

    config.host = args.host
    config.http_port = args.port
    if args.memory:
        config.store_backend = StoreBackend.MEMORY

    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=args.log_level.upper(),
    )
    logging.getLogger(__name__).info(str(config))

    uvicorn.run(
        create_app(config),
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
