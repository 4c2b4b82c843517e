"""Device Gateway -- entry point.

Usage::

    python -m device_gateway [--config PATH] [--host HOST] [--port PORT]

Startup sequence:
    1. Parse CLI arguments
    2. Load configuration from YAML (or defaults) and env overrides
    3. Configure logging
    4. Build the gateway and the FastAPI application
    5. Start the uvicorn server (the app lifespan starts the health monitor)
    6. On shutdown: stop the monitor, drain pending commands, close devices
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import uvicorn

from device_gateway.app import create_app
from device_gateway.config import Settings

logger = logging.getLogger("device_gateway")


def load_config(config_path: str | None) -> Settings:
    """Load settings from a YAML file or return defaults."""
    from device_gateway.config import load_settings

    path = Path(config_path) if config_path else None
    return load_settings(config_path=path)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# CLI argument parsing
# ---------------------------------------------------------------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Parameters
    ----------
    argv:
        Argument list.  Defaults to ``sys.argv[1:]`` when ``None``.
    """
    parser = argparse.ArgumentParser(
        prog="device_gateway",
        description="WebSocket gateway for commanding remote devices",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Interface to bind (default: from config, 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for the HTTP/WebSocket server (default: from config, 3000)",
    )
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Main run coroutine
# ---------------------------------------------------------------------------


async def run_gateway(
    config_path: str | None = None,
    host: str | None = None,
    port: int | None = None,
) -> None:
    """Start the gateway and run until cancelled."""
    settings = load_config(config_path)
    configure_logging(settings.logging.level)
    if host is not None:
        settings.server.host = host
    if port is not None:
        settings.server.port = port

    app = create_app(settings)

    uvicorn_config = uvicorn.Config(
        app=app,
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.logging.level.lower(),
    )
    server = uvicorn.Server(uvicorn_config)

    logger.info(
        "Device gateway listening on %s:%d (ws path: /ws)",
        settings.server.host,
        settings.server.port,
    )
    try:
        await server.serve()
    except asyncio.CancelledError:
        logger.info("Shutdown signal received -- stopping gateway")
    finally:
        logger.info("Gateway shutdown complete")


# ---------------------------------------------------------------------------
# Script entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Parse CLI args and run the gateway."""
    args = parse_args()

    try:
        asyncio.run(
            run_gateway(
                config_path=args.config,
                host=args.host,
                port=args.port,
            )
        )
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
