from __future__ import annotations

import argparse
import sys

import uvicorn

from chatrelay.config import ConfigurationError, get_settings
from chatrelay.logging import get_logger

logger = get_logger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the chatrelay API server")
    parser.add_argument("--host", help="bind address (default: HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, help="listen port (default: PORT or 8080)")
    args = parser.parse_args(argv)

    settings = get_settings()
    try:
        settings.ensure_complete()
    except ConfigurationError as exc:
        logger.error("startup_config_missing", missing=exc.missing)
        return 1

    host = args.host or settings.host
    port = args.port or settings.port
    logger.info("server_starting", host=host, port=port)
    uvicorn.run(
        "chatrelay.app:create_app",
        factory=True,
        host=host,
        port=port,
        # keep uvicorn on the root handler installed by chatrelay.logging
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
