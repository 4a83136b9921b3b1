"""Run the tiered stream server with uvicorn."""

from __future__ import annotations

import logging

import uvicorn

from .config import load_config
from .web import create_app

logger = logging.getLogger("tiered_stream")


def main() -> None:
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(config)
    try:
        uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())
    except Exception:
        logger.exception("Server terminated unexpectedly")
        raise


if __name__ == "__main__":
    main()
