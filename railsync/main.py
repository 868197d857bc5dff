from __future__ import annotations

import logging
import os

import uvicorn

from railsync.config_manager import ConfigManager


def configure_logging() -> None:
    config = ConfigManager(os.getenv("RAILSYNC_CONFIG_PATH", "config.yaml")).load()
    logging.basicConfig(
        level=getattr(logging, config.logging.level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    configure_logging()
    host = os.getenv("RAILSYNC_HOST", "0.0.0.0")
    port = int(os.getenv("RAILSYNC_PORT", "8080"))
    uvicorn.run("railsync.web_admin:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
