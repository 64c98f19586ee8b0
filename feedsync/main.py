from __future__ import annotations

import logging
import os

import uvicorn

from feedsync.config_manager import ConfigManager


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )


def main() -> None:
    config = ConfigManager(os.getenv("FEEDSYNC_CONFIG_PATH", "config.yaml")).load()
    configure_logging(config.logging.level)
    host = os.getenv("FEEDSYNC_HOST", "0.0.0.0")
    port = int(os.getenv("FEEDSYNC_PORT", "8080"))
    uvicorn.run("feedsync.web_admin:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
