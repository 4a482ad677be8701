from __future__ import annotations

import logging
import os

import uvicorn

from osis_sync.config_manager import ConfigManager

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _log_level() -> str:
    level = os.getenv("OSIS_SYNC_LOG_LEVEL", "").strip().upper()
    if level:
        return level
    config_path = os.getenv("OSIS_SYNC_CONFIG_PATH", "config.yaml")
    return ConfigManager(config_path).load().logging.level


def main() -> None:
    host = os.getenv("OSIS_SYNC_HOST", "0.0.0.0")
    port = int(os.getenv("OSIS_SYNC_PORT", "8080"))
    level = _log_level()
    logging.basicConfig(level=level, format=LOG_FORMAT)
    uvicorn.run(
        "osis_sync.web_admin:create_app",
        factory=True,
        host=host,
        port=port,
        reload=False,
        log_level=level.lower(),
    )


if __name__ == "__main__":
    main()
