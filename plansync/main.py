from __future__ import annotations

import logging
import os

import uvicorn

from plansync.config_manager import ConfigManager
from plansync.service import PlanSyncService
from plansync.web_api import create_app


def main() -> None:
    manager = ConfigManager(os.getenv("PLANSYNC_CONFIG_PATH", "config.yaml"))
    config = manager.load()
    logging.basicConfig(
        level=config.logging.level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    host = os.getenv("PLANSYNC_HOST", "0.0.0.0")
    port = int(os.getenv("PLANSYNC_PORT", "8080"))
    app = create_app(PlanSyncService(config), config_manager=manager)
    uvicorn.run(app, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
