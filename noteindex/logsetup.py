# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Root logger setup shared by the service and admin entry points."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .config import Config, get_config

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def setup_logging(config: Optional[Config] = None) -> None:
    """Configure the root logger from ``server.log_level`` and ``server.log_file``."""
    cfg = config or get_config()
    level = getattr(logging, cfg.log_level, logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if cfg.log_file:
        log_path = Path(cfg.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)

    # Chatty third-party loggers
    for name in ("httpx", "httpcore", "watchdog"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
