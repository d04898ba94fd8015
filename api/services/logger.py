"""Application logger.

Handlers and level are set once by the FastAPI app or the CLI script through
``configure_logging``; every other module logs through ``logger``.
"""

from __future__ import annotations

import logging

from api.services.config import get_settings

APP_NAME = "psa-dashboards"

logger = logging.getLogger(APP_NAME)


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
