from __future__ import annotations

import logging
import sys

from tenancy.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Install a single stdout handler on the root logger; safe to call repeatedly.
    resolved = (level or get_settings().log_level).upper()
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, resolved, logging.INFO))
    for handler in root_logger.handlers[:]:
        if getattr(handler, "_tenancy_handler", False):
            root_logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._tenancy_handler = True  # type: ignore[attr-defined]
    root_logger.addHandler(handler)
