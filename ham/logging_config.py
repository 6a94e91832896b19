# ham/logging_config.py
"""
Logging setup for host applications embedding the core.

The core itself only ever calls logging.getLogger(__name__); it never
configures handlers on import. Call configure_logging() once from the
application entry point (CLI, UI, test harness).

Environment:
    HAM_ENV        "production" → INFO with full timestamps, otherwise DEBUG
    HAM_LOG_LEVEL  explicit level name, overrides the HAM_ENV default
"""

from __future__ import annotations

import logging
import os
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"


def _is_production() -> bool:
    return os.getenv("HAM_ENV", "").strip().lower() == "production"


def configure_logging(level: Optional[Union[int, str]] = None) -> int:
    """
    Configure root logging and quieten chatty libraries.

    Returns the effective level that was applied.
    """
    is_prod = _is_production()

    if level is None:
        level = os.getenv("HAM_LOG_LEVEL") or (logging.INFO if is_prod else logging.DEBUG)
    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        level = resolved if isinstance(resolved, int) else logging.INFO

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S" if is_prod else "%H:%M:%S",
    )
    logging.getLogger("ham").setLevel(level)

    # Quieten noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    return level
