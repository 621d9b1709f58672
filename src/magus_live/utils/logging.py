"""Structured logging utilities."""

import json
import logging
from typing import Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Setup process logging.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR)
    """
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT)


def log_event(event_type: str, data: dict[str, Any], level: int = logging.INFO) -> None:
    """Log structured event.

    Values that are not JSON serializable are rendered with ``str``.

    Args:
        event_type: Event type identifier
        data: Event data dictionary
        level: Logging level for the record
    """
    logging.getLogger("magus_live.events").log(
        level, json.dumps({"event": event_type, **data}, default=str, ensure_ascii=False)
    )
