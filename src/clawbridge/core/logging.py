"""Logging setup for the clawbridge CLI.

Library modules only ever call ``logging.getLogger(__name__)``; handlers are
installed here, once, by the CLI entry point.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime

from rich.console import Console
from rich.logging import RichHandler

_ROOT_LOGGER = "clawbridge"


class JsonLineFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def configure_logging(level: str = "INFO", fmt: str = "text") -> logging.Logger:
    """Install a single handler on the ``clawbridge`` logger and return it.

    ``fmt="text"`` logs through rich to stderr; ``fmt="json"`` writes
    JSON lines to stderr. Calling this again replaces the previous handler.
    """
    logger = logging.getLogger(_ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler: logging.Handler
    if fmt == "json":
        handler = logging.StreamHandler()
        handler.setFormatter(JsonLineFormatter())
    else:
        handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))

    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger
