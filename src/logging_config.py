"""Structured JSON logging for the StoreFlow server, console and tools.

``configure_logging`` installs two handlers on the root logger: one on
stderr and a rotating file under the configured log directory.  Every
record becomes one JSON object.  Context is passed through ``extra``:

    logger.info("Order persisted", extra={"request_id": order_id,
                                          "extra": {"step": "create_order"}})

``request_id`` and ``user_id`` become top-level keys, and the nested
``extra`` dict is merged into the object.
"""

import json
import logging
import logging.handlers
import os
from datetime import datetime, UTC

LOG_FILE_NAME = "storeflow.log"

# Record attributes promoted to top-level keys when set
_CONTEXT_KEYS = ("request_id", "user_id")


class JsonFormatter(logging.Formatter):
    """Render a ``LogRecord`` as a single-line JSON document."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }
        for key in _CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            for key, value in extra.items():
                payload.setdefault(key, value)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(log_dir: str = "logs", level: int = logging.INFO, to_file: bool = True) -> None:
    """Reset the root logger to JSON output on stderr and, optionally, a file.

    Args:
        log_dir: Directory for ``storeflow.log``; created on demand.
        level: Minimum level for the root logger and its handlers.
        to_file: When False only the stream handler is installed (used by
            the test-suite and the seed tool).
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = JsonFormatter()

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    stream.setLevel(level)
    root.addHandler(stream)

    if to_file:
        os.makedirs(log_dir, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            filename=os.path.join(log_dir, LOG_FILE_NAME),
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        rotating.setFormatter(formatter)
        rotating.setLevel(level)
        root.addHandler(rotating)
