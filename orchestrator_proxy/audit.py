from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path
from queue import Queue
from typing import Any

ATTEMPT_LOGGER_NAME = "orchestrator_proxy.attempts"


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def attempt_record(event: Mapping[str, Any]) -> dict[str, Any]:
    """Shape an executor event as a log record.

    The event name moves to ``type`` and leads the record; ``timestamp`` is
    stamped last. Remaining fields keep their executor order.
    """
    fields = dict(event)
    event_type = fields.pop("event", "proxy_event")
    return {"type": event_type, **fields, "timestamp": _utc_timestamp()}


def encode_attempt_record(event: Mapping[str, Any]) -> str:
    return json.dumps(
        attempt_record(event), ensure_ascii=True, separators=(",", ":"), default=str
    )


class AttemptEventLog:
    """Publishes proxy attempt events as one JSON object per line.

    Records go to the ``orchestrator_proxy.attempts`` logger. When a path is
    given, a queue listener also appends them to that file, so request
    handlers never block on disk writes.
    """

    def __init__(
        self,
        path: str | None = None,
        enabled: bool = True,
        logger_name: str = ATTEMPT_LOGGER_NAME,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path) if path else None
        self._logger = logging.getLogger(logger_name)
        self._queue_handler: QueueHandler | None = None
        self._file_handler: logging.FileHandler | None = None
        self._listener: QueueListener | None = None
        if not self.enabled:
            return

        self._logger.setLevel(logging.INFO)
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            records: Queue[logging.LogRecord] = Queue()
            self._file_handler = logging.FileHandler(self.path, encoding="utf-8")
            self._file_handler.setFormatter(logging.Formatter("%(message)s"))
            self._queue_handler = QueueHandler(records)
            self._listener = QueueListener(records, self._file_handler)
            self._listener.start()
            self._logger.addHandler(self._queue_handler)

    def log(self, event: Mapping[str, Any]) -> None:
        if not self.enabled:
            return
        self._logger.info("%s", encode_attempt_record(event))

    def close(self) -> None:
        if self._queue_handler is not None:
            self._logger.removeHandler(self._queue_handler)
            self._queue_handler = None
        if self._listener is not None:
            self._listener.stop()
            self._listener = None
        if self._file_handler is not None:
            self._file_handler.close()
            self._file_handler = None
