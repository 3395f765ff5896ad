"""Single-line JSON log output, enabled with ``TALKAH_STRUCTURED_LOGGING=true``.

Each line looks like::

    {"timestamp": "...", "level": "INFO", "logger": "talkah_api.access",
     "message": "request completed", "correlation_id": "...", "request": {...}}

``correlation_id`` and ``request`` appear only on access log records and
``exc_info`` only when an exception is attached.
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request = getattr(record, "request", None)
        if isinstance(request, dict):
            # Top level so aggregators can join a request across services.
            if request.get("correlation_id"):
                line["correlation_id"] = request["correlation_id"]
            line["request"] = request

        if record.exc_info and record.exc_info[0] is not None:
            line["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(line, default=str, ensure_ascii=False)
