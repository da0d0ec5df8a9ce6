"""Single-line JSON log output, enabled by ``TENANTSYNC_STRUCTURED_LOGGING``.

Besides the standard fields, the ``request`` extra (access log) and the
``delivery`` extra (outbound webhook attempts) are emitted as nested
objects when a record carries them.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

_NESTED_EXTRAS = ("request", "delivery")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        line.update({key: getattr(record, key) for key in _NESTED_EXTRAS if getattr(record, key, None) is not None})
        if record.exc_info and record.exc_info[0] is not None:
            line["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str, ensure_ascii=False)
