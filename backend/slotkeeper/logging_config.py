# backend/slotkeeper/logging_config.py
from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Optional

from .run_context import get_run_id

# fields the allocator/reconciler pass through `extra=`
SLOT_FIELDS = ("slot_id", "user_id", "project_id", "phase", "action", "scan_count")


class JsonFormatter(logging.Formatter):
    """One JSON object per line, tagged with the sweep/acquire run id."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = get_run_id()
        if rid:
            payload["run_id"] = rid
        payload.update({k: getattr(record, k) for k in SLOT_FIELDS if hasattr(record, k)})
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: Optional[str] = None) -> None:
    level = (level or os.getenv("LOG_LEVEL") or "INFO").upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    # the CLI and the celery worker both call this; keep exactly one handler
    root.handlers[:] = [handler]
    root.setLevel(level)

    logging.getLogger("sqlalchemy.engine").setLevel((os.getenv("SQL_LOG_LEVEL") or "WARNING").upper())
