import json
import logging
import sys
from datetime import datetime, timezone

from app.config import settings

EXTRA_FIELDS = (
    "project_id", "deployment_id", "version", "container_name", "port",
    "image_tag", "attempt", "latency_ms", "restarts", "status", "error",
)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "event": record.getMessage(),
            "module": record.module,
        }
        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str | None = None) -> None:
    root = logging.getLogger()
    level_name = (level or settings.LOG_LEVEL).upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)

    # Suppress noisy uvicorn access logs
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").propagate = False
    logging.getLogger("urllib3").setLevel(logging.WARNING)
