from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from fleetcore.core.config import get_settings


_HANDLER_NAME = "fleetcore-stdout"


class JsonFormatter(logging.Formatter):
    # Emit newline-delimited JSON with stable core fields.
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, separators=(",", ":"))


def configure_logging(*, level: str | None = None, json_output: bool | None = None) -> None:
    # Install a single stdout handler; repeated calls only adjust the level.
    settings = get_settings()
    resolved_level = (level or settings.log_level).upper()
    resolved_json = settings.log_json if json_output is None else json_output

    root = logging.getLogger()
    root.setLevel(resolved_level)
    for handler in root.handlers:
        if handler.get_name() == _HANDLER_NAME:
            return

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    if resolved_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S%z",
            )
        )
    root.addHandler(handler)
