"""Logging configuration."""

import json
import logging
import sys

from app.core.config import LogFormatEnum, Settings, settings


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = {
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False)


def configure_logging(config: Settings | None = None) -> None:
    """Install a single stdout handler on the root logger."""
    config = config or settings
    level = getattr(logging, config.log_level.value, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    if config.log_format == LogFormatEnum.json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    logging.basicConfig(level=level, handlers=[handler], force=True)
