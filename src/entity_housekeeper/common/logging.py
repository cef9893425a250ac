"""
Логирование подсистемы очистки.

- stdout, JSON по умолчанию (LOG_FORMAT=text для локальной отладки)
- имя события = сообщение (snake_case), поля события через extra={"payload": {...}}
- логгер задач отделён от логгера сервиса, чтобы шум воркера фильтровался отдельно
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from entity_housekeeper.common.config import get_settings

PROJECT_LOGGER = "entity-housekeeper"
TASKS_LOGGER = f"{PROJECT_LOGGER}.tasks"


class JsonFormatter(logging.Formatter):
    def __init__(self, service: str) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        doc: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "event": record.getMessage(),
        }
        payload = getattr(record, "payload", None)
        if isinstance(payload, dict):
            doc["payload"] = payload
        if record.exc_info:
            doc["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(doc, ensure_ascii=False, default=str)


def _build_formatter() -> logging.Formatter:
    s = get_settings()
    if (s.log_format or "").lower() == "text":
        return logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s %(payload)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            defaults={"payload": ""},
        )
    return JsonFormatter(s.service_name)


def setup_logging() -> None:
    s = get_settings()
    root = logging.getLogger()
    level = getattr(logging, (s.log_level or "INFO").upper(), logging.INFO)
    root.setLevel(level)

    # Повторный вызов (api + worker в одном процессе тестов) не дублирует вывод
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(_build_formatter())
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(max(level, logging.WARNING))


def get_project_logger(name: str = PROJECT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


def get_housekeeper_logger() -> logging.Logger:
    return logging.getLogger(TASKS_LOGGER)
