"""
Retry/DLQ политика для задач очистки.

Назначение:
- монотонный экспоненциальный backoff с потолком
- ограниченное число попыток, после - DLQ
- классификация ошибок: повторяемая / постоянная
"""

from __future__ import annotations

from dataclasses import dataclass

import redis
from sqlalchemy.exc import DBAPIError, OperationalError

from entity_housekeeper.common.config import get_settings
from entity_housekeeper.common.errors import (
    AppError,
    PermanentTaskError,
    PipelineUnavailableError,
    TransientStoreError,
)

# Исключения инфраструктуры, которые считаем временными
_TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TransientStoreError,
    PipelineUnavailableError,
    OperationalError,
    redis.ConnectionError,
    redis.TimeoutError,
    TimeoutError,
    ConnectionError,
)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 10
    backoff_base_sec: float = 1.0
    backoff_max_sec: float = 300.0

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        s = get_settings()
        return cls(
            max_attempts=max(1, int(s.housekeeper_max_attempts)),
            backoff_base_sec=max(0.0, float(s.housekeeper_backoff_base_sec)),
            backoff_max_sec=max(0.0, float(s.housekeeper_backoff_max_sec)),
        )

    def backoff(self, attempt: int) -> float:
        """
        Задержка перед повтором после неудачной попытки номер `attempt` (с нуля).
        Монотонно не убывает, ограничена backoff_max_sec.
        """
        attempt = max(0, int(attempt))
        # 2**64 уже заведомо больше любого потолка
        delay = self.backoff_base_sec * (2 ** min(attempt, 64))
        return min(self.backoff_max_sec, delay)

    def exhausted(self, attempt: int) -> bool:
        """
        True, если попытка `attempt` (с нуля) была последней разрешённой.
        """
        return attempt + 1 >= self.max_attempts


ERR_PERMANENT = "permanent"
ERR_TRANSIENT = "transient"
ERR_UNEXPECTED = "unexpected"


def classify_error(err: BaseException) -> str:
    """
    permanent  - сразу в DLQ
    transient  - известный временный сбой, повтор с backoff
    unexpected - неизвестная ошибка; тоже повтор (задачи идемпотентны,
                 число повторов ограничено max_attempts), но логируется как error
    """
    if isinstance(err, PermanentTaskError):
        return ERR_PERMANENT
    if isinstance(err, _TRANSIENT_EXCEPTIONS):
        return ERR_TRANSIENT
    if isinstance(err, DBAPIError) and err.connection_invalidated:
        return ERR_TRANSIENT
    return ERR_UNEXPECTED


def error_code(err: BaseException) -> str:
    if isinstance(err, AppError):
        return err.code
    return type(err).__name__


def short_error(err: BaseException, limit: int = 300) -> str:
    text = err.message if isinstance(err, AppError) else str(err)
    return f"{error_code(err)}: {text[:limit]}"
