"""
Единые ошибки и коды ошибок.

Назначение:
- предсказуемые коды для HTTP/очередей/DLQ
- классификация сбоев очистки: повторяемые / постоянные / недоступен пайплайн
"""

from __future__ import annotations

from dataclasses import dataclass


class ErrCode:
    # Общие
    UNKNOWN = "unknown"
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"

    # Housekeeper
    TRANSIENT_STORE = "transient_store"
    PERMANENT_TASK = "permanent_task"
    PIPELINE_UNAVAILABLE = "pipeline_unavailable"
    HANDLER_TIMEOUT = "handler_timeout"

    # Инфра/хранилища
    DB_ERROR = "db_error"
    REDIS_ERROR = "redis_error"


@dataclass
class AppError(Exception):
    """
    Базовая ошибка приложения.
    - code: стабильный код ошибки
    - message: безопасное сообщение
    - details: доп. данные (без секретов/PII)
    """

    code: str
    message: str
    details: dict | None = None

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code}: {self.message}"


class ValidationError(AppError):
    def __init__(self, message: str = "Ошибка валидации", details: dict | None = None) -> None:
        super().__init__(ErrCode.VALIDATION, message, details)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Не авторизован", details: dict | None = None) -> None:
        super().__init__(ErrCode.UNAUTHORIZED, message, details)


class NotFoundError(AppError):
    def __init__(self, message: str = "Не найдено", details: dict | None = None) -> None:
        super().__init__(ErrCode.NOT_FOUND, message, details)


class TransientStoreError(AppError):
    """
    Временный сбой хранилища (таймаут, недоступность).
    Задача уходит на повтор с backoff.
    """

    def __init__(
        self,
        message: str = "Хранилище временно недоступно",
        details: dict | None = None,
        code: str = ErrCode.TRANSIENT_STORE,
    ) -> None:
        super().__init__(code, message, details)


class PermanentTaskError(AppError):
    """
    Некорректная или неподдерживаемая задача.
    Повторять бессмысленно: сразу в DLQ.
    """

    def __init__(self, message: str = "Некорректная задача", details: dict | None = None) -> None:
        super().__init__(ErrCode.PERMANENT_TASK, message, details)


class PipelineUnavailableError(AppError):
    """
    Канал задач недоступен в момент постановки.
    Повтор - на уровне доставки события удаления.
    """

    def __init__(
        self, message: str = "Очередь задач недоступна", details: dict | None = None
    ) -> None:
        super().__init__(ErrCode.PIPELINE_UNAVAILABLE, message, details)
