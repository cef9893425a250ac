"""
Базовые элементы обработчиков задач очистки.

Назначение:
- контракт обработчика (TaskHandler)
- реестр обработчиков по типу задачи
- перевод сбоев хранилищ в TransientStoreError
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from typing import Protocol

from entity_housekeeper.common.errors import (
    AppError,
    PermanentTaskError,
    TransientStoreError,
)
from entity_housekeeper.domain.entities import EntityId
from entity_housekeeper.domain.enums import HousekeeperTaskType
from entity_housekeeper.queue.retry import ERR_TRANSIENT, classify_error
from entity_housekeeper.queue.tasks import HousekeeperTask


class TaskHandler(Protocol):
    task_type: HousekeeperTaskType

    def process(self, task: HousekeeperTask) -> None: ...


class HandlerRegistry:
    def __init__(self, handlers: Iterable[TaskHandler] = ()) -> None:
        self._handlers: dict[HousekeeperTaskType, TaskHandler] = {}
        for handler in handlers:
            self.register(handler)

    def register(self, handler: TaskHandler) -> None:
        self._handlers[handler.task_type] = handler

    def get(self, task_type: HousekeeperTaskType) -> TaskHandler:
        handler = self._handlers.get(task_type)
        if handler is None:
            raise PermanentTaskError(
                "Нет обработчика для типа задачи",
                details={"task_type": getattr(task_type, "value", str(task_type))},
            )
        return handler

    def __contains__(self, task_type: HousekeeperTaskType) -> bool:
        return task_type in self._handlers

    def task_types(self) -> list[HousekeeperTaskType]:
        return list(self._handlers)


def require_entity_id(task: HousekeeperTask) -> EntityId:
    if task.entity_id is None:
        raise PermanentTaskError(
            "В задаче нет entity_id",
            details={"task_id": task.task_id, "task_type": task.task_type.value},
        )
    return task.entity_id


@contextmanager
def store_errors(store: str) -> Iterator[None]:
    """
    Временные сбои инфраструктуры хранилища -> TransientStoreError.
    Ошибки приложения и прочие исключения пробрасываются как есть.
    """
    try:
        yield
    except AppError:
        raise
    except Exception as e:
        if classify_error(e) != ERR_TRANSIENT:
            raise
        raise TransientStoreError(
            details={"store": store, "err": f"{type(e).__name__}: {str(e)[:200]}"}
        ) from e
