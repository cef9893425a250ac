"""
Обработчики задач очистки.

Правила:
- каждый обработчик идемпотентен по (tenant_id, entity_id):
  повтор после успеха или частичного выполнения - no-op / дочистка
- отсутствие строки сущности - не ошибка
- некорректная задача -> PermanentTaskError
- сбой хранилища -> TransientStoreError (повтор с backoff)
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from entity_housekeeper.common.errors import PermanentTaskError
from entity_housekeeper.common.logging import get_housekeeper_logger
from entity_housekeeper.contracts.stores import (
    AlarmStore,
    AttributeStore,
    EntityRegistry,
    EventStore,
    RelationStore,
    TimeseriesStore,
)
from entity_housekeeper.domain.entities import EntityId
from entity_housekeeper.domain.enums import EntityType, HousekeeperTaskType
from entity_housekeeper.queue.tasks import HousekeeperTask

from .base import HandlerRegistry, require_entity_id, store_errors

log = get_housekeeper_logger()


class _EntityScopedHandler:
    """
    Обработчик "удалить всё по сущности" в одном хранилище.
    """

    task_type: HousekeeperTaskType
    store_name: str

    def process(self, task: HousekeeperTask) -> None:
        entity_id = require_entity_id(task)
        with store_errors(self.store_name):
            removed = self._delete(task.tenant_id, entity_id)
        log.info(
            "housekeeper_data_deleted",
            extra={
                "payload": {
                    "task_id": task.task_id,
                    "store": self.store_name,
                    "tenant_id": task.tenant_id,
                    "entity_id": str(entity_id),
                    "removed": removed,
                }
            },
        )

    def _delete(self, tenant_id: str, entity_id: EntityId) -> int:
        raise NotImplementedError


class DeleteAttributesHandler(_EntityScopedHandler):
    task_type = HousekeeperTaskType.DELETE_ATTRIBUTES
    store_name = "attributes"

    def __init__(self, attributes: AttributeStore) -> None:
        self.attributes = attributes

    def _delete(self, tenant_id: str, entity_id: EntityId) -> int:
        # все области атрибутов сразу
        return self.attributes.delete_all(tenant_id, entity_id)


class DeleteTelemetryHandler(_EntityScopedHandler):
    task_type = HousekeeperTaskType.DELETE_TELEMETRY
    store_name = "timeseries"

    def __init__(self, timeseries: TimeseriesStore) -> None:
        self.timeseries = timeseries

    def _delete(self, tenant_id: str, entity_id: EntityId) -> int:
        return self.timeseries.delete_all(tenant_id, entity_id)


class DeleteEventsHandler(_EntityScopedHandler):
    task_type = HousekeeperTaskType.DELETE_EVENTS
    store_name = "events"

    def __init__(self, events: EventStore) -> None:
        self.events = events

    def _delete(self, tenant_id: str, entity_id: EntityId) -> int:
        return self.events.delete_all(tenant_id, entity_id)


class DeleteEntityAlarmsHandler(_EntityScopedHandler):
    task_type = HousekeeperTaskType.DELETE_ENTITY_ALARMS
    store_name = "alarms"

    def __init__(self, alarms: AlarmStore) -> None:
        self.alarms = alarms

    def _delete(self, tenant_id: str, entity_id: EntityId) -> int:
        return self.alarms.delete_entity_alarms(tenant_id, entity_id)


class DeleteRelationsHandler(_EntityScopedHandler):
    task_type = HousekeeperTaskType.DELETE_RELATIONS
    store_name = "relations"

    def __init__(self, relations: RelationStore) -> None:
        self.relations = relations

    def _delete(self, tenant_id: str, entity_id: EntityId) -> int:
        return self.relations.delete_entity_relations(tenant_id, entity_id)


class UnassignAlarmsHandler:
    """
    Снимает назначение с алармов удалённого пользователя.
    Сами алармы остаются.
    """

    task_type = HousekeeperTaskType.UNASSIGN_ALARMS

    def __init__(self, alarms: AlarmStore, *, page_size: int = 100) -> None:
        self.alarms = alarms
        self.page_size = max(1, int(page_size))

    @staticmethod
    def _user_id(task: HousekeeperTask) -> str:
        user: Any = (task.payload or {}).get("user")
        if not isinstance(user, dict) or not user.get("id"):
            raise PermanentTaskError(
                "В задаче нет снимка пользователя",
                details={"task_id": task.task_id},
            )
        return str(user["id"])

    def process(self, task: HousekeeperTask) -> None:
        user_id = self._user_id(task)
        total = 0
        while True:
            with store_errors("alarms"):
                alarm_ids = self.alarms.find_alarm_ids_by_assignee_id(
                    task.tenant_id, user_id, limit=self.page_size
                )
                if not alarm_ids:
                    break
                unassigned = sum(1 for a in alarm_ids if self.alarms.unassign(task.tenant_id, a))
            total += unassigned
            if unassigned == 0:
                # страница не сдвинулась: дальше будет то же самое
                log.warning(
                    "housekeeper_unassign_stalled",
                    extra={"payload": {"task_id": task.task_id, "alarms": alarm_ids[:10]}},
                )
                break
        log.info(
            "housekeeper_alarms_unassigned",
            extra={
                "payload": {
                    "task_id": task.task_id,
                    "tenant_id": task.tenant_id,
                    "user_id": user_id,
                    "unassigned": total,
                }
            },
        )


class DeleteEntitiesByTypeHandler:
    """
    Удаляет все сущности типа у tenant'а, страницами.

    Каждая сущность удаляется через свой реестр, который публикует то же
    событие удаления, что и прямое удаление; по нему запускается очистка
    зависимых данных (рекурсия).
    """

    task_type = HousekeeperTaskType.DELETE_ENTITIES_BY_TYPE

    def __init__(
        self, registries: Mapping[EntityType, EntityRegistry], *, page_size: int = 100
    ) -> None:
        self.registries = registries
        self.page_size = max(1, int(page_size))

    def process(self, task: HousekeeperTask) -> None:
        entity_type = task.entity_type_filter
        if entity_type is None:
            raise PermanentTaskError(
                "В задаче нет entity_type_filter", details={"task_id": task.task_id}
            )
        registry = self.registries.get(entity_type)
        if registry is None:
            raise PermanentTaskError(
                "Нет реестра для типа сущности",
                details={"task_id": task.task_id, "entity_type": entity_type.value},
            )

        offset = 0
        deleted = 0
        store = f"registry:{entity_type.value}"
        while True:
            with store_errors(store):
                page = registry.find_ids_by_tenant_id(
                    task.tenant_id, limit=self.page_size, offset=offset
                )
            if not page:
                break
            removed = 0
            for entity_id in page:
                with store_errors(store):
                    if registry.delete_entity(task.tenant_id, entity_id):
                        removed += 1
            deleted += removed
            # неудалённые строки остаются в выборке: сдвигаемся за них
            offset += len(page) - removed
            if len(page) < self.page_size:
                break

        log.info(
            "housekeeper_entities_deleted",
            extra={
                "payload": {
                    "task_id": task.task_id,
                    "tenant_id": task.tenant_id,
                    "entity_type": entity_type.value,
                    "deleted": deleted,
                }
            },
        )


def build_handlers(
    *,
    relations: RelationStore,
    attributes: AttributeStore,
    timeseries: TimeseriesStore,
    events: EventStore,
    alarms: AlarmStore,
    registries: Mapping[EntityType, EntityRegistry],
    page_size: int = 100,
) -> HandlerRegistry:
    return HandlerRegistry(
        [
            DeleteAttributesHandler(attributes),
            DeleteTelemetryHandler(timeseries),
            DeleteEventsHandler(events),
            DeleteEntityAlarmsHandler(alarms),
            DeleteRelationsHandler(relations),
            UnassignAlarmsHandler(alarms, page_size=page_size),
            DeleteEntitiesByTypeHandler(registries, page_size=page_size),
        ]
    )
