"""
Узкие контракты внешних хранилищ.

Важно:
- ядро очистки зависит только от этих протоколов
- физические схемы хранилищ ядру не принадлежат
- все операции удаления идемпотентны: повтор по уже очищенной сущности - no-op
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from entity_housekeeper.domain.entities import EntityId, EntityDeletedEvent
from entity_housekeeper.domain.enums import AttributeScope, EntityType, EventType


@dataclass(frozen=True)
class KvEntry:
    key: str
    value: Any
    ts: int


@dataclass(frozen=True)
class ReadTsKvQuery:
    key: str
    start_ts: int
    end_ts: int
    limit: int = 100
    order: str = "DESC"


class RelationStore(Protocol):
    def delete_entity_relations(self, tenant_id: str, entity_id: EntityId) -> int: ...


class AttributeStore(Protocol):
    def delete_all(self, tenant_id: str, entity_id: EntityId) -> int: ...

    def find(
        self, tenant_id: str, entity_id: EntityId, scope: AttributeScope, key: str
    ) -> KvEntry | None: ...


class TimeseriesStore(Protocol):
    def delete_all(self, tenant_id: str, entity_id: EntityId) -> int: ...

    def find_latest(self, tenant_id: str, entity_id: EntityId, key: str) -> KvEntry | None: ...

    def find_all(
        self, tenant_id: str, entity_id: EntityId, queries: list[ReadTsKvQuery]
    ) -> list[KvEntry]: ...


class EventStore(Protocol):
    def delete_all(self, tenant_id: str, entity_id: EntityId) -> int: ...

    def find_events(
        self, tenant_id: str, entity_id: EntityId, event_type: EventType, limit: int = 100
    ) -> list[dict[str, Any]]: ...


class AlarmStore(Protocol):
    def delete_entity_alarms(self, tenant_id: str, entity_id: EntityId) -> int: ...

    def find_alarm_ids_by_assignee_id(
        self, tenant_id: str, user_id: str, limit: int = 100
    ) -> list[str]: ...

    def unassign(self, tenant_id: str, alarm_id: str) -> bool: ...


class EntityRegistry(Protocol):
    """
    Реестр сущностей одного типа (deletion-capable интерфейс).
    """

    entity_type: EntityType

    def find_ids_by_tenant_id(
        self, tenant_id: str, *, limit: int, offset: int = 0
    ) -> list[EntityId]: ...

    def delete_entity(self, tenant_id: str, entity_id: EntityId) -> bool: ...

    def delete_by_tenant_id(self, tenant_id: str) -> int: ...


class DeletionListener(Protocol):
    def __call__(self, event: EntityDeletedEvent) -> None: ...
