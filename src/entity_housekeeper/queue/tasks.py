"""
Контракт задачи очистки (HousekeeperTask).

Правила:
- payload задачи в очереди - JSON
- поле schema_version обязательно (для эволюции контрактов)
- (tenant_id, entity_id) не меняются после создания
- меняется только attempt, и только через повтор (новое значение задачи)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from entity_housekeeper.common.errors import PermanentTaskError
from entity_housekeeper.common.ids import new_task_id
from entity_housekeeper.common.time import parse_iso, utc_now
from entity_housekeeper.contracts.versions import QUEUE_SCHEMA_VERSION
from entity_housekeeper.domain.entities import EntityId
from entity_housekeeper.domain.enums import EntityType, HousekeeperTaskType


@dataclass(frozen=True)
class HousekeeperTask:
    task_type: HousekeeperTaskType
    tenant_id: str
    entity_id: EntityId | None = None
    entity_type_filter: EntityType | None = None
    payload: dict[str, Any] | None = None
    attempt: int = 0
    created_at: datetime = field(default_factory=utc_now)
    task_id: str = field(default_factory=new_task_id)
    error: str | None = None

    @property
    def ordering_key(self) -> str:
        """
        Ключ партиционирования: tenant_id + entity_id
        (для массового удаления - tenant_id + тип сущностей).
        """
        if self.entity_id is not None:
            return f"{self.tenant_id}:{self.entity_id}"
        if self.entity_type_filter is not None:
            return f"{self.tenant_id}:{self.entity_type_filter.value}"
        return self.tenant_id

    def next_attempt(self, error: str | None = None) -> HousekeeperTask:
        return replace(self, attempt=self.attempt + 1, error=error)

    def with_error(self, error: str | None) -> HousekeeperTask:
        return replace(self, error=error)

    def to_payload(self) -> dict[str, Any]:
        return {
            "schema_version": QUEUE_SCHEMA_VERSION,
            "task_id": self.task_id,
            "task_type": self.task_type.value,
            "tenant_id": self.tenant_id,
            "entity_id": self.entity_id.to_dict() if self.entity_id else None,
            "entity_type_filter": (
                self.entity_type_filter.value if self.entity_type_filter else None
            ),
            "payload": self.payload,
            "attempt": self.attempt,
            "created_at": self.created_at.isoformat(),
            "error": self.error,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), ensure_ascii=False)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> HousekeeperTask:
        if not isinstance(data, dict):
            raise PermanentTaskError("Payload задачи должен быть объектом")
        if data.get("schema_version") != QUEUE_SCHEMA_VERSION:
            raise PermanentTaskError(
                "Неподдерживаемая версия схемы задачи",
                details={"schema_version": data.get("schema_version")},
            )
        try:
            raw_entity = data.get("entity_id")
            raw_filter = data.get("entity_type_filter")
            return cls(
                task_type=HousekeeperTaskType(data["task_type"]),
                tenant_id=str(data["tenant_id"]),
                entity_id=EntityId.from_dict(raw_entity) if raw_entity else None,
                entity_type_filter=EntityType(raw_filter) if raw_filter else None,
                payload=data.get("payload"),
                attempt=int(data.get("attempt") or 0),
                created_at=parse_iso(data.get("created_at")) or utc_now(),
                task_id=str(data.get("task_id") or new_task_id()),
                error=data.get("error"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentTaskError(
                "Некорректный payload задачи", details={"err": str(e)[:200]}
            ) from e

    @classmethod
    def from_json(cls, raw: str | bytes) -> HousekeeperTask:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise PermanentTaskError("Payload задачи не JSON", details={"err": str(e)[:200]}) from e
        return cls.from_payload(data)


# =============================================================================
# ФАБРИКИ
# =============================================================================
def delete_attributes(tenant_id: str, entity_id: EntityId) -> HousekeeperTask:
    return HousekeeperTask(HousekeeperTaskType.DELETE_ATTRIBUTES, tenant_id, entity_id)


def delete_telemetry(tenant_id: str, entity_id: EntityId) -> HousekeeperTask:
    return HousekeeperTask(HousekeeperTaskType.DELETE_TELEMETRY, tenant_id, entity_id)


def delete_events(tenant_id: str, entity_id: EntityId) -> HousekeeperTask:
    return HousekeeperTask(HousekeeperTaskType.DELETE_EVENTS, tenant_id, entity_id)


def delete_entity_alarms(tenant_id: str, entity_id: EntityId) -> HousekeeperTask:
    return HousekeeperTask(HousekeeperTaskType.DELETE_ENTITY_ALARMS, tenant_id, entity_id)


def delete_relations(tenant_id: str, entity_id: EntityId) -> HousekeeperTask:
    return HousekeeperTask(HousekeeperTaskType.DELETE_RELATIONS, tenant_id, entity_id)


def delete_entities(tenant_id: str, entity_type: EntityType) -> HousekeeperTask:
    return HousekeeperTask(
        HousekeeperTaskType.DELETE_ENTITIES_BY_TYPE,
        tenant_id,
        entity_type_filter=entity_type,
    )


def unassign_alarms(tenant_id: str, user: dict[str, Any]) -> HousekeeperTask:
    """
    user - снимок удалённого пользователя (минимум: id).
    """
    return HousekeeperTask(
        HousekeeperTaskType.UNASSIGN_ALARMS,
        tenant_id,
        EntityId(EntityType.USER, str(user["id"])),
        payload={"user": dict(user)},
    )
