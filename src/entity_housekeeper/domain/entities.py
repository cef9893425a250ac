"""
Доменные значения: идентификатор сущности и событие её удаления.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .enums import EntityType


@dataclass(frozen=True)
class EntityId:
    entity_type: EntityType
    id: str

    def to_dict(self) -> dict[str, str]:
        return {"entity_type": self.entity_type.value, "id": self.id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntityId:
        return cls(entity_type=EntityType(data["entity_type"]), id=str(data["id"]))

    def __str__(self) -> str:
        return f"{self.entity_type.value}:{self.id}"


@dataclass(frozen=True)
class EntityDeletedEvent:
    """
    Уведомление об удалении сущности (после durable commit).

    entity - снимок удалённой сущности (JSON-совместимый dict),
    нужен обработчикам, которым требуются поля, которых в БД уже нет.
    """

    tenant_id: str
    entity_id: EntityId
    entity: dict[str, Any] | None = field(default=None, compare=False)
