"""
Доменные перечисления (enum).

Используются во всей системе:
- типы сущностей платформы
- типы задач очистки
- области атрибутов и типы событий
"""

from __future__ import annotations

import enum


class EntityType(str, enum.Enum):
    """
    Тип удаляемой сущности.
    """

    TENANT = "TENANT"
    CUSTOMER = "CUSTOMER"
    USER = "USER"
    DEVICE = "DEVICE"
    ASSET = "ASSET"
    RULE_CHAIN = "RULE_CHAIN"
    RULE_NODE = "RULE_NODE"
    DASHBOARD = "DASHBOARD"


class HousekeeperTaskType(str, enum.Enum):
    """
    Тип задачи очистки.
    """

    DELETE_ATTRIBUTES = "DELETE_ATTRIBUTES"
    DELETE_TELEMETRY = "DELETE_TELEMETRY"
    DELETE_EVENTS = "DELETE_EVENTS"
    DELETE_ENTITY_ALARMS = "DELETE_ENTITY_ALARMS"
    DELETE_RELATIONS = "DELETE_RELATIONS"
    DELETE_ENTITIES_BY_TYPE = "DELETE_ENTITIES_BY_TYPE"
    UNASSIGN_ALARMS = "UNASSIGN_ALARMS"


class AttributeScope(str, enum.Enum):
    CLIENT_SCOPE = "CLIENT_SCOPE"
    SERVER_SCOPE = "SERVER_SCOPE"
    SHARED_SCOPE = "SHARED_SCOPE"


class EventType(str, enum.Enum):
    LC_EVENT = "LC_EVENT"
    ERROR = "ERROR"
    STATS = "STATS"
    DEBUG_RULE_NODE = "DEBUG_RULE_NODE"
    DEBUG_RULE_CHAIN = "DEBUG_RULE_CHAIN"


class HousekeeperMode(str, enum.Enum):
    """
    Режим пайплайна. disabled - асинхронной очереди нет, работает fallback.
    """

    redis = "redis"
    memory = "memory"
    disabled = "disabled"
