"""
Сборка подсистемы очистки.

Назначение:
- один раз при старте определить режим пайплайна (capability flag)
- построить хранилища, канал, сервис, обработчики, процессор и слушатель
  с явными зависимостями
- подписать слушатель на шину событий удаления
"""

from __future__ import annotations

from dataclasses import dataclass

import redis as redis_lib
from sqlalchemy.orm import Session, sessionmaker

from entity_housekeeper.common.config import get_settings, parse_csv
from entity_housekeeper.common.errors import ValidationError
from entity_housekeeper.common.logging import get_project_logger
from entity_housekeeper.domain.enums import EntityType, HousekeeperMode
from entity_housekeeper.handlers.base import HandlerRegistry
from entity_housekeeper.handlers.cleanup import build_handlers
from entity_housekeeper.queue.channel import InMemoryTaskChannel, TaskChannel
from entity_housekeeper.queue.redis import redis_client
from entity_housekeeper.queue.streams import RedisStreamTaskChannel
from entity_housekeeper.storage.db import get_session_factory
from entity_housekeeper.storage.events import DeletionEventBus
from entity_housekeeper.storage.registries import SqlEntityRegistry, build_sql_registries
from entity_housekeeper.storage.repositories import (
    SqlAlarmStore,
    SqlAttributeStore,
    SqlEventStore,
    SqlRelationStore,
    SqlTimeseriesStore,
)

from .cleanup_service import CleanUpService
from .housekeeper_service import HousekeeperService
from .task_processor import HousekeeperTaskProcessor

log = get_project_logger()


@dataclass
class HousekeeperRuntime:
    mode: HousekeeperMode
    session_factory: sessionmaker[Session]
    bus: DeletionEventBus
    relations: SqlRelationStore
    attributes: SqlAttributeStore
    timeseries: SqlTimeseriesStore
    events: SqlEventStore
    alarms: SqlAlarmStore
    registries: dict[EntityType, SqlEntityRegistry]
    handlers: HandlerRegistry
    cleanup: CleanUpService
    channel: TaskChannel | None = None
    housekeeper: HousekeeperService | None = None
    processor: HousekeeperTaskProcessor | None = None


def resolve_mode(raw: str | HousekeeperMode | None = None) -> HousekeeperMode:
    value = raw if raw is not None else get_settings().housekeeper_mode
    try:
        return HousekeeperMode(str(getattr(value, "value", value)).strip().lower())
    except ValueError as e:
        raise ValidationError(
            "Некорректный HOUSEKEEPER_MODE", details={"value": str(value)}
        ) from e


def parse_entity_types(raw: str | None) -> list[EntityType]:
    out: list[EntityType] = []
    for item in parse_csv(raw):
        try:
            out.append(EntityType(item.upper()))
        except ValueError as e:
            raise ValidationError("Неизвестный тип сущности", details={"value": item}) from e
    return out


def build_channel(mode: HousekeeperMode, redis: redis_lib.Redis | None = None) -> TaskChannel | None:
    s = get_settings()
    if mode == HousekeeperMode.redis:
        return RedisStreamTaskChannel(
            redis or redis_client(),
            partitions=s.housekeeper_partitions,
            dlq_maxlen=s.housekeeper_dlq_maxlen,
        )
    if mode == HousekeeperMode.memory:
        return InMemoryTaskChannel(s.housekeeper_partitions, dlq_maxlen=s.housekeeper_dlq_maxlen)
    return None


def build_housekeeper(
    session_factory: sessionmaker[Session] | None = None,
    *,
    mode: str | HousekeeperMode | None = None,
    redis: redis_lib.Redis | None = None,
    channel: TaskChannel | None = None,
) -> HousekeeperRuntime:
    s = get_settings()
    resolved = resolve_mode(mode)
    factory = session_factory or get_session_factory()
    bus = DeletionEventBus()

    relations = SqlRelationStore(factory)
    attributes = SqlAttributeStore(factory)
    timeseries = SqlTimeseriesStore(factory)
    events = SqlEventStore(factory)
    alarms = SqlAlarmStore(factory)
    registries = build_sql_registries(
        factory, bus, page_size=s.housekeeper_entities_page_size
    )

    handlers = build_handlers(
        relations=relations,
        attributes=attributes,
        timeseries=timeseries,
        events=events,
        alarms=alarms,
        registries=registries,
        page_size=s.housekeeper_entities_page_size,
    )

    if resolved == HousekeeperMode.disabled:
        channel = None
    elif channel is None:
        channel = build_channel(resolved, redis)
    housekeeper = HousekeeperService(channel) if channel is not None else None
    processor = (
        HousekeeperTaskProcessor.from_settings(channel, handlers) if channel is not None else None
    )

    cleanup = CleanUpService(
        relations=relations,
        registries=registries,
        housekeeper=housekeeper,
        inline_handlers=handlers,
        skip_relation_types=parse_entity_types(s.housekeeper_relation_cleanup_skip_types),
    )
    bus.subscribe(cleanup.on_entity_deleted)

    log.info(
        "housekeeper_runtime_built",
        extra={
            "payload": {
                "mode": resolved.value,
                "partitions": getattr(channel, "partitions", None),
                "registries": sorted(t.value for t in registries),
            }
        },
    )
    return HousekeeperRuntime(
        mode=resolved,
        session_factory=factory,
        bus=bus,
        relations=relations,
        attributes=attributes,
        timeseries=timeseries,
        events=events,
        alarms=alarms,
        registries=registries,
        handlers=handlers,
        cleanup=cleanup,
        channel=channel,
        housekeeper=housekeeper,
        processor=processor,
    )


_runtime: HousekeeperRuntime | None = None


def get_runtime() -> HousekeeperRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_housekeeper()
    return _runtime
