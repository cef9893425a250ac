"""
CleanUpService - реакция на удаление сущностей.

Алгоритм on_entity_deleted:
1) связи сущности удаляются синхронно (не через очередь)
2) атрибуты, телеметрия, события, алармы - задачи в канал (одной пачкой)
3) для пользователя - дополнительно снятие назначений с алармов
4) для tenant - удаление всех его сущностей (remove_tenant_entities)

Без пайплайна (HOUSEKEEPER_MODE=disabled):
- per-entity очистка выполняется теми же обработчиками inline
- remove_tenant_entities - синхронный delete_by_tenant_id по реестрам
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from entity_housekeeper.common.errors import ValidationError
from entity_housekeeper.common.logging import get_housekeeper_logger
from entity_housekeeper.contracts.stores import EntityRegistry, RelationStore
from entity_housekeeper.domain.entities import EntityDeletedEvent, EntityId
from entity_housekeeper.domain.enums import EntityType
from entity_housekeeper.handlers.base import HandlerRegistry
from entity_housekeeper.queue import tasks as task_factory
from entity_housekeeper.queue.retry import short_error
from entity_housekeeper.queue.tasks import HousekeeperTask

from .housekeeper_service import HousekeeperService

log = get_housekeeper_logger()


class CleanUpService:
    def __init__(
        self,
        *,
        relations: RelationStore,
        registries: Mapping[EntityType, EntityRegistry],
        housekeeper: HousekeeperService | None,
        inline_handlers: HandlerRegistry | None = None,
        skip_relation_types: Iterable[EntityType] = (),
        tenant_owned_types: Iterable[EntityType] | None = None,
    ) -> None:
        if housekeeper is None and inline_handlers is None:
            raise ValueError("inline_handlers обязательны без пайплайна")
        self.relations = relations
        self.registries = dict(registries)
        self.housekeeper = housekeeper
        self.inline_handlers = inline_handlers
        self.skip_relation_types = frozenset(skip_relation_types)
        if tenant_owned_types is None:
            tenant_owned_types = [t for t in self.registries if t != EntityType.TENANT]
        self.tenant_owned_types = tuple(tenant_owned_types)

    @property
    def pipeline_enabled(self) -> bool:
        return self.housekeeper is not None

    # ------------------------------------------------------------ listener
    def on_entity_deleted(self, event: EntityDeletedEvent) -> None:
        tenant_id, entity_id = event.tenant_id, event.entity_id
        self._delete_relations(tenant_id, entity_id)

        batch = self._related_data_tasks(tenant_id, entity_id)
        if entity_id.entity_type == EntityType.USER:
            user = {**(event.entity or {}), "id": entity_id.id}
            batch.append(task_factory.unassign_alarms(tenant_id, user))
        self._dispatch(batch)

        if entity_id.entity_type == EntityType.TENANT and self.tenant_owned_types:
            self.remove_tenant_entities(entity_id.id, *self.tenant_owned_types)

    def clean_up_related_data(self, tenant_id: str, entity_id: EntityId) -> None:
        self._delete_relations(tenant_id, entity_id)
        self._dispatch(self._related_data_tasks(tenant_id, entity_id))

    @staticmethod
    def _related_data_tasks(tenant_id: str, entity_id: EntityId) -> list[HousekeeperTask]:
        return [
            task_factory.delete_attributes(tenant_id, entity_id),
            task_factory.delete_telemetry(tenant_id, entity_id),
            task_factory.delete_events(tenant_id, entity_id),
            task_factory.delete_entity_alarms(tenant_id, entity_id),
        ]

    def _delete_relations(self, tenant_id: str, entity_id: EntityId) -> None:
        if entity_id.entity_type in self.skip_relation_types:
            log.debug(
                "housekeeper_relations_skipped",
                extra={"payload": {"tenant_id": tenant_id, "entity_id": str(entity_id)}},
            )
            return
        removed = self.relations.delete_entity_relations(tenant_id, entity_id)
        log.info(
            "housekeeper_relations_deleted",
            extra={
                "payload": {
                    "tenant_id": tenant_id,
                    "entity_id": str(entity_id),
                    "removed": removed,
                }
            },
        )

    def _dispatch(self, batch: list[HousekeeperTask]) -> None:
        if self.housekeeper is not None:
            self.housekeeper.submit_all(batch)
            return
        self._run_inline(batch)

    def _run_inline(self, batch: list[HousekeeperTask]) -> None:
        first_error: Exception | None = None
        for task in batch:
            try:
                self.inline_handlers.get(task.task_type).process(task)
            except Exception as e:
                log.error(
                    "housekeeper_inline_cleanup_failed",
                    extra={"payload": {"task": task.to_payload(), "err": short_error(e)}},
                )
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    # ------------------------------------------------------ tenant teardown
    def remove_tenant_entities(self, tenant_id: str, *entity_types: EntityType) -> None:
        unknown = [t.value for t in entity_types if t not in self.registries]
        if unknown:
            raise ValidationError(
                "Нет реестра для типа сущности", details={"entity_types": unknown}
            )

        if self.housekeeper is not None:
            self.housekeeper.submit_all(
                task_factory.delete_entities(tenant_id, t) for t in entity_types
            )
            return

        for entity_type in entity_types:
            removed = self.registries[entity_type].delete_by_tenant_id(tenant_id)
            log.info(
                "housekeeper_tenant_entities_removed_sync",
                extra={
                    "payload": {
                        "tenant_id": tenant_id,
                        "entity_type": entity_type.value,
                        "removed": removed,
                    }
                },
            )
