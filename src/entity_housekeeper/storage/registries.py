"""
Реестры сущностей (reference, SQLAlchemy).

Назначение:
- перечисление сущностей tenant'а страницами
- удаление сущности с публикацией EntityDeletedEvent после commit
- удаление всех сущностей tenant'а (синхронный fallback без пайплайна)

Важно:
- delete_entity публикует то же событие, что и прямое удаление,
  поэтому очистка зависимых данных запускается рекурсивно
- delete_by_tenant_id удаляет сущности по одной через delete_entity:
  каждая получает своё событие удаления и свою очистку
"""

from __future__ import annotations

from sqlalchemy.orm import Session, sessionmaker

from entity_housekeeper.common.logging import get_project_logger
from entity_housekeeper.domain.entities import EntityDeletedEvent, EntityId
from entity_housekeeper.domain.enums import EntityType

from .db import db_session
from .events import DeletionEventBus
from .models import Base, Device, RuleChain, RuleNode, Tenant, User

log = get_project_logger()


class SqlEntityRegistry:
    def __init__(
        self,
        entity_type: EntityType,
        model: type[Base],
        session_factory: sessionmaker[Session],
        bus: DeletionEventBus,
        *,
        page_size: int = 100,
    ) -> None:
        self.entity_type = entity_type
        self.page_size = max(1, int(page_size))
        self.model = model
        self.session_factory = session_factory
        self.bus = bus

    def save(self, **fields) -> EntityId:
        with db_session(self.session_factory) as s:
            row = self.model(**fields)
            s.add(row)
            s.flush()
            return EntityId(self.entity_type, row.id)

    def exists(self, entity_id: EntityId) -> bool:
        with db_session(self.session_factory) as s:
            return s.get(self.model, entity_id.id) is not None

    def _tenant_filter(self):
        return self.model.tenant_id

    def find_ids_by_tenant_id(
        self, tenant_id: str, *, limit: int, offset: int = 0
    ) -> list[EntityId]:
        with db_session(self.session_factory) as s:
            rows = (
                s.query(self.model.id)
                .filter(self._tenant_filter() == tenant_id)
                .order_by(self.model.id.asc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [EntityId(self.entity_type, r[0]) for r in rows]

    def _delete_row(self, s: Session, tenant_id: str, row: Base) -> None:
        snapshot = row.snapshot()
        s.delete(row)
        self.bus.stage(
            s,
            EntityDeletedEvent(
                tenant_id=tenant_id,
                entity_id=EntityId(self.entity_type, row.id),
                entity=snapshot,
            ),
        )

    def delete_entity(self, tenant_id: str, entity_id: EntityId) -> bool:
        """
        Удаляет сущность. Отсутствующая строка - не ошибка (False).
        """
        with db_session(self.session_factory) as s:
            row = s.get(self.model, entity_id.id)
            if row is None or row.tenant_id != tenant_id:
                return False
            self._delete_row(s, tenant_id, row)
            return True

    def delete_by_tenant_id(self, tenant_id: str) -> int:
        removed = 0
        while True:
            page = self.find_ids_by_tenant_id(tenant_id, limit=self.page_size)
            deleted = sum(1 for eid in page if self.delete_entity(tenant_id, eid))
            removed += deleted
            # удалённые строки уходят из выборки, поэтому offset всегда 0
            if len(page) < self.page_size or deleted == 0:
                break
        log.info(
            "entities_deleted_by_tenant",
            extra={
                "payload": {
                    "tenant_id": tenant_id,
                    "entity_type": self.entity_type.value,
                    "removed": removed,
                }
            },
        )
        return removed


class SqlTenantRegistry(SqlEntityRegistry):
    def __init__(
        self, session_factory: sessionmaker[Session], bus: DeletionEventBus, **kw
    ) -> None:
        super().__init__(EntityType.TENANT, Tenant, session_factory, bus, **kw)

    def _tenant_filter(self):
        return Tenant.id


class SqlRuleChainRegistry(SqlEntityRegistry):
    """
    Удаление цепочки правил каскадно удаляет её узлы;
    по каждому узлу публикуется собственное событие удаления.
    """

    def __init__(
        self, session_factory: sessionmaker[Session], bus: DeletionEventBus, **kw
    ) -> None:
        super().__init__(EntityType.RULE_CHAIN, RuleChain, session_factory, bus, **kw)

    def _delete_row(self, s: Session, tenant_id: str, row: Base) -> None:
        nodes = s.query(RuleNode).filter(RuleNode.rule_chain_id == row.id).all()
        for node in nodes:
            snapshot = node.snapshot()
            s.delete(node)
            self.bus.stage(
                s,
                EntityDeletedEvent(
                    tenant_id=tenant_id,
                    entity_id=EntityId(EntityType.RULE_NODE, node.id),
                    entity=snapshot,
                ),
            )
        # узлы должны уйти раньше цепочки (FK rule_nodes.rule_chain_id)
        s.flush()
        super()._delete_row(s, tenant_id, row)


def build_sql_registries(
    session_factory: sessionmaker[Session], bus: DeletionEventBus, *, page_size: int = 100
) -> dict[EntityType, SqlEntityRegistry]:
    """
    Статическая карта тип -> реестр, строится один раз при старте.
    """
    kw = {"page_size": page_size}
    return {
        EntityType.TENANT: SqlTenantRegistry(session_factory, bus, **kw),
        EntityType.DEVICE: SqlEntityRegistry(EntityType.DEVICE, Device, session_factory, bus, **kw),
        EntityType.USER: SqlEntityRegistry(EntityType.USER, User, session_factory, bus, **kw),
        EntityType.RULE_CHAIN: SqlRuleChainRegistry(session_factory, bus, **kw),
        EntityType.RULE_NODE: SqlEntityRegistry(
            EntityType.RULE_NODE, RuleNode, session_factory, bus, **kw
        ),
    }
