"""
Reference-реализации контрактов хранилищ на SQLAlchemy.

Правила:
- Никакой бизнес-логики
- Каждая операция - своя короткая транзакция (db_session)
- Удаления идемпотентны: повтор возвращает 0
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session, sessionmaker

from entity_housekeeper.contracts.stores import KvEntry, ReadTsKvQuery
from entity_housekeeper.domain.entities import EntityId
from entity_housekeeper.domain.enums import AttributeScope, EventType

from .db import db_session
from .models import Alarm, AttributeKv, Event, Relation, TsKv, TsKvLatest


class _SqlStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def _session(self):
        return db_session(self.session_factory)


# =============================================================================
# RELATIONS
# =============================================================================
class SqlRelationStore(_SqlStore):
    def save(
        self,
        tenant_id: str,
        from_id: EntityId,
        to_id: EntityId,
        relation_type: str = "Contains",
    ) -> None:
        with self._session() as s:
            s.add(
                Relation(
                    tenant_id=tenant_id,
                    from_type=from_id.entity_type,
                    from_id=from_id.id,
                    to_type=to_id.entity_type,
                    to_id=to_id.id,
                    relation_type=relation_type,
                )
            )

    def delete_entity_relations(self, tenant_id: str, entity_id: EntityId) -> int:
        """Удаляет связи в обе стороны (только в пределах tenant'а)."""
        with self._session() as s:
            return (
                s.query(Relation)
                .filter(
                    Relation.tenant_id == tenant_id,
                    or_(
                        and_(
                            Relation.from_type == entity_id.entity_type,
                            Relation.from_id == entity_id.id,
                        ),
                        and_(
                            Relation.to_type == entity_id.entity_type,
                            Relation.to_id == entity_id.id,
                        ),
                    )
                )
                .delete(synchronize_session=False)
            )

    def count_for(self, entity_id: EntityId) -> int:
        with self._session() as s:
            return (
                s.query(Relation)
                .filter(
                    or_(
                        and_(
                            Relation.from_type == entity_id.entity_type,
                            Relation.from_id == entity_id.id,
                        ),
                        and_(
                            Relation.to_type == entity_id.entity_type,
                            Relation.to_id == entity_id.id,
                        ),
                    )
                )
                .count()
            )


# =============================================================================
# ATTRIBUTES
# =============================================================================
class SqlAttributeStore(_SqlStore):
    def save(
        self,
        tenant_id: str,
        entity_id: EntityId,
        scope: AttributeScope,
        key: str,
        value: Any,
        ts: int,
    ) -> None:
        with self._session() as s:
            s.merge(
                AttributeKv(
                    tenant_id=tenant_id,
                    entity_type=entity_id.entity_type,
                    entity_id=entity_id.id,
                    attribute_scope=scope,
                    attribute_key=key,
                    value=value,
                    last_update_ts=ts,
                )
            )

    def delete_all(self, tenant_id: str, entity_id: EntityId) -> int:
        with self._session() as s:
            return (
                s.query(AttributeKv)
                .filter(
                    AttributeKv.entity_type == entity_id.entity_type,
                    AttributeKv.entity_id == entity_id.id,
                )
                .delete(synchronize_session=False)
            )

    def find(
        self, tenant_id: str, entity_id: EntityId, scope: AttributeScope, key: str
    ) -> KvEntry | None:
        with self._session() as s:
            row = s.get(AttributeKv, (entity_id.entity_type, entity_id.id, scope, key))
            if row is None:
                return None
            return KvEntry(key=row.attribute_key, value=row.value, ts=row.last_update_ts)


# =============================================================================
# TIMESERIES
# =============================================================================
class SqlTimeseriesStore(_SqlStore):
    def save(self, tenant_id: str, entity_id: EntityId, key: str, value: Any, ts: int) -> None:
        with self._session() as s:
            s.merge(
                TsKv(
                    tenant_id=tenant_id,
                    entity_type=entity_id.entity_type,
                    entity_id=entity_id.id,
                    key=key,
                    ts=ts,
                    value=value,
                )
            )
            latest = s.get(TsKvLatest, (entity_id.entity_type, entity_id.id, key))
            if latest is None:
                s.add(
                    TsKvLatest(
                        tenant_id=tenant_id,
                        entity_type=entity_id.entity_type,
                        entity_id=entity_id.id,
                        key=key,
                        ts=ts,
                        value=value,
                    )
                )
            elif ts >= latest.ts:
                latest.ts = ts
                latest.value = value

    def delete_all(self, tenant_id: str, entity_id: EntityId) -> int:
        """История и latest, все ключи."""
        with self._session() as s:
            removed = (
                s.query(TsKv)
                .filter(TsKv.entity_type == entity_id.entity_type, TsKv.entity_id == entity_id.id)
                .delete(synchronize_session=False)
            )
            removed += (
                s.query(TsKvLatest)
                .filter(
                    TsKvLatest.entity_type == entity_id.entity_type,
                    TsKvLatest.entity_id == entity_id.id,
                )
                .delete(synchronize_session=False)
            )
            return removed

    def find_latest(self, tenant_id: str, entity_id: EntityId, key: str) -> KvEntry | None:
        with self._session() as s:
            row = s.get(TsKvLatest, (entity_id.entity_type, entity_id.id, key))
            if row is None:
                return None
            return KvEntry(key=row.key, value=row.value, ts=row.ts)

    def find_all(
        self, tenant_id: str, entity_id: EntityId, queries: list[ReadTsKvQuery]
    ) -> list[KvEntry]:
        out: list[KvEntry] = []
        with self._session() as s:
            for q in queries:
                order = TsKv.ts.asc() if q.order.upper() == "ASC" else TsKv.ts.desc()
                rows = (
                    s.query(TsKv)
                    .filter(
                        TsKv.entity_type == entity_id.entity_type,
                        TsKv.entity_id == entity_id.id,
                        TsKv.key == q.key,
                        TsKv.ts >= q.start_ts,
                        TsKv.ts < q.end_ts,
                    )
                    .order_by(order)
                    .limit(q.limit)
                    .all()
                )
                out.extend(KvEntry(key=r.key, value=r.value, ts=r.ts) for r in rows)
        return out


# =============================================================================
# EVENTS
# =============================================================================
class SqlEventStore(_SqlStore):
    def save(
        self,
        tenant_id: str,
        entity_id: EntityId,
        event_type: EventType,
        ts: int,
        body: dict | None = None,
    ) -> None:
        with self._session() as s:
            s.add(
                Event(
                    tenant_id=tenant_id,
                    entity_type=entity_id.entity_type,
                    entity_id=entity_id.id,
                    event_type=event_type,
                    ts=ts,
                    body=body or {},
                )
            )

    def delete_all(self, tenant_id: str, entity_id: EntityId) -> int:
        with self._session() as s:
            return (
                s.query(Event)
                .filter(
                    Event.tenant_id == tenant_id,
                    Event.entity_type == entity_id.entity_type,
                    Event.entity_id == entity_id.id,
                )
                .delete(synchronize_session=False)
            )

    def find_events(
        self, tenant_id: str, entity_id: EntityId, event_type: EventType, limit: int = 100
    ) -> list[dict[str, Any]]:
        with self._session() as s:
            rows = (
                s.query(Event)
                .filter(
                    Event.tenant_id == tenant_id,
                    Event.entity_type == entity_id.entity_type,
                    Event.entity_id == entity_id.id,
                    Event.event_type == event_type,
                )
                .order_by(Event.ts.desc())
                .limit(limit)
                .all()
            )
            return [{"id": r.id, "ts": r.ts, "type": r.event_type.value, "body": r.body} for r in rows]


# =============================================================================
# ALARMS
# =============================================================================
class SqlAlarmStore(_SqlStore):
    def save(
        self,
        *,
        alarm_id: str,
        tenant_id: str,
        originator: EntityId,
        alarm_type: str,
        created_ts: int,
        assignee_id: str | None = None,
    ) -> None:
        with self._session() as s:
            s.add(
                Alarm(
                    id=alarm_id,
                    tenant_id=tenant_id,
                    originator_type=originator.entity_type,
                    originator_id=originator.id,
                    type=alarm_type,
                    created_ts=created_ts,
                    assignee_id=assignee_id,
                )
            )

    def get(self, alarm_id: str) -> Alarm | None:
        with self._session() as s:
            return s.get(Alarm, alarm_id)

    def delete_entity_alarms(self, tenant_id: str, entity_id: EntityId) -> int:
        with self._session() as s:
            return (
                s.query(Alarm)
                .filter(
                    Alarm.tenant_id == tenant_id,
                    Alarm.originator_type == entity_id.entity_type,
                    Alarm.originator_id == entity_id.id,
                )
                .delete(synchronize_session=False)
            )

    def find_alarm_ids_by_assignee_id(
        self, tenant_id: str, user_id: str, limit: int = 100
    ) -> list[str]:
        with self._session() as s:
            rows = (
                s.query(Alarm.id)
                .filter(Alarm.tenant_id == tenant_id, Alarm.assignee_id == user_id)
                .order_by(Alarm.created_ts.asc())
                .limit(limit)
                .all()
            )
            return [r[0] for r in rows]

    def unassign(self, tenant_id: str, alarm_id: str) -> bool:
        with self._session() as s:
            updated = (
                s.query(Alarm)
                .filter(Alarm.tenant_id == tenant_id, Alarm.id == alarm_id)
                .filter(Alarm.assignee_id.is_not(None))
                .update({Alarm.assignee_id: None}, synchronize_session=False)
            )
            return bool(updated)
