"""
ORM-модели reference-хранилищ.

Назначение:
- первичные сущности (tenant, device, user, rule chain, rule node)
- зависимые данные: связи, атрибуты, телеметрия, события, алармы

Важно:
- зависимые таблицы НЕ ссылаются на сущности внешними ключами:
  строка сущности удаляется раньше, чем асинхронная очистка доходит до данных
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from entity_housekeeper.common.time import utc_now
from entity_housekeeper.domain.enums import AttributeScope, EntityType, EventType


# =============================================================================
# BASE
# =============================================================================
class Base(DeclarativeBase):
    pass


class _EntityMixin:
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    def snapshot(self) -> dict[str, Any]:
        return {"id": self.id, "tenant_id": self.tenant_id}


# =============================================================================
# ПЕРВИЧНЫЕ СУЩНОСТИ
# =============================================================================
class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    @property
    def tenant_id(self) -> str:
        # tenant - владелец самого себя
        return self.id

    def snapshot(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title}


class Device(_EntityMixin, Base):
    __tablename__ = "devices"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(255), default="default", nullable=False)

    def snapshot(self) -> dict[str, Any]:
        return {"id": self.id, "tenant_id": self.tenant_id, "name": self.name, "type": self.type}


class User(_EntityMixin, Base):
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
        }


class RuleChain(_EntityMixin, Base):
    __tablename__ = "rule_chains"

    name: Mapped[str] = mapped_column(String(255), nullable=False)


class RuleNode(_EntityMixin, Base):
    __tablename__ = "rule_nodes"

    rule_chain_id: Mapped[str] = mapped_column(
        ForeignKey("rule_chains.id"), index=True, nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(255), default="", nullable=False)

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "rule_chain_id": self.rule_chain_id,
            "name": self.name,
        }


# =============================================================================
# СВЯЗИ
# =============================================================================
class Relation(Base):
    __tablename__ = "relations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    from_type: Mapped[EntityType] = mapped_column(Enum(EntityType), nullable=False)
    from_id: Mapped[str] = mapped_column(String(64), nullable=False)
    to_type: Mapped[EntityType] = mapped_column(Enum(EntityType), nullable=False)
    to_id: Mapped[str] = mapped_column(String(64), nullable=False)
    relation_type: Mapped[str] = mapped_column(String(255), nullable=False)
    relation_type_group: Mapped[str] = mapped_column(String(64), default="COMMON", nullable=False)

    __table_args__ = (
        Index("ix_relations_from", "from_type", "from_id"),
        Index("ix_relations_to", "to_type", "to_id"),
    )


# =============================================================================
# АТРИБУТЫ
# =============================================================================
class AttributeKv(Base):
    __tablename__ = "attribute_kv"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[EntityType] = mapped_column(Enum(EntityType), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    attribute_scope: Mapped[AttributeScope] = mapped_column(Enum(AttributeScope), primary_key=True)
    attribute_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    last_update_ts: Mapped[int] = mapped_column(BigInteger, nullable=False)


# =============================================================================
# ТЕЛЕМЕТРИЯ (история + latest)
# =============================================================================
class TsKv(Base):
    __tablename__ = "ts_kv"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[EntityType] = mapped_column(Enum(EntityType), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    ts: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)


class TsKvLatest(Base):
    __tablename__ = "ts_kv_latest"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[EntityType] = mapped_column(Enum(EntityType), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    ts: Mapped[int] = mapped_column(BigInteger, nullable=False)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)


# =============================================================================
# СОБЫТИЯ
# =============================================================================
class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[EntityType] = mapped_column(Enum(EntityType), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[EventType] = mapped_column(Enum(EventType), nullable=False)
    ts: Mapped[int] = mapped_column(BigInteger, nullable=False)
    body: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    __table_args__ = (Index("ix_events_entity", "tenant_id", "entity_type", "entity_id"),)


# =============================================================================
# АЛАРМЫ
# =============================================================================
class Alarm(Base):
    __tablename__ = "alarms"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    originator_type: Mapped[EntityType] = mapped_column(Enum(EntityType), nullable=False)
    originator_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(255), nullable=False)
    severity: Mapped[str] = mapped_column(String(32), default="MAJOR", nullable=False)
    assignee_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_ts: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        Index("ix_alarms_originator", "tenant_id", "originator_type", "originator_id"),
        Index("ix_alarms_assignee", "tenant_id", "assignee_id"),
    )
