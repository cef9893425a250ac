"""
Инициальная миграция reference-схемы.

Создаёт таблицы:
- tenants, devices, users, rule_chains, rule_nodes
- relations, attribute_kv, ts_kv, ts_kv_latest, events, alarms
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

_ENTITY_TYPES = (
    "TENANT",
    "CUSTOMER",
    "USER",
    "DEVICE",
    "ASSET",
    "RULE_CHAIN",
    "RULE_NODE",
    "DASHBOARD",
)


def _entity_type() -> sa.Enum:
    # тип создаётся один раз в upgrade()
    return postgresql.ENUM(*_ENTITY_TYPES, name="entitytype", create_type=False)


def _owned(name: str, *columns: sa.Column) -> None:
    op.create_table(
        name,
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        *columns,
    )
    op.create_index(f"ix_{name}_tenant_id", name, ["tenant_id"], unique=False)


def upgrade() -> None:
    bind = op.get_bind()
    sa.Enum(*_ENTITY_TYPES, name="entitytype").create(bind, checkfirst=True)

    op.create_table(
        "tenants",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    _owned(
        "devices",
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=255), nullable=False),
    )
    _owned(
        "users",
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("first_name", sa.String(length=255), nullable=True),
        sa.Column("last_name", sa.String(length=255), nullable=True),
    )
    _owned("rule_chains", sa.Column("name", sa.String(length=255), nullable=False))
    _owned(
        "rule_nodes",
        sa.Column(
            "rule_chain_id", sa.String(length=64), sa.ForeignKey("rule_chains.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=255), nullable=False),
    )
    op.create_index("ix_rule_nodes_rule_chain_id", "rule_nodes", ["rule_chain_id"], unique=False)

    op.create_table(
        "relations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("from_type", _entity_type(), nullable=False),
        sa.Column("from_id", sa.String(length=64), nullable=False),
        sa.Column("to_type", _entity_type(), nullable=False),
        sa.Column("to_id", sa.String(length=64), nullable=False),
        sa.Column("relation_type", sa.String(length=255), nullable=False),
        sa.Column("relation_type_group", sa.String(length=64), nullable=False),
    )
    op.create_index("ix_relations_from", "relations", ["from_type", "from_id"], unique=False)
    op.create_index("ix_relations_to", "relations", ["to_type", "to_id"], unique=False)

    op.create_table(
        "attribute_kv",
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("entity_type", _entity_type(), primary_key=True),
        sa.Column("entity_id", sa.String(length=64), primary_key=True),
        sa.Column(
            "attribute_scope",
            sa.Enum("CLIENT_SCOPE", "SERVER_SCOPE", "SHARED_SCOPE", name="attributescope"),
            primary_key=True,
        ),
        sa.Column("attribute_key", sa.String(length=255), primary_key=True),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("last_update_ts", sa.BigInteger(), nullable=False),
    )

    op.create_table(
        "ts_kv",
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("entity_type", _entity_type(), primary_key=True),
        sa.Column("entity_id", sa.String(length=64), primary_key=True),
        sa.Column("key", sa.String(length=255), primary_key=True),
        sa.Column("ts", sa.BigInteger(), primary_key=True),
        sa.Column("value", sa.JSON(), nullable=True),
    )
    op.create_table(
        "ts_kv_latest",
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("entity_type", _entity_type(), primary_key=True),
        sa.Column("entity_id", sa.String(length=64), primary_key=True),
        sa.Column("key", sa.String(length=255), primary_key=True),
        sa.Column("ts", sa.BigInteger(), nullable=False),
        sa.Column("value", sa.JSON(), nullable=True),
    )

    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("entity_type", _entity_type(), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column(
            "event_type",
            sa.Enum(
                "LC_EVENT",
                "ERROR",
                "STATS",
                "DEBUG_RULE_NODE",
                "DEBUG_RULE_CHAIN",
                name="eventtype",
            ),
            nullable=False,
        ),
        sa.Column("ts", sa.BigInteger(), nullable=False),
        sa.Column("body", sa.JSON(), nullable=False),
    )
    op.create_index(
        "ix_events_entity", "events", ["tenant_id", "entity_type", "entity_id"], unique=False
    )

    op.create_table(
        "alarms",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("originator_type", _entity_type(), nullable=False),
        sa.Column("originator_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=255), nullable=False),
        sa.Column("severity", sa.String(length=32), nullable=False),
        sa.Column("assignee_id", sa.String(length=64), nullable=True),
        sa.Column("created_ts", sa.BigInteger(), nullable=False),
    )
    op.create_index(
        "ix_alarms_originator",
        "alarms",
        ["tenant_id", "originator_type", "originator_id"],
        unique=False,
    )
    op.create_index("ix_alarms_assignee", "alarms", ["tenant_id", "assignee_id"], unique=False)


def downgrade() -> None:
    for name in (
        "alarms",
        "events",
        "ts_kv_latest",
        "ts_kv",
        "attribute_kv",
        "relations",
        "rule_nodes",
        "rule_chains",
        "users",
        "devices",
        "tenants",
    ):
        op.drop_table(name)
    bind = op.get_bind()
    for enum_name in ("eventtype", "attributescope", "entitytype"):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
