"""
Инициализация базы данных и сессий SQLAlchemy.

Назначение:
- Создание engine (лениво, из POSTGRES_DSN)
- Контекстный менеджер для сессий
- Единая точка доступа к БД для reference-хранилищ
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from entity_housekeeper.common.config import get_settings

# =============================================================================
# ENGINE / SESSION FACTORY
# =============================================================================
_session_factory: sessionmaker[Session] | None = None


def build_engine(dsn: str) -> Engine:
    connect_args = {}
    if dsn.startswith("sqlite"):
        # воркеры ходят в БД из своих потоков
        connect_args["check_same_thread"] = False
    return create_engine(dsn, pool_pre_ping=True, connect_args=connect_args)


def build_session_factory(dsn: str | None = None) -> sessionmaker[Session]:
    engine = build_engine(dsn or get_settings().postgres_dsn)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def get_session_factory() -> sessionmaker[Session]:
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory()
    return _session_factory


# =============================================================================
# CONTEXT MANAGER
# =============================================================================
@contextmanager
def db_session(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    """
    Контекстный менеджер для работы с БД.

    Использование:
        with db_session() as session:
            session.add(...)
    """
    session: Session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
