"""
Шина событий удаления сущностей (after-commit).

Назначение:
- транзакция удаления "откладывает" EntityDeletedEvent на сессии
- после durable commit событие доставляется подписчикам ровно один раз
- при rollback отложенные события отбрасываются

Важно:
- удаление сущности никогда не падает из-за проблем очистки:
  ошибки подписчиков логируются, PipelineUnavailableError повторяется
  ограниченное число раз, дальше - error-лог для ручной сверки
"""

from __future__ import annotations

import time
from collections.abc import Callable

from sqlalchemy import event as sa_event
from sqlalchemy.orm import Session

from entity_housekeeper.common.errors import PipelineUnavailableError
from entity_housekeeper.common.logging import get_project_logger
from entity_housekeeper.domain.entities import EntityDeletedEvent

log = get_project_logger()

_PENDING_KEY = "housekeeper_pending_deletions"
_BOUND_KEY = "housekeeper_bus_bound"


class DeletionEventBus:
    def __init__(self, *, delivery_attempts: int = 3, retry_backoff_sec: float = 0.2) -> None:
        self._listeners: list[Callable[[EntityDeletedEvent], None]] = []
        self._delivery_attempts = max(1, int(delivery_attempts))
        self._retry_backoff_sec = max(0.0, float(retry_backoff_sec))

    def subscribe(self, listener: Callable[[EntityDeletedEvent], None]) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------- staging
    def stage(self, session: Session, event: EntityDeletedEvent) -> None:
        """
        Отложить событие до commit транзакции `session`.
        """
        session.info.setdefault(_PENDING_KEY, []).append(event)
        if not session.info.get(_BOUND_KEY):
            sa_event.listen(session, "after_commit", self._after_commit)
            sa_event.listen(session, "after_soft_rollback", self._after_rollback)
            session.info[_BOUND_KEY] = True

    def _after_commit(self, session: Session) -> None:
        pending = session.info.pop(_PENDING_KEY, [])
        for ev in pending:
            self.publish(ev)

    def _after_rollback(self, session: Session, previous_transaction) -> None:
        if previous_transaction.parent is not None:
            # откат savepoint; внешняя транзакция ещё может закоммититься
            return
        dropped = session.info.pop(_PENDING_KEY, [])
        if dropped:
            log.info("deletion_events_discarded", extra={"payload": {"count": len(dropped)}})

    # ------------------------------------------------------------ delivery
    def publish(self, event: EntityDeletedEvent) -> None:
        for listener in self._listeners:
            self._deliver(listener, event)

    def _deliver(self, listener: Callable[[EntityDeletedEvent], None], event: EntityDeletedEvent) -> None:
        payload = {"tenant_id": event.tenant_id, "entity_id": str(event.entity_id)}
        for attempt in range(1, self._delivery_attempts + 1):
            try:
                listener(event)
                return
            except PipelineUnavailableError as e:
                log.warning(
                    "deletion_listener_pipeline_unavailable",
                    extra={"payload": {**payload, "attempt": attempt, "err": e.message}},
                )
                if attempt < self._delivery_attempts and self._retry_backoff_sec:
                    time.sleep(self._retry_backoff_sec * attempt)
            except Exception as e:
                log.error(
                    "deletion_listener_failed",
                    extra={"payload": {**payload, "err": str(e)[:300]}},
                    exc_info=True,
                )
                return
        log.error("deletion_event_dropped", extra={"payload": payload})
