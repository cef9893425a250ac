"""
Канал задач очистки (Task Channel).

Гарантии контракта:
- at-least-once доставка
- задачи одного ключа (tenant_id + entity_id) доставляются в порядке постановки
  и никогда не обрабатываются двумя потребителями одновременно
- задачи разных ключей обрабатываются параллельно

Реализация гарантий:
- ключ хэшируется (CRC32) в одну из N партиций
- партицию в каждый момент читает не больше одного воркера (lease)

Здесь же - in-memory реализация (HOUSEKEEPER_MODE=memory, тесты).
Redis Streams реализация - в streams.py.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
import zlib
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Protocol

from entity_housekeeper.common.errors import PermanentTaskError
from entity_housekeeper.common.time import utc_now_iso

from .tasks import HousekeeperTask


def partition_for(key: str, partitions: int) -> int:
    return zlib.crc32(key.encode("utf-8")) % max(1, partitions)


@dataclass(frozen=True)
class QueueDepth:
    pending: int
    delayed: int
    dead_letters: int


@dataclass(frozen=True)
class DeadLetter:
    entry_id: str
    raw: str
    reason: str
    error: str | None
    dead_lettered_at: str

    def task(self) -> HousekeeperTask | None:
        try:
            return HousekeeperTask.from_json(self.raw)
        except PermanentTaskError:
            return None


@dataclass
class Delivery:
    """
    Доставленная задача + handle подтверждения.

    Ровно один из ack()/nack() должен быть вызван.
    """

    task: HousekeeperTask
    entry_id: str
    partition: int
    _on_ack: Callable[[], None] = field(repr=False)
    _on_nack: Callable[[HousekeeperTask, float], None] = field(repr=False)
    resolved: bool = False

    def ack(self) -> None:
        if self.resolved:
            return
        self._on_ack()
        self.resolved = True

    def nack(self, delay_sec: float, *, error: str | None = None) -> None:
        """
        Повторная доставка не раньше чем через delay_sec, с attempt + 1.
        """
        if self.resolved:
            return
        self._on_nack(self.task.next_attempt(error), max(0.0, float(delay_sec)))
        self.resolved = True


class TaskChannel(Protocol):
    partitions: int

    def submit(self, task: HousekeeperTask) -> None: ...

    def submit_all(self, tasks: Iterable[HousekeeperTask]) -> None: ...

    def next_batch(self, partition: int, *, limit: int, block_ms: int = 0) -> list[Delivery]: ...

    def promote_due(self) -> int: ...

    def lease(self, partition: int, owner: str, ttl_sec: float) -> bool: ...

    def release(self, partition: int, owner: str) -> None: ...

    def dead_letter(self, task: HousekeeperTask, *, reason: str, error: str | None) -> None: ...

    def dead_letter_raw(self, raw: str, *, reason: str, error: str | None) -> None: ...

    def dead_letters(self, limit: int = 100) -> list[DeadLetter]: ...

    def remove_dead_letter(self, entry_id: str) -> DeadLetter | None: ...

    def depth(self) -> QueueDepth: ...


# =============================================================================
# IN-MEMORY
# =============================================================================
class InMemoryTaskChannel:
    """
    Канал в памяти процесса.

    Неподтверждённые доставки возвращаются в голову партиции при release(),
    что даёт ту же семантику at-least-once, что и pending entries в Redis.
    """

    def __init__(self, partitions: int = 16, *, dlq_maxlen: int = 100_000) -> None:
        self.partitions = max(1, int(partitions))
        self._dlq_maxlen = max(1, int(dlq_maxlen))
        self._cond = threading.Condition()
        self._seq = itertools.count(1)
        self._queues: list[deque[tuple[str, HousekeeperTask]]] = [
            deque() for _ in range(self.partitions)
        ]
        self._inflight: list[dict[str, HousekeeperTask]] = [{} for _ in range(self.partitions)]
        self._delayed: list[tuple[float, int, HousekeeperTask]] = []
        self._leases: dict[int, tuple[str, float]] = {}
        self._dead: dict[str, DeadLetter] = {}

    # ---------------------------------------------------------------- submit
    def submit(self, task: HousekeeperTask) -> None:
        self.submit_all([task])

    def submit_all(self, tasks: Iterable[HousekeeperTask]) -> None:
        with self._cond:
            for task in tasks:
                self._append(task)
            self._cond.notify_all()

    def _append(self, task: HousekeeperTask) -> None:
        p = partition_for(task.ordering_key, self.partitions)
        self._queues[p].append((str(next(self._seq)), task))

    # ----------------------------------------------------------------- read
    def next_batch(self, partition: int, *, limit: int, block_ms: int = 0) -> list[Delivery]:
        deadline = time.monotonic() + max(0, block_ms) / 1000
        with self._cond:
            queue = self._queues[partition]
            while not queue:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return []
                self._cond.wait(timeout=remaining)

            out: list[Delivery] = []
            while queue and len(out) < max(1, limit):
                entry_id, task = queue.popleft()
                self._inflight[partition][entry_id] = task
                out.append(self._delivery(partition, entry_id, task))
            return out

    def _delivery(self, partition: int, entry_id: str, task: HousekeeperTask) -> Delivery:
        def _ack() -> None:
            with self._cond:
                self._inflight[partition].pop(entry_id, None)

        def _nack(retry: HousekeeperTask, delay_sec: float) -> None:
            with self._cond:
                due = time.monotonic() + delay_sec
                heapq.heappush(self._delayed, (due, next(self._seq), retry))
                self._inflight[partition].pop(entry_id, None)

        return Delivery(
            task=task, entry_id=entry_id, partition=partition, _on_ack=_ack, _on_nack=_nack
        )

    def promote_due(self) -> int:
        now = time.monotonic()
        moved = 0
        with self._cond:
            while self._delayed and self._delayed[0][0] <= now:
                _, _, task = heapq.heappop(self._delayed)
                self._append(task)
                moved += 1
            if moved:
                self._cond.notify_all()
        return moved

    # ---------------------------------------------------------------- lease
    def lease(self, partition: int, owner: str, ttl_sec: float) -> bool:
        now = time.monotonic()
        with self._cond:
            held = self._leases.get(partition)
            if held and held[0] != owner and held[1] > now:
                return False
            if held and held[0] != owner:
                # Владелец "умер" (lease истёк): возвращаем его доставки
                self._requeue_inflight(partition)
            self._leases[partition] = (owner, now + max(0.001, ttl_sec))
            return True

    def release(self, partition: int, owner: str) -> None:
        with self._cond:
            held = self._leases.get(partition)
            if not held or held[0] != owner:
                return
            self._requeue_inflight(partition)
            self._leases.pop(partition, None)

    def _requeue_inflight(self, partition: int) -> None:
        inflight = self._inflight[partition]
        if not inflight:
            return
        # Возвращаем в голову, сохраняя исходный порядок
        for entry_id in sorted(inflight, key=int, reverse=True):
            self._queues[partition].appendleft((entry_id, inflight[entry_id]))
        inflight.clear()

    # ------------------------------------------------------------------ DLQ
    def dead_letter(self, task: HousekeeperTask, *, reason: str, error: str | None) -> None:
        self.dead_letter_raw(task.to_json(), reason=reason, error=error)

    def dead_letter_raw(self, raw: str, *, reason: str, error: str | None) -> None:
        with self._cond:
            entry_id = str(next(self._seq))
            self._dead[entry_id] = DeadLetter(
                entry_id=entry_id,
                raw=raw,
                reason=reason,
                error=error,
                dead_lettered_at=utc_now_iso(),
            )
            while len(self._dead) > self._dlq_maxlen:
                self._dead.pop(next(iter(self._dead)))

    def dead_letters(self, limit: int = 100) -> list[DeadLetter]:
        with self._cond:
            items = list(self._dead.values())
        return list(reversed(items))[: max(0, limit)]

    def remove_dead_letter(self, entry_id: str) -> DeadLetter | None:
        with self._cond:
            return self._dead.pop(entry_id, None)

    def depth(self) -> QueueDepth:
        with self._cond:
            pending = sum(len(q) for q in self._queues) + sum(len(i) for i in self._inflight)
            return QueueDepth(
                pending=pending, delayed=len(self._delayed), dead_letters=len(self._dead)
            )
