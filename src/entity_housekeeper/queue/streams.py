"""
Канал задач на Redis Streams.

Схема ключей:
- q:housekeeper:<p>        - stream партиции p (consumer group g:housekeeper)
- q:housekeeper:delayed    - ZSET отложенных повторов (score = unix-время готовности)
- q:housekeeper:dlq        - stream DLQ
- lease:housekeeper:<p>    - lease партиции (захват/продление/снятие - Lua-скрипты)

Важно:
- у партиции фиксированное имя consumer'а (p<p>), поэтому новый владелец lease
  сначала перечитывает pending-записи упавшего владельца (at-least-once)
- ack = XACK + XDEL, nack = ZADD в delayed + XACK + XDEL (одна транзакция)
"""

from __future__ import annotations

import time
from collections.abc import Iterable

import redis

from entity_housekeeper.common.errors import PermanentTaskError, PipelineUnavailableError
from entity_housekeeper.common.ids import new_uuid
from entity_housekeeper.common.logging import get_project_logger
from entity_housekeeper.common.time import utc_now_iso

from .channel import DeadLetter, Delivery, QueueDepth, partition_for
from .tasks import HousekeeperTask

log = get_project_logger()

Q_HOUSEKEEPER = "q:housekeeper"
GROUP_HOUSEKEEPER = "g:housekeeper"
Q_DELAYED = f"{Q_HOUSEKEEPER}:delayed"
LEASE_PREFIX = "lease:housekeeper"
PROMOTE_LEASE = f"{LEASE_PREFIX}:promote"
PROMOTE_BATCH = 500

# захват или продление: ключ свободен либо уже наш
LEASE_ACQUIRE_LUA = """
local holder = redis.call("GET", KEYS[1])
if holder == false or holder == ARGV[1] then
    redis.call("SET", KEYS[1], ARGV[1], "PX", ARGV[2])
    return 1
end
return 0
"""

# снятие только своим владельцем
LEASE_RELEASE_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


def stream_name(partition: int) -> str:
    return f"{Q_HOUSEKEEPER}:{partition}"


def stream_dlq_name(queue: str) -> str:
    return f"{queue}:dlq"


Q_DLQ = stream_dlq_name(Q_HOUSEKEEPER)


def consumer_name(partition: int) -> str:
    return f"p{partition}"


def _entries(resp) -> list[tuple[str, dict | None]]:
    if not resp:
        return []
    out: list[tuple[str, dict | None]] = []
    for _stream, items in resp:
        out.extend((entry_id, fields) for entry_id, fields in items)
    return out


class RedisStreamTaskChannel:
    def __init__(
        self,
        client: redis.Redis,
        *,
        partitions: int = 16,
        dlq_maxlen: int = 100_000,
    ) -> None:
        self.partitions = max(1, int(partitions))
        self._r = client
        self._dlq_maxlen = max(1, int(dlq_maxlen))
        self._groups_ready: set[int] = set()
        self._owner = f"promote:{new_uuid()}"
        self._lease_acquire = client.register_script(LEASE_ACQUIRE_LUA)
        self._lease_release = client.register_script(LEASE_RELEASE_LUA)

    # ---------------------------------------------------------------- submit
    def submit(self, task: HousekeeperTask) -> None:
        self.submit_all([task])

    def submit_all(self, tasks: Iterable[HousekeeperTask]) -> None:
        """
        Все задачи пачки ставятся атомарно (MULTI/EXEC) или не ставятся вовсе.
        """
        tasks = list(tasks)
        if not tasks:
            return
        try:
            pipe = self._r.pipeline(transaction=True)
            for task in tasks:
                p = partition_for(task.ordering_key, self.partitions)
                pipe.xadd(stream_name(p), {"task": task.to_json()})
            pipe.execute()
        except redis.RedisError as e:
            log.error(
                "housekeeper_submit_failed",
                extra={"payload": {"tasks": len(tasks), "err": str(e)[:200]}},
            )
            raise PipelineUnavailableError(details={"err": str(e)[:200]}) from e

    # ----------------------------------------------------------------- read
    def _ensure_group(self, partition: int) -> None:
        if partition in self._groups_ready:
            return
        try:
            self._r.xgroup_create(stream_name(partition), GROUP_HOUSEKEEPER, id="0", mkstream=True)
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._groups_ready.add(partition)

    def next_batch(self, partition: int, *, limit: int, block_ms: int = 0) -> list[Delivery]:
        self._ensure_group(partition)
        stream = stream_name(partition)
        consumer = consumer_name(partition)
        count = max(1, limit)

        # Сначала - pending от прошлого владельца партиции
        entries = _entries(
            self._r.xreadgroup(GROUP_HOUSEKEEPER, consumer, {stream: "0"}, count=count)
        )
        if not entries:
            entries = _entries(
                self._r.xreadgroup(
                    GROUP_HOUSEKEEPER,
                    consumer,
                    {stream: ">"},
                    count=count,
                    block=block_ms if block_ms > 0 else None,
                )
            )

        out: list[Delivery] = []
        for entry_id, fields in entries:
            raw = (fields or {}).get("task")
            if raw is None:
                # Запись удалена (XDEL), но осталась в PEL
                self._ack(stream, entry_id)
                continue
            try:
                task = HousekeeperTask.from_json(raw)
            except PermanentTaskError as e:
                self.dead_letter_raw(raw, reason="malformed", error=str(e.message))
                self._ack(stream, entry_id)
                continue
            out.append(self._delivery(partition, entry_id, task))
        return out

    def _ack(self, stream: str, entry_id: str) -> None:
        pipe = self._r.pipeline(transaction=True)
        pipe.xack(stream, GROUP_HOUSEKEEPER, entry_id)
        pipe.xdel(stream, entry_id)
        pipe.execute()

    def _delivery(self, partition: int, entry_id: str, task: HousekeeperTask) -> Delivery:
        stream = stream_name(partition)

        def _ack() -> None:
            self._ack(stream, entry_id)

        def _nack(retry: HousekeeperTask, delay_sec: float) -> None:
            pipe = self._r.pipeline(transaction=True)
            pipe.zadd(Q_DELAYED, {retry.to_json(): time.time() + delay_sec})
            pipe.xack(stream, GROUP_HOUSEKEEPER, entry_id)
            pipe.xdel(stream, entry_id)
            pipe.execute()

        return Delivery(
            task=task, entry_id=entry_id, partition=partition, _on_ack=_ack, _on_nack=_nack
        )

    def promote_due(self) -> int:
        """
        Переносит готовые отложенные повторы обратно в их партиции.
        Выполняется только владельцем promote-lease.
        """
        owner = self._owner
        if not self._acquire(PROMOTE_LEASE, owner, ttl_sec=30):
            return 0
        moved = 0
        try:
            due = self._r.zrangebyscore(Q_DELAYED, "-inf", time.time(), start=0, num=PROMOTE_BATCH)
            for raw in due:
                try:
                    task = HousekeeperTask.from_json(raw)
                except PermanentTaskError as e:
                    self.dead_letter_raw(raw, reason="malformed", error=str(e.message))
                    self._r.zrem(Q_DELAYED, raw)
                    continue
                p = partition_for(task.ordering_key, self.partitions)
                pipe = self._r.pipeline(transaction=True)
                pipe.zrem(Q_DELAYED, raw)
                pipe.xadd(stream_name(p), {"task": raw})
                pipe.execute()
                moved += 1
        finally:
            self._release(PROMOTE_LEASE, owner)
        return moved

    # ---------------------------------------------------------------- lease
    def _acquire(self, key: str, owner: str, ttl_sec: float) -> bool:
        ttl_ms = max(1, int(ttl_sec * 1000))
        return bool(self._lease_acquire(keys=[key], args=[owner, ttl_ms]))

    def _release(self, key: str, owner: str) -> None:
        self._lease_release(keys=[key], args=[owner])

    def lease(self, partition: int, owner: str, ttl_sec: float) -> bool:
        return self._acquire(f"{LEASE_PREFIX}:{partition}", owner, ttl_sec)

    def release(self, partition: int, owner: str) -> None:
        self._release(f"{LEASE_PREFIX}:{partition}", owner)

    # ------------------------------------------------------------------ DLQ
    def dead_letter_raw(self, raw: str, *, reason: str, error: str | None) -> None:
        self._r.xadd(
            Q_DLQ,
            {
                "task": raw,
                "reason": reason,
                "error": error or "",
                "dead_lettered_at": utc_now_iso(),
            },
            maxlen=self._dlq_maxlen,
            approximate=True,
        )
        log.warning("housekeeper_dlq_write", extra={"payload": {"reason": reason, "dlq": Q_DLQ}})

    def dead_letter(self, task: HousekeeperTask, *, reason: str, error: str | None) -> None:
        self.dead_letter_raw(task.to_json(), reason=reason, error=error)

    @staticmethod
    def _as_dead_letter(entry_id: str, fields: dict) -> DeadLetter:
        return DeadLetter(
            entry_id=entry_id,
            raw=fields.get("task", ""),
            reason=fields.get("reason", ""),
            error=fields.get("error") or None,
            dead_lettered_at=fields.get("dead_lettered_at", ""),
        )

    def dead_letters(self, limit: int = 100) -> list[DeadLetter]:
        items = self._r.xrevrange(Q_DLQ, count=max(1, limit))
        return [self._as_dead_letter(entry_id, fields or {}) for entry_id, fields in items]

    def remove_dead_letter(self, entry_id: str) -> DeadLetter | None:
        items = self._r.xrange(Q_DLQ, min=entry_id, max=entry_id, count=1)
        if not items:
            return None
        found_id, fields = items[0]
        self._r.xdel(Q_DLQ, found_id)
        return self._as_dead_letter(found_id, fields or {})

    def depth(self) -> QueueDepth:
        pending = sum(int(self._r.xlen(stream_name(p))) for p in range(self.partitions))
        return QueueDepth(
            pending=pending,
            delayed=int(self._r.zcard(Q_DELAYED)),
            dead_letters=int(self._r.xlen(Q_DLQ)),
        )
