from __future__ import annotations

import itertools

import pytest
import redis

from entity_housekeeper.common.errors import PipelineUnavailableError
from entity_housekeeper.domain.entities import EntityId
from entity_housekeeper.domain.enums import EntityType
from entity_housekeeper.queue import tasks as factory
from entity_housekeeper.queue.channel import partition_for
from entity_housekeeper.queue.streams import (
    LEASE_ACQUIRE_LUA,
    LEASE_RELEASE_LUA,
    Q_DELAYED,
    Q_DLQ,
    RedisStreamTaskChannel,
    stream_name,
)

DEVICE = EntityId(EntityType.DEVICE, "d-1")


class _FakePipeline:
    def __init__(self, r: _FakeRedis) -> None:
        self._r = r
        self._calls: list = []

    def __getattr__(self, name: str):
        def _queue(*args, **kwargs):
            self._calls.append((name, args, kwargs))
            return self

        return _queue

    def execute(self) -> list:
        if self._r.fail_with is not None:
            raise self._r.fail_with
        return [getattr(self._r, name)(*args, **kwargs) for name, args, kwargs in self._calls]


class _FakeRedis:
    """Минимальная модель streams/zset/string для канала задач."""

    def __init__(self) -> None:
        self.streams: dict[str, list[tuple[str, dict]]] = {}
        self.groups: dict[tuple[str, str], dict] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.kv: dict[str, str] = {}
        self.fail_with: Exception | None = None
        self._ids = itertools.count(1)

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        return _FakePipeline(self)

    # streams
    def xadd(self, name, fields, maxlen=None, approximate=True):
        entry_id = f"{next(self._ids)}-0"
        entries = self.streams.setdefault(name, [])
        entries.append((entry_id, dict(fields)))
        if maxlen is not None:
            del entries[: max(0, len(entries) - maxlen)]
        return entry_id

    def xgroup_create(self, name, groupname, id="0", mkstream=False):
        if (name, groupname) in self.groups:
            raise redis.ResponseError("BUSYGROUP Consumer Group name already exists")
        self.streams.setdefault(name, [])
        self.groups[(name, groupname)] = {"last": 0, "pel": {}}

    def xreadgroup(self, groupname, consumername, streams, count=None, block=None):
        out = []
        for name, start in streams.items():
            group = self.groups[(name, groupname)]
            entries = dict(self.streams.get(name, []))
            if start == "0":
                ids = [i for i, c in group["pel"].items() if c == consumername][:count]
                items = [(i, entries.get(i)) for i in ids]
            else:
                items = [
                    (i, f) for i, f in self.streams.get(name, []) if _seq(i) > group["last"]
                ][:count]
                for i, _ in items:
                    group["pel"][i] = consumername
                    group["last"] = _seq(i)
            if items:
                out.append([name, items])
        return out

    def xack(self, name, groupname, *ids):
        pel = self.groups[(name, groupname)]["pel"]
        return sum(1 for i in ids if pel.pop(i, None) is not None)

    def xdel(self, name, *ids):
        before = len(self.streams.get(name, []))
        self.streams[name] = [(i, f) for i, f in self.streams.get(name, []) if i not in ids]
        return before - len(self.streams[name])

    def xlen(self, name):
        return len(self.streams.get(name, []))

    def xrevrange(self, name, max="+", min="-", count=None):
        return list(reversed(self.streams.get(name, [])))[:count]

    def xrange(self, name, min="-", max="+", count=None):
        return [(i, f) for i, f in self.streams.get(name, []) if i == min][:count]

    # zset
    def zadd(self, name, mapping):
        self.zsets.setdefault(name, {}).update(mapping)
        return len(mapping)

    def zrangebyscore(self, name, min, max, start=None, num=None):
        items = sorted(self.zsets.get(name, {}).items(), key=lambda kv: kv[1])
        due = [m for m, score in items if score <= float(max)]
        return due[:num] if num is not None else due

    def zrem(self, name, *members):
        z = self.zsets.get(name, {})
        return sum(1 for m in members if z.pop(m, None) is not None)

    def zcard(self, name):
        return len(self.zsets.get(name, {}))

    # lease-скрипты: выполняются атомарно, как EVALSHA в Redis
    def register_script(self, script: str):
        def _run(keys=(), args=(), client=None):
            key, owner = keys[0], args[0]
            holder = self.kv.get(key)
            if script == LEASE_ACQUIRE_LUA:
                if holder is None or holder == owner:
                    self.kv[key] = owner
                    return 1
                return 0
            if script == LEASE_RELEASE_LUA:
                if holder == owner:
                    del self.kv[key]
                    return 1
                return 0
            raise AssertionError(f"неизвестный скрипт: {script!r}")

        return _run


def _seq(entry_id: str) -> int:
    return int(entry_id.split("-")[0])


@pytest.fixture()
def fake():
    return _FakeRedis()


def _partition(task, partitions: int = 4) -> int:
    return partition_for(task.ordering_key, partitions)


def test_submit_then_ack_removes_entry(fake) -> None:
    ch = RedisStreamTaskChannel(fake, partitions=4)
    tasks = [factory.delete_attributes("t-1", DEVICE), factory.delete_events("t-1", DEVICE)]
    ch.submit_all(tasks)
    p = _partition(tasks[0])
    assert fake.xlen(stream_name(p)) == 2

    batch = ch.next_batch(p, limit=10)
    assert [d.task.task_id for d in batch] == [t.task_id for t in tasks]
    for d in batch:
        d.ack()
    assert fake.xlen(stream_name(p)) == 0
    assert ch.depth().pending == 0


def test_nack_goes_through_delayed_zset(fake) -> None:
    ch = RedisStreamTaskChannel(fake, partitions=4)
    task = factory.delete_telemetry("t-1", DEVICE)
    ch.submit(task)
    p = _partition(task)

    [d] = ch.next_batch(p, limit=1)
    d.nack(0.0, error="transient_store: boom")
    assert fake.zcard(Q_DELAYED) == 1
    assert fake.xlen(stream_name(p)) == 0

    assert ch.promote_due() == 1
    assert fake.zcard(Q_DELAYED) == 0
    [retry] = ch.next_batch(p, limit=1)
    assert retry.task.attempt == 1
    assert retry.task.task_id == task.task_id
    # promote-lease освобождён
    assert not any(k.endswith(":promote") for k in fake.kv)


def test_new_lease_holder_rereads_pending(fake) -> None:
    task = factory.delete_entity_alarms("t-1", DEVICE)
    first = RedisStreamTaskChannel(fake, partitions=4)
    first.submit(task)
    p = _partition(task)
    assert len(first.next_batch(p, limit=1)) == 1  # "упал" без ack

    second = RedisStreamTaskChannel(fake, partitions=4)
    [again] = second.next_batch(p, limit=1)
    assert again.task.task_id == task.task_id


def test_malformed_entry_goes_to_dlq(fake) -> None:
    ch = RedisStreamTaskChannel(fake, partitions=1)
    fake.xadd(stream_name(0), {"task": "{broken"})
    assert ch.next_batch(0, limit=10) == []
    assert fake.xlen(stream_name(0)) == 0
    [dl] = ch.dead_letters(10)
    assert dl.reason == "malformed"
    assert dl.task() is None


def test_submit_failure_is_pipeline_unavailable(fake) -> None:
    ch = RedisStreamTaskChannel(fake, partitions=1)
    fake.fail_with = redis.ConnectionError("connection refused")
    with pytest.raises(PipelineUnavailableError):
        ch.submit_all([factory.delete_events("t-1", DEVICE), factory.delete_attributes("t-1", DEVICE)])
    assert fake.xlen(stream_name(0)) == 0


def test_partition_lease(fake) -> None:
    ch = RedisStreamTaskChannel(fake, partitions=2)
    assert ch.lease(1, "w1", 30)
    assert ch.lease(1, "w1", 30)
    assert not ch.lease(1, "w2", 30)
    ch.release(1, "w1")
    assert ch.lease(1, "w2", 30)


def test_dead_letter_roundtrip(fake) -> None:
    ch = RedisStreamTaskChannel(fake, partitions=1)
    task = factory.delete_events("t-1", DEVICE)
    ch.dead_letter(task, reason="exhausted", error="transient_store: boom")

    [dl] = ch.dead_letters(5)
    assert dl.task().task_id == task.task_id
    assert dl.error == "transient_store: boom"
    assert ch.depth().dead_letters == 1

    removed = ch.remove_dead_letter(dl.entry_id)
    assert removed is not None
    assert fake.xlen(Q_DLQ) == 0
    assert ch.remove_dead_letter(dl.entry_id) is None


def test_stale_owner_cannot_renew_or_release_foreign_lease(fake) -> None:
    ch = RedisStreamTaskChannel(fake, partitions=1)
    assert ch.lease(0, "w1", 30)
    # lease w1 истёк, партицию забрал w2
    fake.kv["lease:housekeeper:0"] = "w2"

    assert not ch.lease(0, "w1", 30)
    ch.release(0, "w1")
    assert fake.kv["lease:housekeeper:0"] == "w2"
    ch.release(0, "w2")
    assert "lease:housekeeper:0" not in fake.kv
