from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from entity_housekeeper.common.errors import (
    ErrCode,
    PermanentTaskError,
    TransientStoreError,
    ValidationError,
)
from entity_housekeeper.domain.entities import EntityId
from entity_housekeeper.domain.enums import EntityType, HousekeeperTaskType
from entity_housekeeper.handlers.base import HandlerRegistry
from entity_housekeeper.queue import tasks as factory
from entity_housekeeper.queue.channel import InMemoryTaskChannel
from entity_housekeeper.queue.retry import RetryPolicy
from entity_housekeeper.services.task_processor import (
    RESULT_DEAD_LETTER,
    RESULT_LEASE_LOST,
    RESULT_RETRY,
    RESULT_SUCCESS,
    HousekeeperTaskProcessor,
    parse_task_timeouts,
)

DEVICE = EntityId(EntityType.DEVICE, "d-1")


class _ScriptedHandler:
    def __init__(self, task_type: HousekeeperTaskType, errors: list[Exception] | None = None) -> None:
        self.task_type = task_type
        self.errors = list(errors or [])
        self.calls: list[int] = []

    def process(self, task) -> None:
        self.calls.append(task.attempt)
        if self.errors:
            raise self.errors.pop(0)


def _processor(channel, *handlers, max_attempts: int = 3, **kwargs) -> HousekeeperTaskProcessor:
    return HousekeeperTaskProcessor(
        channel,
        HandlerRegistry(handlers),
        policy=RetryPolicy(max_attempts=max_attempts, backoff_base_sec=0.0, backoff_max_sec=0.0),
        **kwargs,
    )


def _deliver(channel, task):
    channel.submit(task)
    for p in range(channel.partitions):
        batch = channel.next_batch(p, limit=1)
        if batch:
            return batch[0]
    raise AssertionError("задача не доставлена")


def test_success_acks() -> None:
    ch = InMemoryTaskChannel(2)
    handler = _ScriptedHandler(HousekeeperTaskType.DELETE_ATTRIBUTES)
    proc = _processor(ch, handler)

    delivery = _deliver(ch, factory.delete_attributes("t-1", DEVICE))
    with ThreadPoolExecutor(max_workers=1) as ex:
        assert proc.process_delivery(delivery, ex) == RESULT_SUCCESS
    assert delivery.resolved
    assert ch.depth().pending == 0


def test_transient_failure_is_retried_until_success() -> None:
    ch = InMemoryTaskChannel(2)
    handler = _ScriptedHandler(
        HousekeeperTaskType.DELETE_TELEMETRY, [TransientStoreError(), TransientStoreError()]
    )
    proc = _processor(ch, handler, max_attempts=3)
    ch.submit(factory.delete_telemetry("t-1", DEVICE))

    proc.drain()
    assert handler.calls == [0, 1, 2]
    depth = ch.depth()
    assert (depth.pending, depth.delayed, depth.dead_letters) == (0, 0, 0)


def test_exhausted_task_is_dead_lettered() -> None:
    ch = InMemoryTaskChannel(2)
    handler = _ScriptedHandler(HousekeeperTaskType.DELETE_EVENTS, [RuntimeError("boom")] * 5)
    proc = _processor(ch, handler, max_attempts=2)
    task = factory.delete_events("t-1", DEVICE)
    ch.submit(task)

    proc.drain()
    assert handler.calls == [0, 1]
    [dl] = ch.dead_letters(10)
    assert dl.reason == "exhausted"
    assert dl.error == "RuntimeError: boom"
    dead = dl.task()
    assert dead.task_id == task.task_id
    assert dead.attempt == 1
    assert dead.error == "RuntimeError: boom"


def test_permanent_failure_skips_retries() -> None:
    ch = InMemoryTaskChannel(2)
    handler = _ScriptedHandler(HousekeeperTaskType.DELETE_EVENTS, [PermanentTaskError("плохая")])
    proc = _processor(ch, handler, max_attempts=5)
    ch.submit(factory.delete_events("t-1", DEVICE))

    proc.drain()
    assert handler.calls == [0]
    [dl] = ch.dead_letters(10)
    assert dl.reason == "permanent"
    assert ch.depth().delayed == 0


def test_unknown_task_type_is_permanent() -> None:
    ch = InMemoryTaskChannel(1)
    proc = _processor(ch)
    delivery = _deliver(ch, factory.delete_relations("t-1", DEVICE))
    with ThreadPoolExecutor(max_workers=1) as ex:
        assert proc.process_delivery(delivery, ex) == RESULT_DEAD_LETTER
    assert ch.dead_letters(1)[0].reason == "permanent"


def test_handler_timeout_is_retryable() -> None:
    release = threading.Event()

    class _Slow:
        task_type = HousekeeperTaskType.DELETE_TELEMETRY

        def process(self, task) -> None:
            release.wait(0.3)

    ch = InMemoryTaskChannel(1)
    proc = _processor(
        ch,
        _Slow(),
        task_timeout_sec=60,
        task_timeouts={HousekeeperTaskType.DELETE_TELEMETRY: 0.05},
    )
    delivery = _deliver(ch, factory.delete_telemetry("t-1", DEVICE))
    with ThreadPoolExecutor(max_workers=1) as ex:
        assert proc.process_delivery(delivery, ex) == RESULT_RETRY
    assert ch.depth().delayed == 1
    ch.promote_due()
    [retry] = ch.next_batch(0, limit=1)
    assert retry.task.error.startswith(ErrCode.HANDLER_TIMEOUT)


def test_lease_ttl_covers_slowest_handler() -> None:
    proc = _processor(
        InMemoryTaskChannel(1),
        lease_ttl_sec=30,
        task_timeout_sec=10,
        task_timeouts={HousekeeperTaskType.DELETE_ENTITIES_BY_TYPE: 120},
    )
    assert proc.lease_ttl_sec == 240
    assert proc.timeout_for(HousekeeperTaskType.DELETE_ENTITIES_BY_TYPE) == 120
    assert proc.timeout_for(HousekeeperTaskType.DELETE_EVENTS) == 10


def test_partition_locked_by_other_worker_is_skipped() -> None:
    ch = InMemoryTaskChannel(1)
    handler = _ScriptedHandler(HousekeeperTaskType.DELETE_EVENTS)
    proc = _processor(ch, handler)
    ch.submit(factory.delete_events("t-1", DEVICE))
    assert ch.lease(0, "someone-else", ttl_sec=30)

    assert proc.run_once() == 0
    assert handler.calls == []


def test_same_key_never_runs_concurrently() -> None:
    state_lock = threading.Lock()
    active: set[str] = set()
    violations: list[str] = []
    done: list[str] = []

    class _Mutex:
        def __init__(self, task_type: HousekeeperTaskType) -> None:
            self.task_type = task_type

        def process(self, task) -> None:
            key = task.ordering_key
            with state_lock:
                if key in active:
                    violations.append(key)
                active.add(key)
            time.sleep(0.002)
            with state_lock:
                active.discard(key)
                done.append(key)

    ch = InMemoryTaskChannel(8)
    types = [
        HousekeeperTaskType.DELETE_ATTRIBUTES,
        HousekeeperTaskType.DELETE_TELEMETRY,
        HousekeeperTaskType.DELETE_EVENTS,
        HousekeeperTaskType.DELETE_ENTITY_ALARMS,
    ]
    proc = HousekeeperTaskProcessor(
        ch,
        HandlerRegistry(_Mutex(t) for t in types),
        policy=RetryPolicy(max_attempts=1),
        pool_size=4,
        batch_size=3,
        block_ms=5,
    )
    entities = [EntityId(EntityType.DEVICE, f"d-{i}") for i in range(6)]
    expected = 0
    for _ in range(3):
        for e in entities:
            ch.submit_all(
                [
                    factory.delete_attributes("t-1", e),
                    factory.delete_telemetry("t-1", e),
                    factory.delete_events("t-1", e),
                    factory.delete_entity_alarms("t-1", e),
                ]
            )
            expected += 4

    stop = threading.Event()
    runner = threading.Thread(target=proc.run_forever, args=(stop,))
    runner.start()
    deadline = time.monotonic() + 10
    while len(done) < expected and time.monotonic() < deadline:
        time.sleep(0.01)
    stop.set()
    runner.join(timeout=5)

    assert len(done) == expected
    assert violations == []


def test_parse_task_timeouts() -> None:
    assert parse_task_timeouts("delete_telemetry=120, DELETE_EVENTS=5") == {
        HousekeeperTaskType.DELETE_TELEMETRY: 120.0,
        HousekeeperTaskType.DELETE_EVENTS: 5.0,
    }
    assert parse_task_timeouts("") == {}
    with pytest.raises(ValidationError):
        parse_task_timeouts("NOPE=1")


class _Sleepy:
    task_type = HousekeeperTaskType.DELETE_TELEMETRY

    def __init__(self, sleep_sec: float) -> None:
        self.sleep_sec = sleep_sec
        self.calls = 0
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def process(self, task) -> None:
        with self._lock:
            self.calls += 1
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        time.sleep(self.sleep_sec)
        with self._lock:
            self.running -= 1


def test_lease_is_renewed_while_handler_overruns() -> None:
    ch = InMemoryTaskChannel(1)
    handler = _Sleepy(0.5)
    proc = _processor(ch, handler, task_timeout_sec=0.05, lease_ttl_sec=0.1)
    ch.submit(factory.delete_telemetry("t-1", DEVICE))

    with ThreadPoolExecutor(max_workers=1) as ex_a, ThreadPoolExecutor(max_workers=1) as ex_b:
        first = threading.Thread(target=proc.process_partition, args=(0, "worker-a", ex_a))
        first.start()
        time.sleep(0.25)
        assert proc.process_partition(0, "worker-b", ex_b) == 0
        first.join(timeout=5)

    assert handler.calls == 1
    assert handler.max_running == 1
    # таймаут - повтор, а не повторная доставка новому владельцу
    assert ch.depth().delayed == 1


def test_lost_lease_leaves_delivery_unresolved() -> None:
    ch = InMemoryTaskChannel(1)
    handler = _Sleepy(0.2)
    proc = _processor(ch, handler, task_timeout_sec=0.05, lease_ttl_sec=0.1)
    ch.submit(factory.delete_telemetry("t-1", DEVICE))
    assert ch.lease(0, "worker-b", ttl_sec=30)
    [delivery] = ch.next_batch(0, limit=1)

    with ThreadPoolExecutor(max_workers=1) as ex:
        assert proc.process_delivery(delivery, ex, owner="worker-a") == RESULT_LEASE_LOST

    assert not delivery.resolved
    depth = ch.depth()
    assert (depth.delayed, depth.dead_letters) == (0, 0)
