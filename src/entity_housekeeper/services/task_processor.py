"""
HousekeeperTaskProcessor - исполнитель задач очистки.

Алгоритм:
- воркер берёт lease партиции, читает пачку доставок
- задача -> обработчик по типу (с таймаутом на вызов)
- успех -> ack
- повторяемая ошибка -> nack(backoff(attempt)), пока есть попытки
- попытки исчерпаны / PermanentTaskError -> DLQ + ack

Важно:
- одна партиция = один воркер (lease), поэтому задачи одного ключа
  никогда не выполняются параллельно
- пока обработчик работает (в том числе после таймаута), lease партиции
  продлевается каждые lease_ttl/3; при потере lease доставка не
  подтверждается и не откладывается: её перечитает новый владелец
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor, wait

from entity_housekeeper.common.config import get_settings, parse_csv_mapping
from entity_housekeeper.common.errors import ErrCode, TransientStoreError, ValidationError
from entity_housekeeper.common.ids import new_uuid
from entity_housekeeper.common.logging import get_housekeeper_logger
from entity_housekeeper.common.metrics import (
    record_dead_letter,
    record_task_result,
    refresh_queue_metrics,
    track_task_latency,
)
from entity_housekeeper.common.time import utc_now
from entity_housekeeper.domain.enums import HousekeeperTaskType
from entity_housekeeper.handlers.base import HandlerRegistry, TaskHandler
from entity_housekeeper.queue.channel import Delivery, TaskChannel
from entity_housekeeper.queue.retry import (
    ERR_PERMANENT,
    ERR_UNEXPECTED,
    RetryPolicy,
    classify_error,
    short_error,
)
from entity_housekeeper.queue.tasks import HousekeeperTask

log = get_housekeeper_logger()

RESULT_SUCCESS = "success"
RESULT_RETRY = "retry"
RESULT_DEAD_LETTER = "dead_letter"
RESULT_LEASE_LOST = "lease_lost"

DLQ_PERMANENT = "permanent"
DLQ_EXHAUSTED = "exhausted"


class LeaseLostError(Exception):
    """
    Lease партиции перешёл к другому воркеру во время выполнения задачи.
    """


def parse_task_timeouts(raw: str | None) -> dict[HousekeeperTaskType, float]:
    """
    "DELETE_TELEMETRY=120,DELETE_EVENTS=30" -> {тип: секунды}
    """
    out: dict[HousekeeperTaskType, float] = {}
    for name, value in parse_csv_mapping(raw).items():
        try:
            out[HousekeeperTaskType(name.strip().upper())] = float(value)
        except ValueError as e:
            raise ValidationError(
                "Некорректный HOUSEKEEPER_TASK_TIMEOUTS", details={"item": f"{name}={value}"}
            ) from e
    return out


class HousekeeperTaskProcessor:
    def __init__(
        self,
        channel: TaskChannel,
        handlers: HandlerRegistry,
        *,
        policy: RetryPolicy | None = None,
        pool_size: int = 4,
        batch_size: int = 50,
        block_ms: int = 1000,
        lease_ttl_sec: float = 30.0,
        task_timeout_sec: float = 60.0,
        task_timeouts: Mapping[HousekeeperTaskType, float] | None = None,
        stale_task_warn_sec: float = 3600.0,
    ) -> None:
        self.channel = channel
        self.handlers = handlers
        self.policy = policy or RetryPolicy()
        self.pool_size = max(1, int(pool_size))
        self.batch_size = max(1, int(batch_size))
        self.block_ms = max(0, int(block_ms))
        self.task_timeout_sec = max(0.001, float(task_timeout_sec))
        self.task_timeouts = dict(task_timeouts or {})
        self.stale_task_warn_sec = float(stale_task_warn_sec)
        # lease должен пережить самый долгий вызов обработчика
        max_timeout = max([self.task_timeout_sec, *self.task_timeouts.values()])
        self.lease_ttl_sec = max(float(lease_ttl_sec), 2 * max_timeout)
        self._instance = f"worker:{new_uuid()}"
        self._stop = threading.Event()

    @classmethod
    def from_settings(
        cls, channel: TaskChannel, handlers: HandlerRegistry
    ) -> HousekeeperTaskProcessor:
        s = get_settings()
        return cls(
            channel,
            handlers,
            policy=RetryPolicy.from_settings(),
            pool_size=s.housekeeper_worker_pool_size,
            batch_size=s.housekeeper_poll_batch_size,
            block_ms=s.housekeeper_poll_block_ms,
            lease_ttl_sec=s.housekeeper_partition_lease_ttl_sec,
            task_timeout_sec=s.housekeeper_task_timeout_sec,
            task_timeouts=parse_task_timeouts(s.housekeeper_task_timeouts),
            stale_task_warn_sec=s.housekeeper_stale_task_warn_sec,
        )

    def timeout_for(self, task_type: HousekeeperTaskType) -> float:
        return self.task_timeouts.get(task_type, self.task_timeout_sec)

    # ============================================================ delivery
    def process_delivery(
        self, delivery: Delivery, executor: ThreadPoolExecutor, *, owner: str | None = None
    ) -> str:
        """
        owner - держатель lease партиции; без него lease не продлевается.
        """
        task = delivery.task
        self._warn_if_stale(task)

        def _renew() -> bool:
            if owner is None:
                return True
            return self.channel.lease(delivery.partition, owner, self.lease_ttl_sec)

        try:
            handler = self.handlers.get(task.task_type)
            with track_task_latency(task.task_type.value):
                self._invoke(handler, task, executor, _renew)
        except LeaseLostError:
            record_task_result(task_type=task.task_type.value, result=RESULT_LEASE_LOST)
            log.warning(
                "housekeeper_lease_lost_during_task",
                extra={
                    "payload": {
                        "task_id": task.task_id,
                        "task_type": task.task_type.value,
                        "partition": delivery.partition,
                        "owner": owner,
                    }
                },
            )
            return RESULT_LEASE_LOST
        except Exception as e:
            return self._on_failure(delivery, e)

        delivery.ack()
        record_task_result(task_type=task.task_type.value, result=RESULT_SUCCESS)
        log.info(
            "housekeeper_task_done",
            extra={
                "payload": {
                    "task_id": task.task_id,
                    "task_type": task.task_type.value,
                    "key": task.ordering_key,
                    "attempt": task.attempt,
                }
            },
        )
        return RESULT_SUCCESS

    def _invoke(
        self,
        handler: TaskHandler,
        task: HousekeeperTask,
        executor: ThreadPoolExecutor,
        renew: Callable[[], bool],
    ) -> None:
        timeout = self.timeout_for(task.task_type)
        step = self.lease_ttl_sec / 3
        deadline = time.monotonic() + timeout
        timed_out = False
        future = executor.submit(handler.process, task)
        while True:
            left = max(0.0, deadline - time.monotonic())
            done, _ = wait([future], timeout=step if timed_out else min(step, left))
            if done:
                break
            if not timed_out and time.monotonic() >= deadline:
                timed_out = True
                log.warning(
                    "housekeeper_handler_timeout",
                    extra={
                        "payload": {
                            "task_id": task.task_id,
                            "task_type": task.task_type.value,
                            "timeout_sec": timeout,
                        }
                    },
                )
            # зависший вызов держит партицию, пока не завершится
            if not renew():
                raise LeaseLostError(task.task_id)

        if timed_out:
            raise TransientStoreError(
                "Обработчик не уложился в таймаут",
                details={"task_type": task.task_type.value, "timeout_sec": timeout},
                code=ErrCode.HANDLER_TIMEOUT,
            )
        future.result()

    def _on_failure(self, delivery: Delivery, err: Exception) -> str:
        task = delivery.task
        kind = classify_error(err)
        error = short_error(err)

        if kind == ERR_PERMANENT:
            return self._dead_letter(delivery, reason=DLQ_PERMANENT, error=error)
        if self.policy.exhausted(task.attempt):
            return self._dead_letter(delivery, reason=DLQ_EXHAUSTED, error=error)

        delay = self.policy.backoff(task.attempt)
        delivery.nack(delay, error=error)
        record_task_result(task_type=task.task_type.value, result=RESULT_RETRY)
        payload = {
            "task_id": task.task_id,
            "task_type": task.task_type.value,
            "key": task.ordering_key,
            "attempt": task.attempt,
            "delay_sec": delay,
            "err": error,
        }
        if kind == ERR_UNEXPECTED:
            log.error("housekeeper_task_failed", extra={"payload": payload}, exc_info=err)
        else:
            log.warning("housekeeper_task_retry", extra={"payload": payload})
        return RESULT_RETRY

    def _dead_letter(self, delivery: Delivery, *, reason: str, error: str) -> str:
        task = delivery.task.with_error(error)
        self.channel.dead_letter(task, reason=reason, error=error)
        delivery.ack()
        record_task_result(task_type=task.task_type.value, result=RESULT_DEAD_LETTER)
        record_dead_letter(task_type=task.task_type.value, reason=reason)
        log.error(
            "housekeeper_task_dead_lettered",
            extra={"payload": {"reason": reason, "task": task.to_payload()}},
        )
        return RESULT_DEAD_LETTER

    def _warn_if_stale(self, task: HousekeeperTask) -> None:
        age = (utc_now() - task.created_at).total_seconds()
        if age > self.stale_task_warn_sec:
            log.warning(
                "housekeeper_task_stale",
                extra={
                    "payload": {
                        "task_id": task.task_id,
                        "task_type": task.task_type.value,
                        "age_sec": int(age),
                        "attempt": task.attempt,
                    }
                },
            )

    # =========================================================== partition
    def process_partition(
        self,
        partition: int,
        owner: str,
        executor: ThreadPoolExecutor,
        *,
        block_ms: int = 0,
    ) -> int:
        """
        Одна пачка партиции под lease. Возвращает число обработанных задач.
        """
        if not self.channel.lease(partition, owner, self.lease_ttl_sec):
            return 0
        processed = 0
        try:
            deliveries = self.channel.next_batch(
                partition, limit=self.batch_size, block_ms=block_ms
            )
            for delivery in deliveries:
                # продление lease перед каждой задачей
                if not self.channel.lease(partition, owner, self.lease_ttl_sec):
                    log.warning(
                        "housekeeper_lease_lost",
                        extra={"payload": {"partition": partition, "owner": owner}},
                    )
                    break
                result = self.process_delivery(delivery, executor, owner=owner)
                if result == RESULT_LEASE_LOST:
                    break
                processed += 1
        finally:
            self.channel.release(partition, owner)
        return processed

    # ============================================================== drivers
    def run_once(self) -> int:
        """
        Один синхронный проход: promotion отложенных + все партиции.
        """
        self.channel.promote_due()
        owner = f"{self._instance}:sync"
        processed = 0
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="housekeeper-sync") as executor:
            for partition in range(self.channel.partitions):
                processed += self.process_partition(partition, owner, executor)
        return processed

    def drain(self, *, max_rounds: int = 1000, idle_sleep_sec: float = 0.01) -> int:
        """
        Обрабатывает задачи, пока канал не опустеет (включая отложенные повторы).
        """
        total = 0
        for _ in range(max(1, max_rounds)):
            processed = self.run_once()
            total += processed
            depth = self.channel.depth()
            if processed == 0 and depth.pending == 0 and depth.delayed == 0:
                break
            if processed == 0:
                time.sleep(idle_sleep_sec)
        return total

    def _partition_order(self, index: int) -> list[int]:
        n = self.channel.partitions
        start = (index * n) // self.pool_size
        return [(start + i) % n for i in range(n)]

    def _worker_loop(self, index: int) -> None:
        owner = f"{self._instance}:{index}"
        order = self._partition_order(index)
        log.info("housekeeper_worker_started", extra={"payload": {"owner": owner}})
        with ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"housekeeper-handler-{index}"
        ) as executor:
            while not self._stop.is_set():
                processed = 0
                try:
                    for partition in order:
                        if self._stop.is_set():
                            break
                        processed += self.process_partition(partition, owner, executor)
                except Exception as e:
                    log.error(
                        "housekeeper_worker_error",
                        extra={"payload": {"owner": owner, "err": short_error(e)}},
                        exc_info=True,
                    )
                    self._stop.wait(1.0)
                    continue
                if processed == 0:
                    self._stop.wait(self.block_ms / 1000)
        log.info("housekeeper_worker_stopped", extra={"payload": {"owner": owner}})

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        if stop_event is not None:
            self._stop = stop_event
        threads = [
            threading.Thread(
                target=self._worker_loop, args=(i,), name=f"housekeeper-worker-{i}", daemon=True
            )
            for i in range(self.pool_size)
        ]
        for t in threads:
            t.start()
        log.info(
            "housekeeper_processor_started",
            extra={
                "payload": {
                    "workers": self.pool_size,
                    "partitions": self.channel.partitions,
                    "lease_ttl_sec": self.lease_ttl_sec,
                }
            },
        )
        promote_interval = max(0.1, self.block_ms / 1000)
        while not self._stop.is_set():
            try:
                self.channel.promote_due()
            except Exception as e:
                log.error(
                    "housekeeper_promote_error", extra={"payload": {"err": short_error(e)}}
                )
            refresh_queue_metrics(self.channel)
            self._stop.wait(promote_interval)
        for t in threads:
            t.join()
        log.info("housekeeper_processor_stopped")

    def stop(self) -> None:
        self._stop.set()
