"""
HousekeeperService - постановка задач очистки в канал.

Существует только при включённом пайплайне (HOUSEKEEPER_MODE != disabled).
"""

from __future__ import annotations

from collections.abc import Iterable

from entity_housekeeper.common.logging import get_housekeeper_logger
from entity_housekeeper.common.metrics import HOUSEKEEPER_TASKS_SUBMITTED_TOTAL
from entity_housekeeper.queue.channel import TaskChannel
from entity_housekeeper.queue.tasks import HousekeeperTask

log = get_housekeeper_logger()


class HousekeeperService:
    def __init__(self, channel: TaskChannel) -> None:
        self.channel = channel

    def submit_task(self, task: HousekeeperTask) -> None:
        """
        Возвращается после durable-записи задачи.
        При недоступности канала - PipelineUnavailableError.
        """
        self.submit_all([task])

    def submit_all(self, tasks: Iterable[HousekeeperTask]) -> None:
        tasks = list(tasks)
        if not tasks:
            return
        self.channel.submit_all(tasks)
        for task in tasks:
            HOUSEKEEPER_TASKS_SUBMITTED_TOTAL.labels(task_type=task.task_type.value).inc()
        log.info(
            "housekeeper_tasks_submitted",
            extra={
                "payload": {
                    "tenant_id": tasks[0].tenant_id,
                    "tasks": [
                        {"task_id": t.task_id, "task_type": t.task_type.value, "key": t.ordering_key}
                        for t in tasks
                    ],
                }
            },
        )
