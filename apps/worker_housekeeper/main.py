"""
Worker Housekeeper.

Алгоритм:
- собирает подсистему очистки (режим из HOUSEKEEPER_MODE)
- пул воркеров берёт партиции канала под lease и выполняет задачи
- отложенные повторы переносятся обратно в партиции
- SIGTERM/SIGINT - мягкая остановка (текущие задачи дорабатываются)
"""

from __future__ import annotations

import signal
import threading
import time

from entity_housekeeper.common.logging import get_project_logger, setup_logging
from entity_housekeeper.services.container import build_housekeeper

log = get_project_logger()


def run(stop_event: threading.Event) -> None:
    runtime = build_housekeeper()
    if runtime.processor is None:
        log.warning(
            "worker_housekeeper_disabled", extra={"payload": {"mode": runtime.mode.value}}
        )
        stop_event.wait()
        return
    log.info("worker_housekeeper_started", extra={"payload": {"mode": runtime.mode.value}})
    runtime.processor.run_forever(stop_event)


def main() -> None:
    setup_logging()
    stop_event = threading.Event()

    def _on_signal(signum, _frame) -> None:
        log.info("worker_housekeeper_stopping", extra={"payload": {"signal": signum}})
        stop_event.set()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    while not stop_event.is_set():
        try:
            run(stop_event)
        except Exception as e:
            log.error("worker_housekeeper_fatal", extra={"payload": {"err": str(e)[:200]}})
            time.sleep(2)


if __name__ == "__main__":
    main()
