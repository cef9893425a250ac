"""
Метрики Prometheus для сервиса.

Назначение:
- Экспорт /metrics
- Счётчики и гистограммы обработки задач очистки
- Используется admin API и воркером
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# =============================================================================
# СЧЁТЧИКИ И МЕТРИКИ
# =============================================================================

REQUESTS_TOTAL = Counter(
    "housekeeper_requests_total",
    "Общее количество HTTP запросов",
    ["service", "route", "method", "status"],
)

HOUSEKEEPER_TASKS_SUBMITTED_TOTAL = Counter(
    "housekeeper_tasks_submitted_total",
    "Количество поставленных задач очистки",
    ["task_type"],
)

# result=success|retry|dead_letter
HOUSEKEEPER_TASKS_TOTAL = Counter(
    "housekeeper_tasks_total",
    "Количество обработанных задач очистки",
    ["task_type", "result"],
)

HOUSEKEEPER_TASK_LATENCY_MS = Histogram(
    "housekeeper_task_latency_ms",
    "Длительность выполнения обработчика задачи (мс)",
    ["task_type"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000),
)

HOUSEKEEPER_DEAD_LETTERS_TOTAL = Counter(
    "housekeeper_dead_letters_total",
    "Количество задач, отправленных в DLQ",
    ["task_type", "reason"],  # reason=permanent|exhausted
)

HOUSEKEEPER_QUEUE_DEPTH = Gauge(
    "housekeeper_queue_depth",
    "Текущая глубина очереди задач (все партиции + отложенные)",
)

HOUSEKEEPER_DLQ_DEPTH = Gauge(
    "housekeeper_dlq_depth",
    "Текущая глубина DLQ",
)

METRICS_COLLECTION_ERRORS_TOTAL = Counter(
    "housekeeper_metrics_collection_errors_total",
    "Ошибки сборки служебных метрик",
    ["source"],
)


@contextmanager
def track_task_latency(task_type: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        HOUSEKEEPER_TASK_LATENCY_MS.labels(task_type=task_type).observe(elapsed_ms)


def record_task_result(*, task_type: str, result: str) -> None:
    HOUSEKEEPER_TASKS_TOTAL.labels(task_type=task_type, result=result).inc()


def record_dead_letter(*, task_type: str, reason: str) -> None:
    HOUSEKEEPER_DEAD_LETTERS_TOTAL.labels(task_type=task_type, reason=reason).inc()


def refresh_queue_metrics(channel) -> None:
    if channel is None:
        return
    try:
        depth = channel.depth()
        HOUSEKEEPER_QUEUE_DEPTH.set(depth.pending + depth.delayed)
        HOUSEKEEPER_DLQ_DEPTH.set(depth.dead_letters)
    except Exception:
        METRICS_COLLECTION_ERRORS_TOTAL.labels(source="queue_metrics").inc()


# =============================================================================
# ENDPOINT /metrics
# =============================================================================
def setup_metrics_endpoint(app: FastAPI, *, channel_provider=None) -> None:
    """
    Регистрирует endpoint /metrics для Prometheus.
    """

    @app.middleware("http")
    async def http_metrics(request: Request, call_next):
        response = await call_next(request)
        REQUESTS_TOTAL.labels(
            service="api-gateway",
            route=request.url.path,
            method=request.method,
            status=str(response.status_code),
        ).inc()
        return response

    @app.get("/metrics")
    def metrics() -> Response:
        if channel_provider is not None:
            refresh_queue_metrics(channel_provider())
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
