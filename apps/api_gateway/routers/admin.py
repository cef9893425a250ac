"""
Service-only admin endpoints подсистемы очистки.

Назначение:
- глубина очереди и DLQ
- просмотр dead-letter задач
- повторная постановка задачи из DLQ (attempt сбрасывается)
- доступ только по service API key
"""

from __future__ import annotations

from dataclasses import replace

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from apps.api_gateway.deps import runtime_dep, service_auth_dep
from entity_housekeeper.common.errors import ErrCode, PipelineUnavailableError
from entity_housekeeper.common.logging import get_housekeeper_logger
from entity_housekeeper.common.time import utc_now
from entity_housekeeper.queue.channel import DeadLetter
from entity_housekeeper.services.container import HousekeeperRuntime

log = get_housekeeper_logger()

router = APIRouter(dependencies=[Depends(service_auth_dep)])


class QueueDepthResponse(BaseModel):
    mode: str
    partitions: int
    pending: int
    delayed: int
    dead_letters: int


class DeadLetterItem(BaseModel):
    entry_id: str
    reason: str
    error: str | None
    dead_lettered_at: str
    task: dict | None
    raw: str | None = None


class DeadLetterListResponse(BaseModel):
    items: list[DeadLetterItem]


class RequeueResponse(BaseModel):
    entry_id: str
    task_id: str
    task_type: str
    requeued: bool


def _require_pipeline(rt: HousekeeperRuntime):
    if rt.channel is None or rt.housekeeper is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": ErrCode.PIPELINE_UNAVAILABLE, "message": "Пайплайн очистки выключен"},
        )
    return rt.channel


def _unavailable(e: Exception) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "code": ErrCode.REDIS_ERROR,
            "message": "Очередь задач недоступна",
            "details": {"err": str(e)[:200]},
        },
    )


def _as_item(dl: DeadLetter) -> DeadLetterItem:
    task = dl.task()
    return DeadLetterItem(
        entry_id=dl.entry_id,
        reason=dl.reason,
        error=dl.error,
        dead_lettered_at=dl.dead_lettered_at,
        task=task.to_payload() if task else None,
        raw=None if task else dl.raw[:1000],
    )


@router.get("/admin/housekeeper/queue", response_model=QueueDepthResponse)
def admin_housekeeper_queue(rt: HousekeeperRuntime = Depends(runtime_dep)) -> QueueDepthResponse:
    channel = _require_pipeline(rt)
    try:
        depth = channel.depth()
    except Exception as e:
        raise _unavailable(e) from e
    return QueueDepthResponse(
        mode=rt.mode.value,
        partitions=channel.partitions,
        pending=depth.pending,
        delayed=depth.delayed,
        dead_letters=depth.dead_letters,
    )


@router.get("/admin/housekeeper/dlq", response_model=DeadLetterListResponse)
def admin_housekeeper_dlq(
    limit: int = Query(default=100, ge=1, le=1000),
    rt: HousekeeperRuntime = Depends(runtime_dep),
) -> DeadLetterListResponse:
    channel = _require_pipeline(rt)
    try:
        items = channel.dead_letters(limit)
    except Exception as e:
        raise _unavailable(e) from e
    return DeadLetterListResponse(items=[_as_item(dl) for dl in items])


@router.post("/admin/housekeeper/dlq/{entry_id}/requeue", response_model=RequeueResponse)
def admin_housekeeper_requeue(
    entry_id: str, rt: HousekeeperRuntime = Depends(runtime_dep)
) -> RequeueResponse:
    channel = _require_pipeline(rt)
    dl = channel.remove_dead_letter(entry_id)
    if dl is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": ErrCode.NOT_FOUND, "message": "Запись DLQ не найдена"},
        )
    task = dl.task()
    if task is None:
        # битую запись не теряем
        channel.dead_letter_raw(dl.raw, reason=dl.reason, error=dl.error)
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": ErrCode.PERMANENT_TASK, "message": "Запись DLQ не является задачей"},
        )

    fresh = replace(task, attempt=0, error=None, created_at=utc_now())
    try:
        rt.housekeeper.submit_task(fresh)
    except PipelineUnavailableError as e:
        channel.dead_letter(task, reason=dl.reason, error=dl.error)
        raise _unavailable(e) from e

    log.info(
        "housekeeper_dlq_requeued",
        extra={
            "payload": {
                "entry_id": entry_id,
                "task_id": fresh.task_id,
                "task_type": fresh.task_type.value,
            }
        },
    )
    return RequeueResponse(
        entry_id=entry_id, task_id=fresh.task_id, task_type=fresh.task_type.value, requeued=True
    )
