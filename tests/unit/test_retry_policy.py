from __future__ import annotations

import redis
from sqlalchemy.exc import OperationalError

from entity_housekeeper.common.errors import (
    PermanentTaskError,
    PipelineUnavailableError,
    TransientStoreError,
)
from entity_housekeeper.queue.retry import (
    ERR_PERMANENT,
    ERR_TRANSIENT,
    ERR_UNEXPECTED,
    RetryPolicy,
    classify_error,
    short_error,
)


def test_backoff_is_monotonic_and_capped() -> None:
    policy = RetryPolicy(max_attempts=10, backoff_base_sec=1.0, backoff_max_sec=300.0)
    delays = [policy.backoff(a) for a in range(15)]
    assert delays[:4] == [1.0, 2.0, 4.0, 8.0]
    assert delays == sorted(delays)
    assert max(delays) == 300.0
    assert policy.backoff(10_000) == 300.0


def test_exhausted_after_max_attempts() -> None:
    policy = RetryPolicy(max_attempts=3)
    assert not policy.exhausted(0)
    assert not policy.exhausted(1)
    assert policy.exhausted(2)


def test_from_settings(hk_settings) -> None:
    hk_settings.housekeeper_max_attempts = 4
    hk_settings.housekeeper_backoff_base_sec = 0.5
    hk_settings.housekeeper_backoff_max_sec = 2.0
    policy = RetryPolicy.from_settings()
    assert policy == RetryPolicy(max_attempts=4, backoff_base_sec=0.5, backoff_max_sec=2.0)


def test_classify_error() -> None:
    assert classify_error(PermanentTaskError()) == ERR_PERMANENT
    assert classify_error(TransientStoreError()) == ERR_TRANSIENT
    assert classify_error(PipelineUnavailableError()) == ERR_TRANSIENT
    assert classify_error(redis.ConnectionError("down")) == ERR_TRANSIENT
    assert classify_error(OperationalError("SELECT 1", {}, Exception("locked"))) == ERR_TRANSIENT
    assert classify_error(TimeoutError()) == ERR_TRANSIENT
    assert classify_error(KeyError("x")) == ERR_UNEXPECTED


def test_short_error_uses_app_code() -> None:
    assert short_error(TransientStoreError("нет связи")) == "transient_store: нет связи"
    assert short_error(ValueError("x" * 500), limit=5) == "ValueError: xxxxx"
