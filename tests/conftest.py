from __future__ import annotations

import pytest

from entity_housekeeper.common.config import get_settings
from entity_housekeeper.queue.channel import InMemoryTaskChannel
from entity_housekeeper.queue.retry import RetryPolicy
from entity_housekeeper.services.container import build_housekeeper
from entity_housekeeper.services.task_processor import HousekeeperTaskProcessor
from entity_housekeeper.storage.db import build_session_factory
from entity_housekeeper.storage.models import Base

_HOUSEKEEPER_KEYS = [
    "housekeeper_mode",
    "housekeeper_partitions",
    "housekeeper_max_attempts",
    "housekeeper_backoff_base_sec",
    "housekeeper_backoff_max_sec",
    "housekeeper_task_timeout_sec",
    "housekeeper_task_timeouts",
    "housekeeper_entities_page_size",
    "housekeeper_relation_cleanup_skip_types",
    "service_api_keys",
]


@pytest.fixture()
def hk_settings():
    s = get_settings()
    snapshot = {k: getattr(s, k) for k in _HOUSEKEEPER_KEYS}
    try:
        yield s
    finally:
        for k, v in snapshot.items():
            setattr(s, k, v)


@pytest.fixture()
def session_factory(tmp_path):
    factory = build_session_factory(f"sqlite:///{tmp_path / 'housekeeper.db'}")
    Base.metadata.create_all(factory.kw["bind"])
    try:
        yield factory
    finally:
        factory.kw["bind"].dispose()


def _fast_processor(runtime) -> HousekeeperTaskProcessor:
    return HousekeeperTaskProcessor(
        runtime.channel,
        runtime.handlers,
        policy=RetryPolicy(max_attempts=3, backoff_base_sec=0.0, backoff_max_sec=0.0),
        batch_size=10,
        task_timeout_sec=10,
    )


@pytest.fixture()
def runtime(hk_settings, session_factory):
    hk_settings.housekeeper_entities_page_size = 2
    rt = build_housekeeper(session_factory, mode="memory", channel=InMemoryTaskChannel(4))
    rt.processor = _fast_processor(rt)
    return rt


@pytest.fixture()
def disabled_runtime(hk_settings, session_factory):
    hk_settings.housekeeper_entities_page_size = 2
    return build_housekeeper(session_factory, mode="disabled")
