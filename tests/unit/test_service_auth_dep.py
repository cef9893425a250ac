from __future__ import annotations

import logging

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from apps.api_gateway.deps import service_auth_dep
from entity_housekeeper.common.config import get_settings
from entity_housekeeper.common.errors import UnauthorizedError
from entity_housekeeper.common.security import require_service_key


@pytest.fixture()
def auth_settings():
    s = get_settings()
    snapshot = s.service_api_keys
    try:
        yield s
    finally:
        s.service_api_keys = snapshot


def _make_request(path: str = "/admin/housekeeper/queue") -> Request:
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("utf-8"),
        "query_string": b"",
        "headers": [],
        "client": ("127.0.0.1", 12345),
        "server": ("testserver", 80),
    }
    return Request(scope)


def test_require_service_key_accepts_configured_key(auth_settings) -> None:
    auth_settings.service_api_keys = "svc-1, svc-2"

    ctx = require_service_key("svc-2")
    assert ctx.auth_type == "service_api_key"
    assert ctx.subject == "service"


def test_require_service_key_rejects_when_not_configured(auth_settings) -> None:
    auth_settings.service_api_keys = ""

    with pytest.raises(UnauthorizedError):
        require_service_key("svc-1")


def test_service_dep_allows_service_key(auth_settings, caplog) -> None:
    auth_settings.service_api_keys = "svc-1"

    with caplog.at_level(logging.INFO):
        ctx = service_auth_dep(request=_make_request(), x_api_key="svc-1")
    assert ctx.auth_type == "service_api_key"
    assert any(r.getMessage() == "security_audit_allow" for r in caplog.records)


@pytest.mark.parametrize("key", [None, "", "user-1"])
def test_service_dep_rejects_missing_or_wrong_key(auth_settings, caplog, key) -> None:
    auth_settings.service_api_keys = "svc-1"

    with caplog.at_level(logging.WARNING):
        with pytest.raises(HTTPException) as e:
            service_auth_dep(request=_make_request(), x_api_key=key)
    assert e.value.status_code == 401
    deny = [r for r in caplog.records if r.getMessage() == "security_audit_deny"]
    assert deny
    assert deny[0].payload["endpoint"] == "/admin/housekeeper/queue"
