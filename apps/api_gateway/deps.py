"""
FastAPI Depends.

Сюда выносим:
- проверку service API key
- доступ к собранной подсистеме очистки
"""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from entity_housekeeper.common.errors import UnauthorizedError
from entity_housekeeper.common.logging import get_project_logger
from entity_housekeeper.common.security import AuthContext, require_service_key
from entity_housekeeper.services.container import HousekeeperRuntime, get_runtime

log = get_project_logger()


def _request_meta(request: Request | None) -> tuple[str, str, str | None]:
    if request is None:
        return "unknown", "UNKNOWN", None
    client_ip = request.client.host if request.client else None
    return request.url.path, request.method, client_ip


def service_auth_dep(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> AuthContext:
    endpoint, method, client_ip = _request_meta(request)
    try:
        ctx = require_service_key(x_api_key)
    except UnauthorizedError as e:
        log.warning(
            "security_audit_deny",
            extra={
                "payload": {
                    "endpoint": endpoint,
                    "method": method,
                    "reason": e.message,
                    "error_code": e.code,
                    "client_ip": client_ip,
                }
            },
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": e.code, "message": e.message},
        ) from e
    log.info(
        "security_audit_allow",
        extra={
            "payload": {
                "endpoint": endpoint,
                "method": method,
                "subject": ctx.subject,
                "client_ip": client_ip,
            }
        },
    )
    return ctx


def runtime_dep() -> HousekeeperRuntime:
    return get_runtime()
