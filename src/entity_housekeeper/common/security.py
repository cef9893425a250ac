"""
Авторизация служебных вызовов.

Admin API доступен только по service API key (X-API-Key, SERVICE_API_KEYS).
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass

from .config import get_settings, parse_csv
from .errors import UnauthorizedError


@dataclass(frozen=True)
class AuthContext:
    subject: str
    auth_type: str


def _service_keys() -> set[str]:
    return set(parse_csv(get_settings().service_api_keys))


def require_service_key(x_api_key: str | None) -> AuthContext:
    keys = _service_keys()
    if not keys:
        raise UnauthorizedError("SERVICE_API_KEYS не настроены")
    if not x_api_key or not any(hmac.compare_digest(x_api_key, k) for k in keys):
        raise UnauthorizedError("Неверный API ключ")
    return AuthContext(subject="service", auth_type="service_api_key")
