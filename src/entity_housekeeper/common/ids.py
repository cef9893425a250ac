"""
Генерация идентификаторов.

- task_id задач очистки: сортируется по времени создания, виден в логах и DLQ
- uuid для сущностей reference-хранилищ и имён воркеров
"""

from __future__ import annotations

import secrets
import uuid
from datetime import UTC, datetime


def new_uuid() -> str:
    return str(uuid.uuid4())


def new_task_id(prefix: str = "hk") -> str:
    """
    Формат: <prefix>_<UTCYYYYMMDDHHMMSS>_<rand>
    """
    ts = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    return f"{prefix}_{ts}_{secrets.token_hex(6)}"
