"""
Версия контракта задачи очистки в очереди.

Задача с другой schema_version не обрабатывается и уходит в DLQ.
"""

from __future__ import annotations

QUEUE_SCHEMA_VERSION = "v1"
