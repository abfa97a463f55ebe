from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from loginguard.repository import SecurityEventRepository

logger = logging.getLogger("loginguard.audit")


class AuditSeverity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


_ERROR_MARKERS = ("SECURITY", "BREACH")
_WARN_MARKERS = ("FAILED", "FRAUD", "ERROR")


def classify_severity(action: str) -> AuditSeverity:
    normalized = action.upper()
    if any(marker in normalized for marker in _ERROR_MARKERS):
        return AuditSeverity.ERROR
    if any(marker in normalized for marker in _WARN_MARKERS):
        return AuditSeverity.WARN
    return AuditSeverity.INFO


class AuditTrailRecorder:
    """Append-only compliance log. Recording never raises to the caller."""

    def __init__(
        self,
        repository: SecurityEventRepository,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._repository = repository
        self._clock = clock

    def record(
        self,
        user_id: str | None,
        action: str,
        resource_type: str,
        resource_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        request_data: dict[str, Any] | None = None,
        response_status: int = 200,
    ) -> None:
        severity = classify_severity(action)
        payload = {
            "user_id": user_id,
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "ip_address": ip_address,
            "user_agent": user_agent,
            "request_data": request_data or {},
            "response_status": response_status,
            "severity": severity.value,
            "timestamp": self._clock().isoformat(),
        }
        try:
            self._repository.insert_audit_entry(payload)
        except Exception:
            logger.exception("audit_write_failed action=%s user_id=%s", action, user_id)

    def recent_entries(self, user_id: str | None, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        return self._repository.list_audit_entries(user_id=user_id, limit=limit, offset=offset)
