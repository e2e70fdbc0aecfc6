from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.config import get_settings
from app.metrics import observe_audit_append_failure
from app.models.audit import AuditLog

logger = logging.getLogger("app.audit")

audit_entries: list[dict[str, Any]] = []


class AuditSink(Protocol):
    def append(self, event: dict[str, Any]) -> None:
        ...


class InMemoryAuditSink:
    def __init__(self, entries: list[dict[str, Any]] | None = None) -> None:
        self._entries = audit_entries if entries is None else entries

    def append(self, event: dict[str, Any]) -> None:
        self._entries.append(event)


class SqlAuditSink:
    """Writes audit events into the caller's unit of work.

    The row is committed or rolled back together with the change it
    describes.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def append(self, event: dict[str, Any]) -> None:
        self._session.add(
            AuditLog(
                actor_id=event["actor_user_id"],
                action=event["action"],
                entity_type=event["entity_type"],
                entity_id=event["entity_id"],
                event_metadata={"before": event.get("before"), "after": event.get("after")},
                correlation_id=event.get("correlation_id"),
            )
        )


def get_audit_sink(session: Session | None = None) -> AuditSink:
    backend = get_settings().audit_backend.lower()
    if backend == "db" and session is not None:
        return SqlAuditSink(session)
    return InMemoryAuditSink()


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
    *,
    sink: AuditSink | None = None,
) -> None:
    resolved_correlation_id = correlation_id or get_correlation_id()
    event = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": resolved_correlation_id,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    target = sink if sink is not None else get_audit_sink()
    try:
        target.append(event)
    except Exception as exc:
        observe_audit_append_failure()
        logger.exception(
            "audit.append_failed",
            extra={"action": action, "record_id": entity_id, "error": str(exc)[:500]},
        )
