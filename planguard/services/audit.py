from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from planguard.core.timeutils import utc_now
from planguard.domain.models import AuditEvent
from planguard.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Provider payload fragments that must never reach the audit trail.
_SECRET_MARKERS = ("secret", "password", "token", "api_key", "authorization", "signature", "card", "iban")
REDACTED = "[REDACTED]"


@dataclass(frozen=True)
class RequestOrigin:
    request_id: str | None = None
    ip_address: str | None = None


def request_origin(request: Request | None) -> RequestOrigin:
    if request is None:
        return RequestOrigin()
    return RequestOrigin(
        request_id=getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id"),
        ip_address=request.client.host if request.client else None,
    )


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with secret-looking keys masked at any depth."""
    if isinstance(value, dict):
        return {
            str(key): REDACTED if _looks_secret(str(key)) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def _looks_secret(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


async def record_event(
    *,
    tenant_id: str | None,
    actor_type: str,
    event_type: str,
    outcome: str = "success",
    actor_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    origin: RequestOrigin | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    occurred_at: datetime | None = None,
    session: AsyncSession | None = None,
    commit: bool = False,
) -> None:
    # Audit writes never fail the lifecycle change they describe.
    origin = origin or RequestOrigin()
    row = AuditEvent(
        occurred_at=occurred_at or utc_now(),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=origin.request_id,
        ip_address=origin.ip_address,
        metadata_json=redact(metadata or {}),
        error_code=error_code,
    )
    if session is None:
        async with SessionLocal() as own_session:
            await _write(own_session, row, commit=True)
        return
    await _write(session, row, commit=commit)


async def _write(session: AsyncSession, row: AuditEvent, *, commit: bool) -> None:
    try:
        session.add(row)
        if commit:
            await session.commit()
    except SQLAlchemyError:
        if commit:
            await session.rollback()
        logger.warning(
            "audit_event_write_failed event_type=%s request_id=%s",
            row.event_type,
            row.request_id,
            exc_info=True,
        )
