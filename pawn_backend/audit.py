from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .auth import Identity
from .models import AuditLog
from .schemas import AuditLogRead
from .timezone_utils import ensure_vn_datetime

logger = logging.getLogger(__name__)

PAWN_CREATE = "PAWN_CREATE"
PAWN_UPDATE = "PAWN_UPDATE"
PAWN_TOGGLE_REDEEM = "PAWN_TOGGLE_REDEEM"
PAWN_DELETE = "PAWN_DELETE"
PAWN_EXPORT = "PAWN_EXPORT"
CATALOG_CREATE = "CATALOG_CREATE"
CATALOG_UPDATE = "CATALOG_UPDATE"
CATALOG_DELETE = "CATALOG_DELETE"


def to_json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return (ensure_vn_datetime(value) or value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_safe(v) for v in value]
    return value


def record(
    session: Session,
    *,
    actor: Optional[Identity],
    action: str,
    target_table: Optional[str] = None,
    target_id: Optional[str] = None,
    details: Optional[dict] = None,
) -> Optional[AuditLog]:
    """Append an audit entry after the audited change has committed.

    A failure to write the entry is logged and swallowed; the caller's
    operation has already succeeded.
    """
    entry = AuditLog(
        user_id=actor.audit_user_id if actor else None,
        action=action,
        target_table=target_table,
        target_id=target_id,
        details_json=json.dumps(to_json_safe(details), ensure_ascii=False) if details is not None else None,
    )
    try:
        session.add(entry)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Failed to write audit entry %s for %s/%s", action, target_table, target_id)
        return None
    return entry


def decode_details(details_json: Optional[str]) -> Optional[Any]:
    if not details_json:
        return None
    try:
        return json.loads(details_json)
    except json.JSONDecodeError:
        return None


def list_entries(
    session: Session,
    limit: int = 200,
    *,
    action: Optional[str] = None,
    target_table: Optional[str] = None,
    target_id: Optional[str] = None,
) -> List[AuditLog]:
    safe_limit = max(1, min(limit, 500))
    stmt = select(AuditLog)
    if action:
        stmt = stmt.where(AuditLog.action == action.strip().upper())
    if target_table:
        stmt = stmt.where(AuditLog.target_table == target_table.strip())
    if target_id:
        stmt = stmt.where(AuditLog.target_id == target_id.strip())
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(safe_limit)
    return list(session.exec(stmt).all())


def to_audit_read(entry: AuditLog) -> AuditLogRead:
    return AuditLogRead(
        id=entry.id,
        user_id=entry.user_id,
        action=entry.action,
        target_table=entry.target_table,
        target_id=entry.target_id,
        details=decode_details(entry.details_json),
        created_at=ensure_vn_datetime(entry.created_at) or entry.created_at,
    )
