from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.orm import selectinload
from sqlmodel import Session, select

from . import audit
from .auth import Identity
from .database import transaction
from .models import CatalogItem, LoanItem, LoanRecord, RedemptionStatus, SoftDeleted
from .schemas import (
    CatalogItemCreate,
    CatalogItemRead,
    CatalogItemUpdate,
    LoanCreate,
    LoanItemCreate,
    LoanItemRead,
    LoanPatch,
    LoanRead,
    LoanStatusRead,
    LoanUpdateRead,
)
from .search import normalize_search_text, visible_loans
from .timezone_utils import ensure_vn_datetime, now_vn

logger = logging.getLogger(__name__)

CATALOG_TABLE = "pawn_catalog"
LOAN_TABLE = "pawn_records"
LOAN_ITEM_TABLE = "pawn_items"

CATALOG_DEFAULT_LIMIT = 20
CATALOG_MAX_LIMIT = 50


# --- derived state -----------------------------------------------------------


def derive_status(items: Sequence[LoanItem]) -> RedemptionStatus:
    if items and all(item.is_redeemed for item in items):
        return RedemptionStatus.DA_CHUOC
    return RedemptionStatus.CHUA_CHUOC


def redemption_counts(items: Sequence[LoanItem]) -> Tuple[int, int]:
    return len(items), sum(1 for item in items if item.is_redeemed)


def latest_redeemed_at(items: Sequence[LoanItem]) -> Optional[datetime]:
    """Most recent redemption time, only when the whole loan is redeemed."""
    if derive_status(items) != RedemptionStatus.DA_CHUOC:
        return None
    stamps = [ensure_vn_datetime(item.redeemed_at) for item in items if item.redeemed_at is not None]
    return max(stamps) if stamps else None


def format_weight(value: Optional[Decimal]) -> str:
    if value is None:
        return "0"
    return format(Decimal(value).normalize(), "f")


def items_summary(items: Iterable[LoanItem]) -> str:
    return "; ".join(f"{item.qty}x{item.item_name}({format_weight(item.weight_chi)} Chỉ)" for item in items)


# --- serialization -----------------------------------------------------------


def to_loan_item_read(item: LoanItem) -> LoanItemRead:
    return LoanItemRead(
        id=item.id,
        qty=item.qty,
        item_name=item.item_name,
        weight_chi=item.weight_chi,
        note=item.note or "",
        is_redeemed=item.is_redeemed,
        redeemed_at=ensure_vn_datetime(item.redeemed_at),
    )


def to_loan_read(loan: LoanRecord) -> LoanRead:
    items = list(loan.items)
    item_count, redeemed_count = redemption_counts(items)
    return LoanRead(
        id=loan.id,
        customer_name=loan.customer_name,
        cccd=loan.cccd,
        total_amount_vnd=loan.total_amount_vnd,
        date_pawn=loan.date_pawn,
        record_note=loan.record_note or "",
        created_at=ensure_vn_datetime(loan.created_at) or loan.created_at,
        created_by_id=loan.created_by_id,
        items=[to_loan_item_read(item) for item in items],
        item_count=item_count,
        redeemed_count=redeemed_count,
        status_chuoc=derive_status(items),
        items_summary=items_summary(items),
    )


def _item_state(item: LoanItem) -> Dict[str, Any]:
    return {"id": item.id, "isRedeemed": item.is_redeemed, "redeemedAt": item.redeemed_at}


def _redemption_snapshot(loan: LoanRecord) -> Dict[str, Any]:
    items = list(loan.items)
    return {
        "recordNote": loan.record_note or "",
        "statusChuoc": derive_status(items),
        "items": [_item_state(item) for item in items],
    }


def loan_snapshot(loan: LoanRecord) -> Dict[str, Any]:
    items = list(loan.items)
    return {
        "id": loan.id,
        "customerName": loan.customer_name,
        "cccd": loan.cccd,
        "totalAmountVnd": loan.total_amount_vnd,
        "datePawn": loan.date_pawn,
        "recordNote": loan.record_note or "",
        "createdAt": loan.created_at,
        "createdById": loan.created_by_id,
        "deletedAt": loan.deleted_at,
        "statusChuoc": derive_status(items),
        "items": [
            {
                "id": item.id,
                "qty": item.qty,
                "itemName": item.item_name,
                "weightChi": item.weight_chi,
                "note": item.note or "",
                "isRedeemed": item.is_redeemed,
                "redeemedAt": item.redeemed_at,
            }
            for item in items
        ],
    }


def _catalog_snapshot(item: CatalogItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "itemName": item.item_name,
        "defaultWeightChi": item.default_weight_chi,
        "note": item.note or "",
        "createdAt": item.created_at,
    }


def to_catalog_read(item: CatalogItem) -> CatalogItemRead:
    payload = CatalogItemRead.model_validate(item, from_attributes=True)
    payload.created_at = ensure_vn_datetime(item.created_at) or item.created_at
    return payload


# --- catalog -----------------------------------------------------------------


def clamp_catalog_limit(raw: Any) -> int:
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return CATALOG_DEFAULT_LIMIT
    if value <= 0:
        return CATALOG_DEFAULT_LIMIT
    return min(value, CATALOG_MAX_LIMIT)


def list_catalog_items(session: Session, q: Optional[str] = None, limit: int = CATALOG_DEFAULT_LIMIT) -> List[CatalogItem]:
    safe_limit = max(1, min(limit, CATALOG_MAX_LIMIT))
    stmt = select(CatalogItem)
    needle = (q or "").strip().lower()
    if needle:
        stmt = stmt.where(func.lower(CatalogItem.item_name).contains(needle, autoescape=True))
    stmt = stmt.order_by(CatalogItem.item_name.asc(), CatalogItem.created_at.desc()).limit(safe_limit)
    return list(session.exec(stmt).all())


def get_catalog_item(session: Session, item_id: str) -> CatalogItem:
    item = session.get(CatalogItem, item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Catalog item not found")
    return item


def create_catalog_item(session: Session, payload: CatalogItemCreate, actor: Optional[Identity]) -> CatalogItem:
    item = CatalogItem(
        item_name=payload.item_name,
        default_weight_chi=payload.default_weight_chi,
        note=payload.note or "",
    )
    with transaction(session):
        session.add(item)
    session.refresh(item)
    audit.record(
        session,
        actor=actor,
        action=audit.CATALOG_CREATE,
        target_table=CATALOG_TABLE,
        target_id=item.id,
        details=_catalog_snapshot(item),
    )
    return item


def update_catalog_item(
    session: Session,
    item_id: str,
    payload: CatalogItemUpdate,
    actor: Optional[Identity],
) -> CatalogItem:
    updates = payload.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    for field_name, label in (("item_name", "itemName"), ("default_weight_chi", "defaultWeightChi")):
        if field_name in updates and updates[field_name] is None:
            raise HTTPException(status_code=400, detail=f"{label} cannot be null")
    item = get_catalog_item(session, item_id)
    before = _catalog_snapshot(item)
    with transaction(session):
        if "item_name" in updates:
            item.item_name = updates["item_name"]
        if "default_weight_chi" in updates:
            item.default_weight_chi = updates["default_weight_chi"]
        if "note" in updates:
            item.note = updates["note"] or ""
        session.add(item)
    session.refresh(item)
    audit.record(
        session,
        actor=actor,
        action=audit.CATALOG_UPDATE,
        target_table=CATALOG_TABLE,
        target_id=item.id,
        details={"before": before, "after": _catalog_snapshot(item)},
    )
    return item


def delete_catalog_item(session: Session, item_id: str, actor: Optional[Identity]) -> None:
    item = get_catalog_item(session, item_id)
    before = _catalog_snapshot(item)
    with transaction(session):
        session.delete(item)
    audit.record(
        session,
        actor=actor,
        action=audit.CATALOG_DELETE,
        target_table=CATALOG_TABLE,
        target_id=item_id,
        details={"before": before},
    )


# --- loans -------------------------------------------------------------------


def _build_item(position: int, row: LoanItemCreate) -> LoanItem:
    return LoanItem(
        position=position,
        qty=row.qty,
        item_name=row.item_name,
        item_name_search=normalize_search_text(row.item_name),
        weight_chi=row.weight_chi,
        note=row.note or "",
    )


def create_loan(session: Session, payload: LoanCreate, actor: Optional[Identity]) -> LoanRecord:
    loan = LoanRecord(
        customer_name=payload.customer_name,
        customer_name_search=normalize_search_text(payload.customer_name),
        cccd=payload.cccd,
        total_amount_vnd=payload.total_amount_vnd,
        date_pawn=payload.date_pawn,
        record_note=payload.record_note or "",
        created_by_id=actor.id if actor else None,
    )
    with transaction(session):
        session.add(loan)
        session.flush()
        for position, row in enumerate(payload.items):
            loan.items.append(_build_item(position, row))
        session.flush()
    session.refresh(loan)
    audit.record(
        session,
        actor=actor,
        action=audit.PAWN_CREATE,
        target_table=LOAN_TABLE,
        target_id=loan.id,
        details={
            "customerName": loan.customer_name,
            "cccd": loan.cccd,
            "totalAmountVnd": loan.total_amount_vnd,
            "datePawn": loan.date_pawn,
            "itemCount": len(loan.items),
        },
    )
    return loan


def get_loan(session: Session, loan_id: str) -> LoanRecord:
    stmt = visible_loans().where(LoanRecord.id == loan_id).options(selectinload(LoanRecord.items))
    loan = session.exec(stmt).first()
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")
    return loan


def update_loan(session: Session, loan_id: str, payload: LoanPatch, actor: Optional[Identity]) -> LoanUpdateRead:
    """Apply a note change and/or per-item redemption flags in one transaction.

    Item ids that do not belong to the loan are skipped. ``redeemed_at`` only
    moves when an item's flag actually changes, so re-sending the same state is
    a no-op.
    """
    loan = get_loan(session, loan_id)
    before = _redemption_snapshot(loan)
    now = now_vn()
    with transaction(session):
        if "record_note" in payload.model_fields_set:
            loan.record_note = (payload.record_note or "").strip()
            session.add(loan)
        if payload.items:
            items_by_id = {item.id: item for item in loan.items}
            for change in payload.items:
                item = items_by_id.get(change.id)
                if item is None:
                    continue
                if item.mark_redeemed(change.is_redeemed, now):
                    session.add(item)
    session.refresh(loan)
    items = list(loan.items)
    item_count, redeemed_count = redemption_counts(items)
    result = LoanUpdateRead(
        id=loan.id,
        record_note=loan.record_note or "",
        item_count=item_count,
        redeemed_count=redeemed_count,
        status_chuoc=derive_status(items),
    )
    audit.record(
        session,
        actor=actor,
        action=audit.PAWN_UPDATE,
        target_table=LOAN_TABLE,
        target_id=loan_id,
        details={
            "before": before,
            "after": _redemption_snapshot(loan),
            "itemCount": item_count,
            "redeemedCount": redeemed_count,
        },
    )
    return result


def set_loan_status(
    session: Session,
    loan_id: str,
    status: RedemptionStatus,
    actor: Optional[Identity],
) -> LoanStatusRead:
    """Force every item of the loan to match the requested aggregate status."""
    loan = get_loan(session, loan_id)
    before = _redemption_snapshot(loan)
    redeem = status == RedemptionStatus.DA_CHUOC
    now = now_vn()
    with transaction(session):
        for item in loan.items:
            if item.mark_redeemed(redeem, now):
                session.add(item)
    session.refresh(loan)
    items = list(loan.items)
    item_count, redeemed_count = redemption_counts(items)
    result = LoanStatusRead(
        id=loan.id,
        status_chuoc=derive_status(items),
        item_count=item_count,
        redeemed_count=redeemed_count,
    )
    audit.record(
        session,
        actor=actor,
        action=audit.PAWN_TOGGLE_REDEEM,
        target_table=LOAN_ITEM_TABLE,
        target_id=loan_id,
        details={
            "before": before,
            "status": status,
            "itemCount": item_count,
            "redeemedCount": redeemed_count,
        },
    )
    return result


def delete_loan(session: Session, loan_id: str, mode: str, actor: Optional[Identity]) -> str:
    loan = session.get(LoanRecord, loan_id)
    if loan is None or isinstance(loan.lifecycle, SoftDeleted):
        raise HTTPException(status_code=404, detail="Loan not found")
    before = loan_snapshot(loan)
    with transaction(session):
        if mode == "hard":
            session.delete(loan)
        else:
            loan.soft_delete(now_vn())
            session.add(loan)
    logger.info("Loan %s deleted (%s)", loan_id, mode)
    audit.record(
        session,
        actor=actor,
        action=audit.PAWN_DELETE,
        target_table=LOAN_TABLE,
        target_id=loan_id,
        details={"mode": mode, "before": before},
    )
    return mode
