"""Query building for loan listings and exports.

Every read of loan records goes through :func:`visible_loans` or
:func:`apply_loan_filter`, both of which exclude soft-deleted rows with
:data:`VISIBLE_LOAN`.
"""
from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, Inexact, InvalidOperation, localcontext
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import selectinload
from sqlmodel import Session, select

from .models import MAX_AMOUNT_VND, LoanItem, LoanRecord
from .timezone_utils import parse_date_value

SEARCH_FIELDS = ("name", "cccd", "item", "amount")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
AMOUNT_RE = re.compile(r"^(\d+(?:\.\d+)?)([km]?)$")
AMOUNT_MULTIPLIERS = {"": 1, "k": 1_000, "m": 1_000_000}

VISIBLE_LOAN = LoanRecord.deleted_at.is_(None)


def normalize_search_text(value: Optional[str]) -> str:
    decomposed = unicodedata.normalize("NFD", value or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.split()).lower()


def parse_amount_shorthand(raw: Any) -> Optional[int]:
    """Parse "5k", "2m", "1,500,000" or "1.5m" into a whole VND amount."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if 0 <= raw <= MAX_AMOUNT_VND else None
    text = re.sub(r"[\s,]", "", str(raw)).lower()
    match = AMOUNT_RE.match(text)
    if not match:
        return None
    with localcontext() as ctx:
        ctx.traps[Inexact] = True
        try:
            number = Decimal(match.group(1)) * AMOUNT_MULTIPLIERS[match.group(2)]
        except (Inexact, InvalidOperation):
            return None
    if number != number.to_integral_value() or number > MAX_AMOUNT_VND:
        return None
    return int(number)


def _parse_positive_int(raw: Any, default: int) -> int:
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def clamp_page(raw: Any) -> int:
    return _parse_positive_int(raw, 1)


def clamp_page_size(raw: Any) -> int:
    return max(1, min(_parse_positive_int(raw, DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE))


@dataclass(frozen=True)
class LoanFilter:
    q: str = ""
    search_field: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    @classmethod
    def from_params(
        cls,
        q: Optional[str] = None,
        search_field: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
    ) -> "LoanFilter":
        field = (search_field or "").strip().lower()
        return cls(
            q=(q or "").strip(),
            search_field=field if field in SEARCH_FIELDS else None,
            date_from=parse_date_value(date_from),
            date_to=parse_date_value(date_to),
        )

    @property
    def exact_id(self) -> Optional[str]:
        if self.q and UUID_RE.match(self.q):
            return self.q.lower()
        return None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "q": self.q or None,
            "search_field": self.search_field,
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
        }


def _name_clause(q: str):
    needle = normalize_search_text(q)
    if not needle:
        return None
    return LoanRecord.customer_name_search.contains(needle, autoescape=True)


def _cccd_clause(q: str):
    return func.lower(LoanRecord.cccd).contains(q.lower(), autoescape=True)


def _item_clause(q: str):
    needle = normalize_search_text(q)
    if not needle:
        return None
    return LoanRecord.items.any(LoanItem.item_name_search.contains(needle, autoescape=True))


def _amount_clause(q: str):
    amount = parse_amount_shorthand(q)
    if amount is None:
        return None
    return LoanRecord.total_amount_vnd == amount


FIELD_CLAUSES = {
    "name": _name_clause,
    "cccd": _cccd_clause,
    "item": _item_clause,
    "amount": _amount_clause,
}


def _text_clause(loan_filter: LoanFilter):
    if not loan_filter.q:
        return None
    if loan_filter.search_field:
        return FIELD_CLAUSES[loan_filter.search_field](loan_filter.q)
    clauses = [builder(loan_filter.q) for builder in FIELD_CLAUSES.values()]
    clauses = [clause for clause in clauses if clause is not None]
    return or_(*clauses) if clauses else None


def visible_loans():
    return select(LoanRecord).where(VISIBLE_LOAN)


def apply_loan_filter(query, loan_filter: LoanFilter):
    query = query.where(VISIBLE_LOAN)
    exact_id = loan_filter.exact_id
    if exact_id:
        return query.where(LoanRecord.id == exact_id)
    clause = _text_clause(loan_filter)
    if clause is not None:
        query = query.where(clause)
    if loan_filter.date_from is not None:
        query = query.where(LoanRecord.date_pawn >= loan_filter.date_from)
    if loan_filter.date_to is not None:
        query = query.where(LoanRecord.date_pawn <= loan_filter.date_to)
    return query


def _ordered(query):
    return query.order_by(LoanRecord.date_pawn.desc(), LoanRecord.created_at.desc(), LoanRecord.id.desc())


def count_loans(session: Session, loan_filter: LoanFilter) -> int:
    count_stmt = apply_loan_filter(select(func.count(LoanRecord.id)), loan_filter)
    return int(session.exec(count_stmt).one() or 0)


def search_loans(
    session: Session,
    loan_filter: LoanFilter,
    *,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> Tuple[List[LoanRecord], int]:
    safe_page = clamp_page(page)
    safe_size = clamp_page_size(page_size)
    stmt = _ordered(apply_loan_filter(select(LoanRecord), loan_filter))
    stmt = stmt.options(selectinload(LoanRecord.items)).offset((safe_page - 1) * safe_size).limit(safe_size)
    loans = session.exec(stmt).all()
    return list(loans), count_loans(session, loan_filter)


def fetch_loans(session: Session, loan_filter: LoanFilter, *, limit: int) -> List[LoanRecord]:
    stmt = _ordered(apply_loan_filter(select(LoanRecord), loan_filter))
    stmt = stmt.options(selectinload(LoanRecord.items)).limit(max(1, limit))
    return list(session.exec(stmt).all())
