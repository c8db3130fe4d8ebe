from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .models import MAX_AMOUNT_VND, MAX_ITEM_QTY, RedemptionStatus, UserRole
from .search import parse_amount_shorthand

SearchField = Literal["name", "cccd", "item", "amount"]


def _required_text(value: str, field_name: str, max_length: int) -> str:
    trimmed = (value or "").strip()
    if not trimmed:
        raise ValueError(f"{field_name} is required")
    if len(trimmed) > max_length:
        raise ValueError(f"{field_name} must be at most {max_length} characters")
    return trimmed


def _optional_text(value: Optional[str], field_name: str, max_length: int) -> Optional[str]:
    if value is None:
        return None
    trimmed = value.strip()
    if len(trimmed) > max_length:
        raise ValueError(f"{field_name} must be at most {max_length} characters")
    return trimmed


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1, max_length=200)


class UserRead(BaseModel):
    id: str
    username: str
    role: UserRole
    permissions: Dict[str, bool] = Field(default_factory=dict)


class UserEnvelope(BaseModel):
    user: UserRead


class LoginResponse(BaseModel):
    ok: bool = True
    user: UserRead


class OkResponse(BaseModel):
    ok: bool = True


# --- catalog -----------------------------------------------------------------


class CatalogItemCreate(CamelModel):
    item_name: str
    default_weight_chi: Decimal = Field(ge=0, max_digits=12, decimal_places=3)
    note: Optional[str] = None

    @field_validator("item_name")
    @classmethod
    def validate_item_name(cls, value: str) -> str:
        return _required_text(value, "itemName", 200)

    @field_validator("note")
    @classmethod
    def validate_note(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "note", 2000)


class CatalogItemUpdate(CamelModel):
    item_name: Optional[str] = None
    default_weight_chi: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=3)
    note: Optional[str] = None

    @field_validator("item_name")
    @classmethod
    def validate_item_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return _required_text(value, "itemName", 200)

    @field_validator("note")
    @classmethod
    def validate_note(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "note", 2000)


class CatalogItemRead(CamelModel):
    id: str
    item_name: str
    default_weight_chi: Decimal
    note: str
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class CatalogItemEnvelope(BaseModel):
    item: CatalogItemRead


class CatalogListResponse(BaseModel):
    items: List[CatalogItemRead]


# --- loans -------------------------------------------------------------------


class LoanItemCreate(CamelModel):
    qty: int = Field(default=1, gt=0, le=MAX_ITEM_QTY)
    item_name: str
    weight_chi: Decimal = Field(ge=0, max_digits=12, decimal_places=3)
    note: Optional[str] = None

    @field_validator("qty", mode="before")
    @classmethod
    def default_qty(cls, value):
        return 1 if value is None else value

    @field_validator("item_name")
    @classmethod
    def validate_item_name(cls, value: str) -> str:
        return _required_text(value, "itemName", 200)

    @field_validator("note")
    @classmethod
    def validate_note(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "note", 2000)


class LoanCreate(CamelModel):
    customer_name: str
    cccd: str
    total_amount_vnd: int = Field(ge=0, le=MAX_AMOUNT_VND)
    date_pawn: date
    record_note: Optional[str] = None
    items: List[LoanItemCreate] = Field(default_factory=list)

    @field_validator("customer_name")
    @classmethod
    def validate_customer_name(cls, value: str) -> str:
        return _required_text(value, "customerName", 200)

    @field_validator("cccd")
    @classmethod
    def validate_cccd(cls, value: str) -> str:
        return _required_text(value, "cccd", 50)

    @field_validator("total_amount_vnd", mode="before")
    @classmethod
    def parse_total_amount(cls, value):
        if isinstance(value, str):
            parsed = parse_amount_shorthand(value)
            if parsed is None:
                raise ValueError("totalAmountVnd must be a whole VND amount, e.g. 5000000 or 5m")
            return parsed
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError("totalAmountVnd must be a whole number")
            return int(value)
        return value

    @field_validator("record_note")
    @classmethod
    def validate_record_note(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "recordNote", 5000)

    @field_validator("items", mode="before")
    @classmethod
    def default_items(cls, value):
        return [] if value is None else value


class LoanItemRead(CamelModel):
    id: str
    qty: int
    item_name: str
    weight_chi: Decimal
    note: str
    is_redeemed: bool
    redeemed_at: Optional[datetime] = None


class LoanRead(CamelModel):
    id: str
    customer_name: str
    cccd: str
    total_amount_vnd: int
    date_pawn: date
    record_note: str
    created_at: datetime
    created_by_id: Optional[str] = None
    items: List[LoanItemRead]
    item_count: int
    redeemed_count: int
    status_chuoc: RedemptionStatus
    items_summary: str


class LoanEnvelope(BaseModel):
    loan: LoanRead


class LoansPage(BaseModel):
    page: int
    page_size: int
    total: int
    loans: List[LoanRead]


class RedeemUpdate(CamelModel):
    id: str
    is_redeemed: bool


class LoanPatch(CamelModel):
    record_note: Optional[str] = None
    items: Optional[List[RedeemUpdate]] = None

    @field_validator("record_note")
    @classmethod
    def validate_record_note(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "recordNote", 5000)


class LoanStatusPatch(BaseModel):
    status: RedemptionStatus


class LoanStatusRead(CamelModel):
    id: str
    status_chuoc: RedemptionStatus
    item_count: int
    redeemed_count: int


class LoanUpdateRead(LoanStatusRead):
    record_note: str


class LoanStatusEnvelope(BaseModel):
    loan: LoanStatusRead


class LoanUpdateEnvelope(BaseModel):
    loan: LoanUpdateRead


class DeleteResult(BaseModel):
    ok: bool = True
    mode: str


# --- export / audit ----------------------------------------------------------


class ExportRequest(BaseModel):
    q: Optional[str] = Field(default=None, max_length=200)
    search_field: Optional[SearchField] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None

    @field_validator("search_field", mode="before")
    @classmethod
    def blank_search_field(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
            return value or None
        return value


class AuditLogRead(CamelModel):
    id: str
    user_id: Optional[str] = None
    action: str
    target_table: Optional[str] = None
    target_id: Optional[str] = None
    details: Optional[Any] = None
    created_at: datetime


class AuditLogList(BaseModel):
    entries: List[AuditLogRead]
