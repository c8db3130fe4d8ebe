import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Union

from sqlalchemy import BigInteger, Column, DateTime
from sqlmodel import Field, Relationship, SQLModel

from .timezone_utils import now_vn

# column limits: total_amount_vnd is BIGINT, qty is INTEGER
MAX_AMOUNT_VND = 9_223_372_036_854_775_807
MAX_ITEM_QTY = 2_147_483_647


def new_id() -> str:
    return str(uuid.uuid4())


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    EDITOR = "EDITOR"
    VIEWER = "VIEWER"


class RedemptionStatus(str, Enum):
    CHUA_CHUOC = "CHUA_CHUOC"
    DA_CHUOC = "DA_CHUOC"


@dataclass(frozen=True)
class Active:
    pass


@dataclass(frozen=True)
class SoftDeleted:
    at: datetime


LoanLifecycle = Union[Active, SoftDeleted]


class User(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    username: str = Field(index=True, unique=True, max_length=100)
    password_hash: str
    role: UserRole = Field(default=UserRole.VIEWER)
    created_at: datetime = Field(default_factory=now_vn, sa_column=Column(DateTime(timezone=True), nullable=False))


class CatalogItem(SQLModel, table=True):
    __tablename__ = "pawn_catalog"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    item_name: str = Field(index=True, max_length=200)
    default_weight_chi: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=3)
    note: str = Field(default="")
    created_at: datetime = Field(default_factory=now_vn, sa_column=Column(DateTime(timezone=True), nullable=False, index=True))


class LoanRecord(SQLModel, table=True):
    __tablename__ = "pawn_records"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    customer_name: str = Field(max_length=200)
    customer_name_search: str = Field(default="", index=True, max_length=200)
    cccd: str = Field(index=True, max_length=50)
    total_amount_vnd: int = Field(default=0, sa_column=Column(BigInteger, nullable=False, index=True))
    date_pawn: date = Field(index=True)
    record_note: str = Field(default="")
    created_at: datetime = Field(default_factory=now_vn, sa_column=Column(DateTime(timezone=True), nullable=False, index=True))
    created_by_id: Optional[str] = Field(default=None, index=True, max_length=36)
    deleted_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), index=True))

    items: List["LoanItem"] = Relationship(
        back_populates="loan",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "order_by": "LoanItem.position"},
    )

    @property
    def lifecycle(self) -> LoanLifecycle:
        if self.deleted_at is None:
            return Active()
        return SoftDeleted(at=self.deleted_at)

    def soft_delete(self, at: datetime) -> None:
        self.deleted_at = at


class LoanItem(SQLModel, table=True):
    __tablename__ = "pawn_items"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    loan_id: str = Field(foreign_key="pawn_records.id", index=True, ondelete="CASCADE")
    position: int = Field(default=0)
    qty: int = Field(default=1)
    item_name: str = Field(max_length=200)
    item_name_search: str = Field(default="", index=True, max_length=200)
    weight_chi: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=3)
    note: str = Field(default="")
    is_redeemed: bool = Field(default=False, index=True)
    redeemed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))

    loan: Optional[LoanRecord] = Relationship(back_populates="items")

    def mark_redeemed(self, redeemed: bool, at: datetime) -> bool:
        """Set the redemption flag; returns True when the state changed."""
        if self.is_redeemed == redeemed:
            return False
        self.is_redeemed = redeemed
        self.redeemed_at = at if redeemed else None
        return True


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    user_id: Optional[str] = Field(default=None, index=True, max_length=36)
    action: str = Field(index=True, max_length=64)
    target_table: Optional[str] = Field(default=None, index=True, max_length=64)
    target_id: Optional[str] = Field(default=None, index=True, max_length=36)
    details_json: Optional[str] = None
    created_at: datetime = Field(default_factory=now_vn, sa_column=Column(DateTime(timezone=True), nullable=False, index=True))
