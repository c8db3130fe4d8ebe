from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional

import pyzipper
from openpyxl import Workbook
from openpyxl.styles import Font
from sqlmodel import Session

from . import audit
from .auth import Identity
from .config import Settings
from .crud import LOAN_TABLE, derive_status, items_summary, latest_redeemed_at, redemption_counts
from .models import LoanRecord
from .search import LoanFilter, fetch_loans
from .timezone_utils import format_vn, now_vn, today_vn

logger = logging.getLogger(__name__)

EXPORT_ROW_CAP = 50_000
EXPORT_CHUNK_SIZE = 64 * 1024
EXPORT_ENTRY_NAME = "loans.xlsx"
EXPORT_FORMAT = "zip_aes256"
LEGACY_ARCHIVE_PASSWORD = "197781"

LOAN_HEADERS = [
    "ID",
    "Khách hàng",
    "CCCD",
    "Số tiền (VND)",
    "Ngày cầm",
    "Món hàng",
    "Số món",
    "Đã chuộc",
    "Trạng thái chuộc",
    "Chuộc lúc",
    "Ghi chú",
    "Tạo lúc",
]

ITEM_HEADERS = [
    "Mã phiếu",
    "Khách hàng",
    "STT",
    "Tên hàng",
    "Số lượng",
    "Trọng lượng (chỉ)",
    "Ghi chú",
    "Đã chuộc",
    "Chuộc lúc",
]


@dataclass
class ExportResult:
    filename: str
    chunks: Iterator[bytes]
    count: int


def resolve_archive_password(settings: Settings) -> str:
    if settings.export_password:
        return settings.export_password
    logger.warning("EXPORT_ARCHIVE_PASSWORD is not set; using the legacy archive password")
    return LEGACY_ARCHIVE_PASSWORD


def export_filename() -> str:
    return f"export_loans_{today_vn().isoformat()}.zip"


def build_workbook(loans: List[LoanRecord]) -> bytes:
    workbook = Workbook()
    loan_sheet = workbook.active
    loan_sheet.title = "Loans"
    loan_sheet.append(LOAN_HEADERS)

    item_sheet = workbook.create_sheet("Items")
    item_sheet.append(ITEM_HEADERS)

    for loan in loans:
        items = list(loan.items)
        item_count, redeemed_count = redemption_counts(items)
        loan_sheet.append(
            [
                loan.id,
                loan.customer_name,
                loan.cccd,
                loan.total_amount_vnd,
                loan.date_pawn.isoformat(),
                items_summary(items),
                item_count,
                redeemed_count,
                derive_status(items).value,
                format_vn(latest_redeemed_at(items)),
                loan.record_note or "",
                format_vn(loan.created_at),
            ]
        )
        for index, item in enumerate(items, start=1):
            item_sheet.append(
                [
                    loan.id,
                    loan.customer_name,
                    index,
                    item.item_name,
                    item.qty,
                    float(item.weight_chi),
                    item.note or "",
                    "x" if item.is_redeemed else "",
                    format_vn(item.redeemed_at),
                ]
            )

    for sheet in (loan_sheet, item_sheet):
        for cell in sheet[1]:
            cell.font = Font(bold=True)
        sheet.freeze_panes = "A2"

    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class ArchiveSink:
    """Write-only target for the zip writer.

    It has no ``tell``/``seek``, so pyzipper writes each entry with a trailing
    data descriptor instead of seeking back to patch the local header. Bytes
    returned by :meth:`drain` are therefore final.
    """

    def __init__(self) -> None:
        self._pending = bytearray()

    def write(self, data: bytes) -> int:
        self._pending += data
        return len(data)

    def flush(self) -> None:
        pass

    def drain(self) -> bytes:
        data = bytes(self._pending)
        self._pending.clear()
        return data


def stream_archive(
    payload: bytes,
    password: str,
    entry_name: str = EXPORT_ENTRY_NAME,
    chunk_size: int = EXPORT_CHUNK_SIZE,
) -> Iterator[bytes]:
    """Yield an AES-256 encrypted zip holding ``payload`` while it is being written."""
    sink = ArchiveSink()
    with pyzipper.AESZipFile(sink, "w", compression=pyzipper.ZIP_DEFLATED, encryption=pyzipper.WZ_AES) as archive:
        archive.setpassword(password.encode("utf-8"))
        archive.setencryption(pyzipper.WZ_AES, nbits=256)
        entry = archive.zipinfo_cls(entry_name, date_time=now_vn().timetuple()[:6])
        entry.compress_type = pyzipper.ZIP_DEFLATED
        entry.file_size = len(payload)
        with archive.open(entry, "w") as dest:
            for start in range(0, len(payload), chunk_size):
                dest.write(payload[start : start + chunk_size])
                pending = sink.drain()
                if pending:
                    yield pending
    tail = sink.drain()
    if tail:
        yield tail


def export_loans(
    session: Session,
    loan_filter: LoanFilter,
    actor: Optional[Identity],
    password: str,
) -> ExportResult:
    loans = fetch_loans(session, loan_filter, limit=EXPORT_ROW_CAP)
    workbook = build_workbook(loans)
    logger.info("Exported %d loans for %s", len(loans), actor.username if actor else "system")
    audit.record(
        session,
        actor=actor,
        action=audit.PAWN_EXPORT,
        target_table=LOAN_TABLE,
        details={"filters": loan_filter.as_dict(), "count": len(loans), "format": EXPORT_FORMAT},
    )
    return ExportResult(filename=export_filename(), chunks=stream_archive(workbook, password), count=len(loans))
