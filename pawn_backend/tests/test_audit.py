import json
import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from conftest import add_user, create_loan, login
from pawn_backend import audit
from pawn_backend.auth import Identity
from pawn_backend.models import AuditLog, LoanItem, LoanRecord, UserRole
from pawn_backend.scripts.audit_consistency import run_audit


def _entries(engine, action=None):
    with Session(engine) as session:
        stmt = select(AuditLog).order_by(AuditLog.created_at)
        if action:
            stmt = stmt.where(AuditLog.action == action)
        return [(entry.action, entry.user_id, entry.target_table, entry.target_id, json.loads(entry.details_json or "null"))
                for entry in session.exec(stmt).all()]


def test_each_loan_mutation_writes_one_entry(client, engine):
    editor_id = add_user(engine, "editor", UserRole.EDITOR)
    login(client, "editor")
    loan = create_loan(client)
    first_item = loan["items"][0]["id"]

    client.patch(f"/loans/{loan['id']}", json={"recordNote": "ghi chú mới", "items": [{"id": first_item, "isRedeemed": True}]})
    client.patch(f"/loans/{loan['id']}/status", json={"status": "DA_CHUOC"})
    client.delete(f"/loans/{loan['id']}")

    entries = _entries(engine)
    assert [entry[0] for entry in entries] == ["PAWN_CREATE", "PAWN_UPDATE", "PAWN_TOGGLE_REDEEM", "PAWN_DELETE"]
    assert all(entry[1] == editor_id for entry in entries)
    assert all(entry[3] == loan["id"] for entry in entries)

    _, _, table, _, created = entries[0]
    assert table == "pawn_records"
    assert created == {
        "customerName": "Nguyễn Văn An",
        "cccd": "079123456789",
        "totalAmountVnd": 5_000_000,
        "datePawn": "2024-05-01",
        "itemCount": 2,
    }

    updated = entries[1][4]
    assert updated["before"]["recordNote"] == "Khách quen"
    assert updated["after"]["recordNote"] == "ghi chú mới"
    assert [item["isRedeemed"] for item in updated["after"]["items"]] == [True, False]
    assert updated["after"]["items"][0]["redeemedAt"]

    toggled = entries[2]
    assert toggled[2] == "pawn_items"
    assert toggled[4]["status"] == "DA_CHUOC"
    assert toggled[4]["itemCount"] == 2
    assert toggled[4]["redeemedCount"] == 2
    assert toggled[4]["before"]["statusChuoc"] == "CHUA_CHUOC"

    deleted = entries[3][4]
    assert deleted["mode"] == "soft"
    assert deleted["before"]["customerName"] == "Nguyễn Văn An"
    assert len(deleted["before"]["items"]) == 2
    assert deleted["before"]["items"][0]["weightChi"] == "2.500"


def test_rejected_requests_are_not_audited(editor_client):
    editor_client.post("/loans", json={"customerName": ""})
    editor_client.get("/loans/00000000-0000-0000-0000-000000000000")
    editor_client.delete("/loans/00000000-0000-0000-0000-000000000000")
    assert _entries(editor_client._engine) == []


class FailingSession:
    def __init__(self):
        self.added = []
        self.rolled_back = False

    def add(self, obj):
        self.added.append(obj)

    def commit(self):
        raise OperationalError("INSERT INTO audit_logs", {}, Exception("database is locked"))

    def rollback(self):
        self.rolled_back = True


def test_audit_write_failure_is_logged_and_swallowed(caplog):
    session = FailingSession()
    actor = Identity(id="u1", username="editor", role=UserRole.EDITOR)
    with caplog.at_level(logging.ERROR, logger="pawn_backend.audit"):
        result = audit.record(session, actor=actor, action=audit.PAWN_CREATE, target_table="pawn_records", target_id="x")
    assert result is None
    assert session.rolled_back is True
    assert "Failed to write audit entry PAWN_CREATE" in caplog.text


def test_to_json_safe_converts_values():
    converted = audit.to_json_safe(
        {"amount": Decimal("1.250"), "when": datetime(2024, 5, 1, 8, 30), "tags": ("a", "b"), "role": UserRole.ADMIN}
    )
    assert converted["amount"] == "1.250"
    assert converted["when"].startswith("2024-05-01T08:30:00")
    assert converted["tags"] == ["a", "b"]
    assert converted["role"] == "ADMIN"


def test_audit_log_listing_is_admin_only(client, engine):
    add_user(engine, "editor", UserRole.EDITOR)
    login(client, "editor")
    loan = create_loan(client)
    create_loan(client, customerName="Trần Thị Bình")
    client.patch(f"/loans/{loan['id']}/status", json={"status": "DA_CHUOC"})
    resp = client.get("/audit-logs")
    assert resp.status_code == 403

    add_user(engine, "admin", UserRole.ADMIN)
    login(client, "admin")
    entries = client.get("/audit-logs").json()["entries"]
    assert [entry["action"] for entry in entries] == ["PAWN_TOGGLE_REDEEM", "PAWN_CREATE", "PAWN_CREATE"]
    assert entries[0]["details"]["status"] == "DA_CHUOC"
    assert entries[0]["targetTable"] == "pawn_items"

    filtered = client.get("/audit-logs", params={"action": "pawn_create", "target_id": loan["id"]}).json()["entries"]
    assert len(filtered) == 1
    assert filtered[0]["targetId"] == loan["id"]

    assert len(client.get("/audit-logs", params={"limit": 1}).json()["entries"]) == 1


def test_consistency_audit_reports_violations(editor_client):
    loan = create_loan(editor_client)
    engine = editor_client._engine
    with Session(engine) as session:
        assert run_audit(session).issue_count == 0

        item = session.exec(select(LoanItem).where(LoanItem.loan_id == loan["id"])).first()
        item.is_redeemed = True
        item.redeemed_at = None
        record = session.get(LoanRecord, loan["id"])
        record.customer_name = "Đổi Tên"
        session.add(item)
        session.add(record)
        session.commit()

        report = run_audit(session)
    categories = sorted(issue.category for issue in report.issues)
    assert categories == ["redemption", "search_column"]
    assert report.stats["loans"] == 1
    assert report.stats["items"] == 2
    assert report.as_dict()["issue_count"] == 2
