from datetime import date

from sqlalchemy import func
from sqlmodel import select

from conftest import create_loan
from pawn_backend.models import LoanRecord
from pawn_backend.search import (
    VISIBLE_LOAN,
    LoanFilter,
    apply_loan_filter,
    clamp_page,
    clamp_page_size,
    normalize_search_text,
    parse_amount_shorthand,
    visible_loans,
)


def test_normalize_search_text_strips_marks_and_case():
    assert normalize_search_text("  Nguyễn   Văn  ÁN ") == "nguyen van an"
    assert normalize_search_text("Nhẫn Vàng") == "nhan vang"
    assert normalize_search_text(None) == ""
    once = normalize_search_text("Trần Thị Bích Ngọc")
    assert normalize_search_text(once) == once


def test_parse_amount_shorthand():
    assert parse_amount_shorthand("5k") == 5_000
    assert parse_amount_shorthand("2m") == 2_000_000
    assert parse_amount_shorthand("1.5M") == 1_500_000
    assert parse_amount_shorthand("1,500,000") == 1_500_000
    assert parse_amount_shorthand(" 300 k ") == 300_000
    assert parse_amount_shorthand(750) == 750
    assert parse_amount_shorthand("1.2345k") is None
    assert parse_amount_shorthand("abc") is None
    assert parse_amount_shorthand("") is None
    assert parse_amount_shorthand(None) is None


def test_parse_amount_shorthand_stays_within_bigint():
    assert parse_amount_shorthand("9223372036854775807") == 9_223_372_036_854_775_807
    assert parse_amount_shorthand("9223372036854775808") is None
    assert parse_amount_shorthand("99999999999999m") is None
    assert parse_amount_shorthand("99999999999999999999999m") is None
    assert parse_amount_shorthand(10**20) is None
    assert parse_amount_shorthand(-5) is None
    assert parse_amount_shorthand("1.00000000000000000000000000001") is None


def test_page_clamping():
    assert clamp_page(None) == 1
    assert clamp_page("0") == 1
    assert clamp_page("-4") == 1
    assert clamp_page("3") == 3
    assert clamp_page_size(None) == 20
    assert clamp_page_size("abc") == 20
    assert clamp_page_size("500") == 100
    assert clamp_page_size("7") == 7


def test_loan_filter_from_params():
    loan_filter = LoanFilter.from_params("  an ", "NAME", "2024-01-01", "garbage")
    assert loan_filter.q == "an"
    assert loan_filter.search_field == "name"
    assert loan_filter.date_from == date(2024, 1, 1)
    assert loan_filter.date_to is None
    assert LoanFilter.from_params(search_field="notes").search_field is None
    assert LoanFilter.from_params(date_from="2024-03-05T10:00:00").date_from == date(2024, 3, 5)
    assert LoanFilter.from_params("ABCDEF01-2345-6789-ABCD-EF0123456789").exact_id == "abcdef01-2345-6789-abcd-ef0123456789"
    assert LoanFilter.from_params("not-an-id").exact_id is None


def _seed(client):
    an = create_loan(client, customerName="Nguyễn Văn An", cccd="079111", totalAmountVnd=5_000_000, datePawn="2024-01-10")
    binh = create_loan(
        client,
        customerName="Trần Thị Bình",
        cccd="080222",
        totalAmountVnd=2_000_000,
        datePawn="2024-02-15",
        items=[{"qty": 1, "itemName": "Dây chuyền bạc", "weightChi": "3"}],
    )
    cuong = create_loan(
        client,
        customerName="Lê Văn Cường",
        cccd="081333",
        totalAmountVnd=750_000,
        datePawn="2024-03-20",
        items=[{"qty": 1, "itemName": "Lắc tay", "weightChi": "1.5"}],
    )
    return an, binh, cuong


def _ids(response):
    assert response.status_code == 200, response.text
    return [loan["id"] for loan in response.json()["loans"]]


def test_search_by_name_ignores_diacritics(editor_client):
    an, _, cuong = _seed(editor_client)
    assert _ids(editor_client.get("/loans", params={"q": "nguyen van", "search_field": "name"})) == [an["id"]]
    assert _ids(editor_client.get("/loans", params={"q": "CƯỜNG", "search_field": "name"})) == [cuong["id"]]


def test_search_by_cccd_item_and_amount(editor_client):
    an, binh, cuong = _seed(editor_client)
    assert _ids(editor_client.get("/loans", params={"q": "080", "search_field": "cccd"})) == [binh["id"]]
    assert _ids(editor_client.get("/loans", params={"q": "day chuyen", "search_field": "item"})) == [binh["id"]]
    assert _ids(editor_client.get("/loans", params={"q": "750k", "search_field": "amount"})) == [cuong["id"]]
    assert _ids(editor_client.get("/loans", params={"q": "5m", "search_field": "amount"})) == [an["id"]]
    unparsable = editor_client.get("/loans", params={"q": "nhiều tiền", "search_field": "amount"}).json()
    assert unparsable["total"] == 3


def test_out_of_range_amount_query_is_treated_as_unparsable(editor_client):
    _seed(editor_client)
    resp = editor_client.get("/loans", params={"q": "99999999999999999999999m", "search_field": "amount"})
    assert resp.status_code == 200
    assert resp.json()["total"] == 3

    resp = editor_client.get("/loans", params={"q": "99999999999999999999999m"})
    assert resp.status_code == 200
    assert resp.json()["total"] == 0


def test_search_without_field_matches_any_column(editor_client):
    an, binh, _ = _seed(editor_client)
    assert _ids(editor_client.get("/loans", params={"q": "binh"})) == [binh["id"]]
    assert _ids(editor_client.get("/loans", params={"q": "nhan vang"})) == [an["id"]]
    assert _ids(editor_client.get("/loans", params={"q": "2m"})) == [binh["id"]]


def test_like_metacharacters_are_literal(editor_client):
    _seed(editor_client)
    body = editor_client.get("/loans", params={"q": "%", "search_field": "name"}).json()
    assert body["total"] == 0
    body = editor_client.get("/loans", params={"q": "_", "search_field": "cccd"}).json()
    assert body["total"] == 0


def test_uuid_query_skips_other_filters(editor_client):
    an, _, _ = _seed(editor_client)
    params = {"q": an["id"].upper(), "search_field": "cccd", "date_from": "2030-01-01"}
    assert _ids(editor_client.get("/loans", params=params)) == [an["id"]]


def test_date_range_is_inclusive_and_invalid_dates_ignored(editor_client):
    an, binh, cuong = _seed(editor_client)
    params = {"date_from": "2024-01-10", "date_to": "2024-02-15"}
    assert _ids(editor_client.get("/loans", params=params)) == [binh["id"], an["id"]]
    params = {"date_from": "yesterday", "date_to": "2024-13-45"}
    assert _ids(editor_client.get("/loans", params=params)) == [cuong["id"], binh["id"], an["id"]]


def test_pagination_counts_the_whole_result(editor_client):
    for day in range(1, 26):
        create_loan(editor_client, customerName=f"Khách {day:02d}", datePawn=f"2024-04-{day:02d}", items=[])

    first = editor_client.get("/loans", params={"page_size": 20}).json()
    assert first["page"] == 1
    assert first["page_size"] == 20
    assert first["total"] == 25
    assert len(first["loans"]) == 20
    assert first["loans"][0]["datePawn"] == "2024-04-25"

    second = editor_client.get("/loans", params={"page": 2, "page_size": 20}).json()
    assert second["total"] == 25
    assert len(second["loans"]) == 5
    assert second["loans"][-1]["datePawn"] == "2024-04-01"

    clamped = editor_client.get("/loans", params={"page": "zero", "page_size": "1000"}).json()
    assert clamped["page"] == 1
    assert clamped["page_size"] == 100
    assert len(clamped["loans"]) == 25


def test_loan_queries_share_one_visibility_predicate():
    statements = [
        visible_loans(),
        apply_loan_filter(select(LoanRecord), LoanFilter()),
        apply_loan_filter(select(func.count(LoanRecord.id)), LoanFilter(q="an", date_from=date(2024, 1, 1))),
    ]
    for stmt in statements:
        assert str(stmt.compile()).count("pawn_records.deleted_at IS NULL") == 1
    assert VISIBLE_LOAN.compare(LoanRecord.deleted_at.is_(None))


def test_soft_deleted_loans_are_not_counted(editor_client):
    _, binh, _ = _seed(editor_client)
    editor_client.delete(f"/loans/{binh['id']}")
    body = editor_client.get("/loans", params={"q": "binh"}).json()
    assert body["total"] == 0
    assert editor_client.get("/loans").json()["total"] == 2
