from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from sqlmodel import Session, select

from ..database import get_engine
from ..models import CatalogItem, LoanItem, LoanRecord
from ..search import normalize_search_text


@dataclass
class AuditIssue:
    severity: str
    category: str
    entity: str
    entity_id: Optional[str]
    message: str
    details: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "severity": self.severity,
            "category": self.category,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


@dataclass
class AuditReport:
    stats: Dict[str, int]
    issues: List[AuditIssue]

    @property
    def issue_count(self) -> int:
        return len(self.issues)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "stats": self.stats,
            "issue_count": self.issue_count,
            "issues": [issue.as_dict() for issue in self.issues],
        }


def _check_loan(loan: LoanRecord) -> List[AuditIssue]:
    issues: List[AuditIssue] = []
    if loan.total_amount_vnd is not None and loan.total_amount_vnd < 0:
        issues.append(
            AuditIssue(
                severity="error",
                category="loan_amount",
                entity="loan",
                entity_id=loan.id,
                message="total_amount_vnd cannot be negative",
                details={"total_amount_vnd": loan.total_amount_vnd},
            )
        )
    expected = normalize_search_text(loan.customer_name)
    if loan.customer_name_search != expected:
        issues.append(
            AuditIssue(
                severity="warning",
                category="search_column",
                entity="loan",
                entity_id=loan.id,
                message="customer_name_search is out of date",
                details={"stored": loan.customer_name_search, "expected": expected},
            )
        )
    return issues


def _check_item(item: LoanItem, loan_ids: set) -> List[AuditIssue]:
    issues: List[AuditIssue] = []
    if item.loan_id not in loan_ids:
        issues.append(
            AuditIssue(
                severity="error",
                category="item_reference",
                entity="item",
                entity_id=item.id,
                message="loan_id does not point to an existing loan",
                details={"loan_id": item.loan_id},
            )
        )
    if item.is_redeemed != (item.redeemed_at is not None):
        issues.append(
            AuditIssue(
                severity="error",
                category="redemption",
                entity="item",
                entity_id=item.id,
                message="is_redeemed and redeemed_at disagree",
                details={
                    "is_redeemed": item.is_redeemed,
                    "redeemed_at": item.redeemed_at.isoformat() if item.redeemed_at else None,
                },
            )
        )
    if item.qty is None or item.qty <= 0:
        issues.append(
            AuditIssue(
                severity="error",
                category="item_qty",
                entity="item",
                entity_id=item.id,
                message="qty must be positive",
                details={"qty": item.qty},
            )
        )
    if item.weight_chi is not None and item.weight_chi < 0:
        issues.append(
            AuditIssue(
                severity="error",
                category="item_weight",
                entity="item",
                entity_id=item.id,
                message="weight_chi cannot be negative",
                details={"weight_chi": str(item.weight_chi)},
            )
        )
    expected = normalize_search_text(item.item_name)
    if item.item_name_search != expected:
        issues.append(
            AuditIssue(
                severity="warning",
                category="search_column",
                entity="item",
                entity_id=item.id,
                message="item_name_search is out of date",
                details={"stored": item.item_name_search, "expected": expected},
            )
        )
    return issues


def run_audit(session: Session) -> AuditReport:
    loans = session.exec(select(LoanRecord)).all()
    items = session.exec(select(LoanItem)).all()
    catalog = session.exec(select(CatalogItem)).all()

    stats = {
        "loans": len(loans),
        "soft_deleted": sum(1 for loan in loans if loan.deleted_at is not None),
        "items": len(items),
        "catalog_items": len(catalog),
    }

    issues: List[AuditIssue] = []
    loan_ids = {loan.id for loan in loans}
    for loan in loans:
        issues.extend(_check_loan(loan))
    for item in items:
        issues.extend(_check_item(item, loan_ids))
    for entry in catalog:
        if entry.default_weight_chi is not None and entry.default_weight_chi < 0:
            issues.append(
                AuditIssue(
                    severity="error",
                    category="catalog_weight",
                    entity="catalog",
                    entity_id=entry.id,
                    message="default_weight_chi cannot be negative",
                    details={"default_weight_chi": str(entry.default_weight_chi)},
                )
            )

    return AuditReport(stats=stats, issues=issues)


def format_issue(issue: AuditIssue) -> str:
    prefix = f"[{issue.severity.upper()}] {issue.entity}#{issue.entity_id or '-'} {issue.category}"
    if issue.details:
        return f"{prefix}: {issue.message} | {json.dumps(issue.details, ensure_ascii=False)}"
    return f"{prefix}: {issue.message}"


def print_report(report: AuditReport) -> None:
    print(
        "Audited loans={loans} (soft_deleted={soft_deleted}), items={items}, catalog_items={catalog_items}".format(
            **report.stats
        )
    )
    if not report.issues:
        print("No consistency issues detected.")
        return
    print(f"Found {report.issue_count} issues:")
    for idx, issue in enumerate(report.issues, start=1):
        print(f"{idx:02d}. {format_issue(issue)}")


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Audit data consistency for the pawn records backend")
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the audit report as JSON",
    )
    return parser.parse_args(list(argv) if argv is not None else None)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    with Session(get_engine()) as session:
        report = run_audit(session)
    if args.json:
        print(json.dumps(report.as_dict(), ensure_ascii=False, indent=2))
    else:
        print_report(report)
    return 1 if report.issue_count else 0


if __name__ == "__main__":
    raise SystemExit(main())
