from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, List

from .models import UserRole


@dataclass(frozen=True)
class PermissionDefinition:
    key: str
    label: str
    category: str
    action: str  # "view" or "operate"
    description: str = ""


PERMISSIONS: List[PermissionDefinition] = [
    PermissionDefinition(
        key="loan.view",
        label="Xem phiếu cầm",
        category="Phiếu cầm",
        action="view",
        description="Xem danh sách, chi tiết và tìm kiếm phiếu cầm, danh mục hàng.",
    ),
    PermissionDefinition(
        key="loan.edit",
        label="Sửa phiếu cầm",
        category="Phiếu cầm",
        action="operate",
        description="Tạo phiếu, cập nhật ghi chú, đánh dấu chuộc và quản lý danh mục hàng.",
    ),
    PermissionDefinition(
        key="loan.delete",
        label="Xóa phiếu cầm",
        category="Phiếu cầm",
        action="operate",
        description="Xóa phiếu cầm (mềm hoặc vĩnh viễn tùy cấu hình).",
    ),
    PermissionDefinition(
        key="loan.export",
        label="Xuất dữ liệu",
        category="Báo cáo",
        action="view",
        description="Xuất phiếu cầm ra tệp Excel nén có mật khẩu.",
    ),
    PermissionDefinition(
        key="auditlog.view",
        label="Xem nhật ký",
        category="Hệ thống",
        action="view",
        description="Xem nhật ký thao tác của hệ thống.",
    ),
]

PERMISSION_MAP: Dict[str, PermissionDefinition] = {perm.key: perm for perm in PERMISSIONS}
ALL_PERMISSION_KEYS = frozenset(PERMISSION_MAP.keys())

ROLE_PERMISSIONS: Dict[UserRole, FrozenSet[str]] = {
    UserRole.ADMIN: ALL_PERMISSION_KEYS,
    UserRole.EDITOR: frozenset({"loan.view", "loan.edit", "loan.delete", "loan.export"}),
    UserRole.VIEWER: frozenset({"loan.view"}),
}


def permissions_for_role(role: UserRole) -> Dict[str, bool]:
    granted = ROLE_PERMISSIONS.get(role, frozenset())
    return {key: key in granted for key in sorted(ALL_PERMISSION_KEYS)}


def role_has(role: UserRole, key: str) -> bool:
    return key in ROLE_PERMISSIONS.get(role, frozenset())
