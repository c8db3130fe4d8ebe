from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Generator, Optional

from fastapi import Cookie, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlmodel import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import audit, auth, crud
from .auth import AuthStrategy, Identity
from .config import Settings, get_settings
from .database import get_engine, init_db
from .export import export_loans, resolve_archive_password
from .schemas import (
    AuditLogList,
    CatalogItemCreate,
    CatalogItemEnvelope,
    CatalogItemUpdate,
    CatalogListResponse,
    DeleteResult,
    ExportRequest,
    LoanCreate,
    LoanEnvelope,
    LoanPatch,
    LoansPage,
    LoanStatusEnvelope,
    LoanStatusPatch,
    LoanUpdateEnvelope,
    LoginRequest,
    LoginResponse,
    OkResponse,
    UserEnvelope,
    UserRead,
)
from .search import LoanFilter, clamp_page, clamp_page_size, search_loans
from .security import SESSION_TOKEN_TTL

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "camco_session")
SESSION_COOKIE_MAX_AGE = int(SESSION_TOKEN_TTL.total_seconds())
SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").lower() == "true"
SESSION_COOKIE_SAMESITE = os.getenv("SESSION_COOKIE_SAMESITE", "lax").lower()
CORS_ALLOW_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ALLOW_ORIGINS", "").split(",") if origin.strip()]

ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}

_auth_strategy: Optional[AuthStrategy] = None


def get_auth_strategy(settings: Settings = Depends(get_settings)) -> AuthStrategy:
    global _auth_strategy
    if _auth_strategy is None:
        _auth_strategy = auth.build_auth_strategy(settings)
    return _auth_strategy


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    with Session(get_engine()) as session:
        auth.ensure_default_admin(session, settings)
    get_auth_strategy(settings)
    logger.info("Pawn records backend started (delete mode: %s)", settings.delete_mode)
    yield


app = FastAPI(title="Pawn Records Backend", version="1.0.0", lifespan=lifespan)
if CORS_ALLOW_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _error_response(status_code: int, code: str, message: str, details=None, headers=None) -> JSONResponse:
    body = {"code": code, "message": message}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body, headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        code = "INTERNAL_ERROR"
    else:
        code = ERROR_CODES.get(exc.status_code, "BAD_REQUEST")
    return _error_response(exc.status_code, code, str(exc.detail), headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return _error_response(400, "BAD_REQUEST", "Dữ liệu không hợp lệ", details=jsonable_encoder(exc.errors()))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error_response(500, "INTERNAL_ERROR", "Lỗi hệ thống")


def get_session() -> Generator[Session, None, None]:
    with Session(get_engine()) as session:
        yield session


@dataclass
class RequestContext:
    session: Session
    identity: Identity


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=SESSION_COOKIE_MAX_AGE,
        httponly=True,
        secure=SESSION_COOKIE_SECURE,
        samesite=SESSION_COOKIE_SAMESITE,
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE_NAME)


def require_identity(
    session: Session = Depends(get_session),
    strategy: AuthStrategy = Depends(get_auth_strategy),
    session_token: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> RequestContext:
    identity = strategy.resolve(session, session_token)
    if identity is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Chưa đăng nhập")
    return RequestContext(session=session, identity=identity)


def ensure_capability(ctx: RequestContext, check: Callable[[Identity], bool], message: str) -> None:
    if not check(ctx.identity):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=message)


def _user_to_schema(identity: Identity) -> UserRead:
    return UserRead(**identity.as_dict())


# --- auth --------------------------------------------------------------------


@app.post("/auth/login", response_model=LoginResponse)
def login(
    payload: LoginRequest,
    response: Response,
    session: Session = Depends(get_session),
    strategy: AuthStrategy = Depends(get_auth_strategy),
):
    user = auth.authenticate_user(session, username=payload.username, password=payload.password)
    if not user:
        logger.warning("Failed login for username %r", payload.username.strip().lower())
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Sai tài khoản hoặc mật khẩu")
    identity = Identity.from_user(user)
    set_session_cookie(response, strategy.issue_token(identity))
    return LoginResponse(user=_user_to_schema(identity))


@app.post("/auth/logout", response_model=OkResponse)
def logout(response: Response):
    clear_session_cookie(response)
    return OkResponse()


@app.get("/me", response_model=UserEnvelope)
def me(ctx: RequestContext = Depends(require_identity)):
    return UserEnvelope(user=_user_to_schema(ctx.identity))


# --- catalog -----------------------------------------------------------------


@app.get("/catalog", response_model=CatalogListResponse)
def list_catalog(
    q: Optional[str] = None,
    limit: Optional[str] = None,
    ctx: RequestContext = Depends(require_identity),
):
    items = crud.list_catalog_items(ctx.session, q, crud.clamp_catalog_limit(limit))
    return CatalogListResponse(items=[crud.to_catalog_read(item) for item in items])


@app.post("/catalog", response_model=CatalogItemEnvelope, status_code=201)
def create_catalog_item(payload: CatalogItemCreate, ctx: RequestContext = Depends(require_identity)):
    ensure_capability(ctx, auth.can_edit, "Không có quyền sửa danh mục")
    item = crud.create_catalog_item(ctx.session, payload, ctx.identity)
    return CatalogItemEnvelope(item=crud.to_catalog_read(item))


@app.patch("/catalog/{item_id}", response_model=CatalogItemEnvelope)
def update_catalog_item(item_id: str, payload: CatalogItemUpdate, ctx: RequestContext = Depends(require_identity)):
    ensure_capability(ctx, auth.can_edit, "Không có quyền sửa danh mục")
    item = crud.update_catalog_item(ctx.session, item_id, payload, ctx.identity)
    return CatalogItemEnvelope(item=crud.to_catalog_read(item))


@app.delete("/catalog/{item_id}", response_model=OkResponse)
def delete_catalog_item(item_id: str, ctx: RequestContext = Depends(require_identity)):
    ensure_capability(ctx, auth.can_edit, "Không có quyền sửa danh mục")
    crud.delete_catalog_item(ctx.session, item_id, ctx.identity)
    return OkResponse()


# --- loans -------------------------------------------------------------------


@app.get("/loans", response_model=LoansPage)
def list_loans(
    q: Optional[str] = None,
    search_field: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    page: Optional[str] = None,
    page_size: Optional[str] = None,
    ctx: RequestContext = Depends(require_identity),
):
    loan_filter = LoanFilter.from_params(q, search_field, date_from, date_to)
    safe_page = clamp_page(page)
    safe_size = clamp_page_size(page_size)
    loans, total = search_loans(ctx.session, loan_filter, page=safe_page, page_size=safe_size)
    return LoansPage(
        page=safe_page,
        page_size=safe_size,
        total=total,
        loans=[crud.to_loan_read(loan) for loan in loans],
    )


@app.post("/loans", response_model=LoanEnvelope, status_code=201)
def create_loan(payload: LoanCreate, ctx: RequestContext = Depends(require_identity)):
    ensure_capability(ctx, auth.can_edit, "Không có quyền tạo phiếu")
    loan = crud.create_loan(ctx.session, payload, ctx.identity)
    return LoanEnvelope(loan=crud.to_loan_read(loan))


@app.get("/loans/{loan_id}", response_model=LoanEnvelope)
def get_loan(loan_id: str, ctx: RequestContext = Depends(require_identity)):
    return LoanEnvelope(loan=crud.to_loan_read(crud.get_loan(ctx.session, loan_id)))


@app.patch("/loans/{loan_id}", response_model=LoanUpdateEnvelope)
def update_loan(loan_id: str, payload: LoanPatch, ctx: RequestContext = Depends(require_identity)):
    ensure_capability(ctx, auth.can_edit, "Không có quyền sửa phiếu")
    return LoanUpdateEnvelope(loan=crud.update_loan(ctx.session, loan_id, payload, ctx.identity))


@app.put("/loans/{loan_id}")
def replace_loan(loan_id: str):
    raise HTTPException(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        detail="Dùng PATCH /loans/{id} để cập nhật ghi chú hoặc trạng thái chuộc",
        headers={"Allow": "GET, PATCH, DELETE"},
    )


@app.delete("/loans/{loan_id}", response_model=DeleteResult)
def delete_loan(
    loan_id: str,
    ctx: RequestContext = Depends(require_identity),
    settings: Settings = Depends(get_settings),
):
    ensure_capability(ctx, auth.can_delete, "Không có quyền xóa phiếu")
    mode = crud.delete_loan(ctx.session, loan_id, settings.delete_mode, ctx.identity)
    return DeleteResult(mode=mode)


@app.patch("/loans/{loan_id}/status", response_model=LoanStatusEnvelope)
def set_loan_status(loan_id: str, payload: LoanStatusPatch, ctx: RequestContext = Depends(require_identity)):
    ensure_capability(ctx, auth.can_edit, "Không có quyền sửa phiếu")
    return LoanStatusEnvelope(loan=crud.set_loan_status(ctx.session, loan_id, payload.status, ctx.identity))


# --- export / audit ----------------------------------------------------------


@app.post("/export")
def export(
    payload: Optional[ExportRequest] = None,
    ctx: RequestContext = Depends(require_identity),
    settings: Settings = Depends(get_settings),
):
    ensure_capability(ctx, auth.can_export, "Không có quyền export")
    payload = payload or ExportRequest()
    loan_filter = LoanFilter.from_params(payload.q, payload.search_field, payload.date_from, payload.date_to)
    result = export_loans(ctx.session, loan_filter, ctx.identity, resolve_archive_password(settings))
    return StreamingResponse(
        result.chunks,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
    )


@app.get("/audit-logs", response_model=AuditLogList)
def list_audit_logs(
    limit: int = 200,
    action: Optional[str] = None,
    target_table: Optional[str] = None,
    target_id: Optional[str] = None,
    ctx: RequestContext = Depends(require_identity),
):
    ensure_capability(ctx, auth.can_view_audit, "Chỉ quản trị viên được xem nhật ký")
    entries = audit.list_entries(
        ctx.session,
        limit,
        action=action,
        target_table=target_table,
        target_id=target_id,
    )
    return AuditLogList(entries=[audit.to_audit_read(entry) for entry in entries])
