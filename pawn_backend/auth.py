from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .config import Settings
from .models import User, UserRole
from .permissions import permissions_for_role, role_has
from .security import (
    SESSION_TOKEN_TTL,
    create_access_token,
    decode_token,
    hash_password,
    unusable_password_hash,
    verify_password,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    id: str
    username: str
    role: UserRole
    via_bypass: bool = False

    @property
    def audit_user_id(self) -> Optional[str]:
        # bypass traffic is not attributed to a real user
        return None if self.via_bypass else self.id

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role.value,
            "permissions": permissions_for_role(self.role),
        }

    @classmethod
    def from_user(cls, user: User, *, via_bypass: bool = False) -> "Identity":
        return cls(id=user.id, username=user.username, role=UserRole(user.role), via_bypass=via_bypass)


def can_edit(identity: Identity) -> bool:
    return role_has(identity.role, "loan.edit")


def can_delete(identity: Identity) -> bool:
    return role_has(identity.role, "loan.delete")


def can_export(identity: Identity) -> bool:
    return role_has(identity.role, "loan.export")


def can_view_audit(identity: Identity) -> bool:
    return role_has(identity.role, "auditlog.view")


def _normalize_username(username: str) -> str:
    return (username or "").strip().lower()


def get_user_by_username(session: Session, username: str) -> Optional[User]:
    normalized = _normalize_username(username)
    if not normalized:
        return None
    return session.exec(select(User).where(User.username == normalized)).first()


def create_user(session: Session, *, username: str, password: str, role: UserRole) -> User:
    normalized = _normalize_username(username)
    if not normalized:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username is required")
    if get_user_by_username(session, normalized):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username already exists")
    user = User(username=normalized, password_hash=hash_password(password), role=role)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def upsert_admin(session: Session, *, username: str, password: str) -> User:
    """Create the admin account or reset its password and role."""
    normalized = _normalize_username(username)
    if not normalized:
        raise RuntimeError("Admin username is empty; set SEED_ADMIN_USERNAME")
    if not password:
        raise RuntimeError("Admin password is empty; set SEED_ADMIN_PASSWORD")
    user = get_user_by_username(session, normalized)
    if user is None:
        user = User(username=normalized, password_hash=hash_password(password), role=UserRole.ADMIN)
    else:
        user.password_hash = hash_password(password)
        user.role = UserRole.ADMIN
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def ensure_default_admin(session: Session, settings: Settings) -> Optional[User]:
    if not settings.seed_admin_password:
        return None
    existing = get_user_by_username(session, settings.seed_admin_username)
    if existing:
        return existing
    admin = upsert_admin(session, username=settings.seed_admin_username, password=settings.seed_admin_password)
    logger.info("Created default admin '%s'. Please change the password immediately.", admin.username)
    return admin


def authenticate_user(session: Session, *, username: str, password: str) -> Optional[User]:
    user = get_user_by_username(session, username)
    if not user:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


class AuthStrategy:
    """Turns a request's session cookie into an :class:`Identity`."""

    def resolve(self, session: Session, token: Optional[str]) -> Optional[Identity]:
        raise NotImplementedError

    def issue_token(self, identity: Identity) -> str:
        raise NotImplementedError


class SessionTokenStrategy(AuthStrategy):
    def __init__(self, secret_key: str, ttl: timedelta = SESSION_TOKEN_TTL) -> None:
        if not secret_key:
            raise RuntimeError("A signing secret is required for session tokens")
        self.secret_key = secret_key
        self.ttl = ttl

    def issue_token(self, identity: Identity, *, now: Optional[datetime] = None) -> str:
        claims = {"sub": identity.id, "username": identity.username, "role": identity.role.value}
        return create_access_token(claims, secret_key=self.secret_key, expires_delta=self.ttl, now=now)

    def resolve(self, session: Session, token: Optional[str]) -> Optional[Identity]:
        if not token:
            return None
        try:
            payload = decode_token(token, secret_key=self.secret_key)
        except ValueError:
            return None
        subject = payload.get("sub")
        username = payload.get("username")
        if not isinstance(subject, str) or not subject:
            return None
        if not isinstance(username, str) or not username:
            return None
        try:
            role = UserRole(payload.get("role"))
        except ValueError:
            return None
        return Identity(id=subject, username=username, role=role)


class FixedIdentityStrategy(AuthStrategy):
    """Serves every request as one configured user, provisioning it on first use."""

    def __init__(self, username: str, role: UserRole, token_strategy: SessionTokenStrategy) -> None:
        self.username = _normalize_username(username)
        if not self.username:
            raise RuntimeError("AUTH_BYPASS_USERNAME must not be empty")
        self.role = role
        self.token_strategy = token_strategy

    def _ensure_user(self, session: Session) -> User:
        user = get_user_by_username(session, self.username)
        if user:
            return user
        user = User(username=self.username, password_hash=unusable_password_hash(), role=self.role)
        session.add(user)
        try:
            session.commit()
        except IntegrityError:
            # another request provisioned the same username first
            session.rollback()
            existing = get_user_by_username(session, self.username)
            if existing is None:
                raise
            return existing
        session.refresh(user)
        logger.warning("Provisioned auth-bypass user '%s' with role %s", user.username, self.role.value)
        return user

    def resolve(self, session: Session, token: Optional[str]) -> Optional[Identity]:
        user = self._ensure_user(session)
        return Identity(id=user.id, username=user.username, role=self.role, via_bypass=True)

    def issue_token(self, identity: Identity) -> str:
        return self.token_strategy.issue_token(identity)


def build_auth_strategy(settings: Settings) -> AuthStrategy:
    token_strategy = SessionTokenStrategy(settings.require_auth_secret())
    if not settings.auth_bypass:
        return token_strategy
    try:
        role = UserRole(settings.bypass_role)
    except ValueError as exc:
        raise RuntimeError(f"AUTH_BYPASS_ROLE must be one of ADMIN, EDITOR, VIEWER, got {settings.bypass_role!r}") from exc
    logger.warning("Authentication bypass is ENABLED; all requests act as '%s'", settings.bypass_username)
    return FixedIdentityStrategy(settings.bypass_username, role, token_strategy)
