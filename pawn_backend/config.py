from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

DELETE_MODES: Tuple[str, ...] = ("soft", "hard")

# Checked in order when DATABASE_URL itself is unset.
DATABASE_URL_ALIASES: Tuple[str, ...] = (
    "NEON_DATABASE_URL",
    "NEON_POSTGRES_URL_NON_POOLING",
    "NEON_POSTGRES_URL",
    "SUPABASE_DATABASE_URL",
)


def _env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


def resolve_database_url(environ: Mapping[str, str]) -> Optional[str]:
    url = _clean(environ.get("DATABASE_URL"))
    if url:
        return url
    for alias in DATABASE_URL_ALIASES:
        url = _clean(environ.get(alias))
        if url:
            return url
    return None


def _normalize_delete_mode(raw: Optional[str]) -> str:
    mode = (raw or "soft").strip().lower()
    if mode not in DELETE_MODES:
        logger.warning("Unknown LOANS_DELETE_MODE %r, falling back to 'soft'", raw)
        return "soft"
    return mode


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str] = None
    auth_secret: Optional[str] = None
    delete_mode: str = "soft"
    auth_bypass: bool = False
    bypass_username: str = "bypass"
    bypass_role: str = "ADMIN"
    export_password: Optional[str] = None
    seed_admin_username: str = "admin"
    seed_admin_password: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            database_url=resolve_database_url(env),
            auth_secret=_clean(env.get("AUTH_JWT_SECRET")),
            delete_mode=_normalize_delete_mode(env.get("LOANS_DELETE_MODE")),
            auth_bypass=_env_flag(env.get("AUTH_BYPASS")),
            bypass_username=_clean(env.get("AUTH_BYPASS_USERNAME")) or "bypass",
            bypass_role=(_clean(env.get("AUTH_BYPASS_ROLE")) or "ADMIN").upper(),
            export_password=_clean(env.get("EXPORT_ARCHIVE_PASSWORD")),
            seed_admin_username=_clean(env.get("SEED_ADMIN_USERNAME")) or "admin",
            seed_admin_password=_clean(env.get("SEED_ADMIN_PASSWORD")),
            log_level=(_clean(env.get("LOG_LEVEL")) or "INFO").upper(),
        )

    def require_auth_secret(self) -> str:
        if not self.auth_secret:
            raise RuntimeError("AUTH_JWT_SECRET is not configured. Set it before starting the server.")
        return self.auth_secret


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
