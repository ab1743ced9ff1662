from __future__ import annotations

import os

from fastapi import APIRouter, Request

from db import MIGRATION_REVISION

router = APIRouter(tags=["health"])


def _services(request: Request):
    return getattr(request.app.state, "services", None)


def _check_db(request: Request) -> tuple[bool, str | None]:
    services = _services(request)
    if services is None:
        return False, "SERVICE_NOT_READY"
    if services.db_ping is None:
        # in-memory backend
        return True, None
    return services.db_ping()


def _check_migrations(request: Request) -> bool:
    services = _services(request)
    if services is None:
        return False
    if services.migrations_ok is None:
        return True
    return bool(services.migrations_ok())


def _resolve_env() -> str:
    return (os.getenv("ENVIRONMENT") or os.getenv("ENV") or "").strip()


def _resolve_git_sha() -> str | None:
    return (os.getenv("GIT_SHA") or "").strip() or None


@router.get("/health")
def health():
    return {
        "ok": True,
        "env": _resolve_env(),
        "git_sha": _resolve_git_sha(),
    }


@router.get("/healthz")
def healthz(request: Request):
    db_ok, db_error = _check_db(request)
    return {
        "ok": True,
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "git_sha": _resolve_git_sha(),
        "db_ok": db_ok,
        "db_error": db_error,
    }


@router.get("/readyz")
def readyz(request: Request):
    db_ok, db_error = _check_db(request)
    migrations_ok = _check_migrations(request) if db_ok else False
    return {
        "ready": bool(db_ok and migrations_ok),
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "git_sha": _resolve_git_sha(),
        "db_ok": db_ok,
        "db_error": db_error,
        "migrations_ok": migrations_ok,
        "migration_revision": MIGRATION_REVISION,
    }
