import asyncio
import logging
import time
from typing import Any

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

router = APIRouter()
logger = logging.getLogger(__name__)

_HEAD_CACHE: dict[str, Any] = {"timestamp": 0.0, "heads": None, "skip_reason": None}
_HEAD_CACHE_TTL_SECONDS = 60
_DB_CHECK_TIMEOUT_SECONDS = 2.0


def _load_expected_heads() -> tuple[list[str] | None, str | None]:
    """Expected Alembic heads, cached briefly. ``(None, reason)`` when the
    migration scripts are not shipped with the deployment."""
    now = time.monotonic()
    if now - _HEAD_CACHE["timestamp"] < _HEAD_CACHE_TTL_SECONDS:
        return _HEAD_CACHE["heads"], _HEAD_CACHE["skip_reason"]
    try:
        cfg = Config("alembic.ini")
        cfg.set_main_option("script_location", "alembic")
        heads = list(ScriptDirectory.from_config(cfg).get_heads())
        skip_reason = None
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "migrations_check_skipped_no_alembic_files",
            extra={"extra": {"error_type": type(exc).__name__}},
        )
        heads, skip_reason = None, "skipped_no_alembic_files"
    _HEAD_CACHE.update({"timestamp": now, "heads": heads, "skip_reason": skip_reason})
    return heads, skip_reason


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.head("/healthz")
async def healthz_head() -> Response:
    return Response(status_code=200)


async def _db_check(request: Request) -> tuple[bool, dict[str, Any]]:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    if session_factory is None:
        return False, {"message": "database session factory unavailable"}

    async def _ping_db() -> str | None:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            try:
                result = await session.execute(text("SELECT version_num FROM alembic_version"))
            except SQLAlchemyError:
                return None
            row = result.first()
            return row[0] if row else None

    try:
        current_version = await asyncio.wait_for(_ping_db(), timeout=_DB_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        return False, {"message": "database check timed out", "timeout_seconds": _DB_CHECK_TIMEOUT_SECONDS}
    except Exception as exc:  # noqa: BLE001
        logger.debug("database_check_failed", exc_info=exc)
        return False, {"message": "database check failed", "error": exc.__class__.__name__}

    expected_heads, skip_reason = _load_expected_heads()
    migrations_current = bool(skip_reason) or (current_version in (expected_heads or []))
    return migrations_current, {
        "message": "database reachable",
        "current_version": current_version,
        "expected_heads": expected_heads or [],
        "migrations_current": migrations_current,
        "migrations_check": skip_reason or "ok",
    }


async def _webhook_check(request: Request) -> tuple[bool, dict[str, Any]]:
    app_settings = getattr(request.app.state, "app_settings", None)
    configured = bool(getattr(app_settings, "stripe_webhook_secret", None))
    return configured, {"message": "webhook secret configured" if configured else "webhook secret missing"}


async def _run_check(name: str, check_fn) -> dict[str, Any]:  # noqa: ANN001
    start = time.perf_counter()
    try:
        ok, detail = await check_fn()
    except Exception as exc:  # noqa: BLE001
        logger.exception("readiness_check_failed", extra={"extra": {"check": name}})
        ok, detail = False, {"message": "unexpected error", "error": type(exc).__name__}
    elapsed_ms = (time.perf_counter() - start) * 1000
    return {"name": name, "ok": bool(ok), "ms": round(elapsed_ms, 2), "detail": detail}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    checks = [
        await _run_check("db", lambda: _db_check(request)),
        await _run_check("stripe_webhook", lambda: _webhook_check(request)),
    ]
    overall_ok = all(check["ok"] for check in checks)
    return JSONResponse(status_code=200 if overall_ok else 503, content={"ok": overall_ok, "checks": checks})
