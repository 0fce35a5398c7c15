from __future__ import annotations

import logging
from typing import Mapping

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from app.config import settings
from app.api.analysis import router as analysis_router
from app.api.debug_events import router as debug_events_router

# DB helpers
from app.db.postgres import dispose_postgres_engine, get_postgres_engine, ping_postgres
from app.db.schema import ensure_analysis_schema
from app.jobs.analysis_runner import get_analysis_runner
from app.services.integration_client import close_integration_clients, get_integration_base

# --- Logging ---
LOG_LEVEL = (settings.LOG_LEVEL or "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s [%(levelname)s] %(message)s")
log = logging.getLogger("ai-analysis")

# --- FastAPI app ---
app = FastAPI(title="ai-analysis orchestrator API", version="1.0.0")

# --- CORS (из .env) ---
origins = [o.strip() for o in (getattr(settings, "CORS_ALLOW_ORIGINS", "") or "").split(",") if o.strip()]
if origins:
    methods = [m.strip() for m in (getattr(settings, "CORS_ALLOW_METHODS", "") or "").split(",") if m.strip()]
    headers = [h.strip() for h in (getattr(settings, "CORS_ALLOW_HEADERS", "") or "").split(",") if h.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=methods or ["*"],
        allow_headers=headers or ["*"],
        allow_credentials=bool(getattr(settings, "CORS_ALLOW_CREDENTIALS", False)),
    )

# --- Routers ---
app.include_router(analysis_router)
app.include_router(debug_events_router)


# --- Ошибки: единый формат {ok: false, error} ---
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    log.info("invalid request body on %s %s: %s", request.method, request.url.path, details)
    return JSONResponse(
        status_code=400,
        content={"ok": False, "error": "Некорректное тело запроса", "details": details},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"ok": False, "error": "Internal Server Error"})


def _health_ok(connections: Mapping[str, str]) -> bool:
    """ok, если ни одно из настроенных подключений не лежит ('disabled' не считается)."""
    return all(state != "down" for state in connections.values())


@app.on_event("startup")
async def on_startup() -> None:
    eng = get_postgres_engine()
    if eng is not None:
        try:
            await ensure_analysis_schema(eng)
        except Exception:
            log.exception("postgres: failed to ensure analysis schema")

    if not get_integration_base():
        log.warning("AI integration base URL is not configured: /analysis/run will answer 503.")

    log.info("Startup complete (postgres=%s).", "configured" if eng is not None else "disabled")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    # Текущая компания вернётся в очередь, lock освободится
    await get_analysis_runner().shutdown()

    try:
        await close_integration_clients()
    except Exception:
        log.exception("Failed to close AI integration HTTP clients")

    await dispose_postgres_engine()


@app.get("/health")
async def health():
    """Пинг базы очереди; 'disabled', если DSN не задан."""
    if get_postgres_engine() is None:
        postgres = "disabled"
    else:
        postgres = "ok" if await ping_postgres() else "down"
    connections = {"postgres": postgres}
    return {
        "ok": _health_ok(connections),
        "connections": connections,
        "integration": {"base": get_integration_base()},
    }
