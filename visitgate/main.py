from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .admin_api import router as admin_router
from .api import router
from .config import settings
from .db import SessionLocal, init_schema
from .observability import configure_logging, redis_client, request_tracing_middleware
from .request_context import actor_id_ctx, actor_role_ctx

_READ_ONLY_BYPASS_PREFIXES = (
    "/health",
    "/ping",
    "/docs",
    "/redoc",
    "/openapi.json",
)


def _read_app_version() -> str:
    version_file = Path(__file__).resolve().parents[1] / "VERSION"
    try:
        value = version_file.read_text(encoding="utf-8").strip()
        return value or "0.1.0"
    except Exception:
        return "0.1.0"


if settings.DATABASE_URL.startswith("sqlite") or bool(settings.DB_AUTO_CREATE_ALL):
    init_schema()
configure_logging()

app = FastAPI(
    title="VisitGate",
    description="Volunteer visit contribution gate and admin bulk actions",
    version=_read_app_version(),
)


@app.middleware("http")
async def app_request_tracing_middleware(request: Request, call_next):
    return await request_tracing_middleware(request, call_next)


@app.middleware("http")
async def maintenance_mode_middleware(request: Request, call_next):
    path = request.url.path or ""
    method = request.method.upper()
    if bool(settings.MAINTENANCE_READ_ONLY):
        if method not in {"GET", "HEAD", "OPTIONS"} and not path.startswith(_READ_ONLY_BYPASS_PREFIXES):
            return JSONResponse(
                status_code=503,
                content={"detail": "Service is in read-only mode"},
                headers={"Retry-After": str(max(1, int(settings.MAINTENANCE_RETRY_AFTER_SECONDS)))},
            )
    return await call_next(request)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if bool(settings.SECURITY_HEADERS_ENABLED):
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Cache-Control", "no-store")
    return response


# Registered last so it runs first: tracing reads the actor it sets.
@app.middleware("http")
async def auth_context_middleware(request: Request, call_next):
    raw_actor_id = (request.headers.get("x-actor-id") or "").strip()
    actor_role = (request.headers.get("x-actor-role") or "").strip().lower() or None
    actor_id_ctx.set(int(raw_actor_id) if raw_actor_id.isdigit() else None)
    actor_role_ctx.set(actor_role)
    return await call_next(request)


@app.get("/ping")
def ping():
    return {"ok": True}


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/health/ready")
def ready():
    checks = {"db": "ok", "redis": "skipped"}
    db_ok = True

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception:
        checks["db"] = "error"
        db_ok = False

    client = redis_client()
    if client is not None:
        try:
            client.ping()
            checks["redis"] = "ok"
        except Exception:
            checks["redis"] = "error"

    if db_ok:
        return {"status": "ready", "checks": checks}
    return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})


app.include_router(router)
app.include_router(admin_router)
