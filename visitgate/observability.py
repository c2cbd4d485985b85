import logging
import sys
import time
import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from threading import Lock

import redis
import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from .config import settings
from .request_context import actor_id_ctx, request_id_ctx

logger = structlog.get_logger("visitgate.http")

_HTTP_EVENTS_MAX = 20000
_http_events: deque[dict] = deque(maxlen=_HTTP_EVENTS_MAX)
_events_lock = Lock()
_redis_clients: dict[str, redis.Redis] = {}
_clients_lock = Lock()
_configured = False


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def configure_logging() -> None:
    global _configured
    if _configured:
        return
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True


def redis_client() -> redis.Redis | None:
    redis_url = (settings.REDIS_URL or "").strip()
    if not redis_url:
        return None
    with _clients_lock:
        client = _redis_clients.get(redis_url)
        if client is None:
            timeout = max(1, int(settings.REDIS_SOCKET_TIMEOUT_MS)) / 1000.0
            try:
                client = redis.from_url(
                    redis_url,
                    decode_responses=True,
                    socket_timeout=timeout,
                    socket_connect_timeout=timeout,
                )
            except ValueError as exc:
                logger.warning("redis_url_invalid", error=str(exc))
                return None
            _redis_clients[redis_url] = client
    return client


def _stream_name() -> str:
    name = (settings.OPS_EVENTS_STREAM or "").strip()
    return name or "visitgate.http_events"


def _parse_event_ts(value: str | None) -> datetime | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed
    return parsed.astimezone(timezone.utc).replace(tzinfo=None)


def _load_recent_redis_events(window_minutes: int) -> list[dict]:
    if not bool(settings.OPS_EVENTS_PERSIST_ENABLED):
        return []
    client = redis_client()
    if client is None:
        return []

    cutoff = utc_now_naive() - timedelta(minutes=max(1, int(window_minutes)))
    try:
        rows = client.xrevrange(_stream_name(), count=_HTTP_EVENTS_MAX)
    except redis.RedisError as exc:
        logger.warning("ops_event_load_failed", error=str(exc))
        return []

    out: list[dict] = []
    for _event_id, fields in rows:
        ts = _parse_event_ts(fields.get("ts"))
        if ts is None or ts < cutoff:
            continue
        try:
            out.append(
                {
                    "ts": ts,
                    "method": str(fields.get("method") or "").upper(),
                    "path": str(fields.get("path") or ""),
                    "status_code": int(fields.get("status_code") or 0),
                    "duration_ms": float(fields.get("duration_ms") or 0.0),
                    "request_id": str(fields.get("request_id") or ""),
                    "timeout_like": str(fields.get("timeout_like") or "") == "1",
                }
            )
        except (TypeError, ValueError):
            continue
    return out


def record_http_event(
    *,
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    request_id: str,
) -> None:
    event = {
        "ts": utc_now_naive(),
        "method": method.upper(),
        "path": path,
        "status_code": int(status_code),
        "duration_ms": float(duration_ms),
        "request_id": request_id,
        "timeout_like": float(duration_ms) >= float(settings.OPS_TIMEOUT_LIKE_MS),
    }
    with _events_lock:
        _http_events.append(event)
    if not bool(settings.OPS_EVENTS_PERSIST_ENABLED):
        return
    client = redis_client()
    if client is None:
        return
    try:
        client.xadd(
            _stream_name(),
            {
                "ts": event["ts"].isoformat() + "Z",
                "method": event["method"],
                "path": event["path"],
                "status_code": str(event["status_code"]),
                "duration_ms": str(event["duration_ms"]),
                "request_id": event["request_id"],
                "timeout_like": "1" if event["timeout_like"] else "0",
            },
            maxlen=_HTTP_EVENTS_MAX * 5,
            approximate=True,
        )
    except redis.RedisError as exc:
        logger.warning("ops_event_persist_failed", error=str(exc))


def _recent_http_events(window_minutes: int) -> list[dict]:
    cutoff = utc_now_naive() - timedelta(minutes=max(1, int(window_minutes)))
    redis_events = _load_recent_redis_events(window_minutes)
    with _events_lock:
        local_events = [e for e in list(_http_events) if e["ts"] >= cutoff]
    if not redis_events:
        return local_events

    # Other workers write the same stream; this process's own events appear in both sources.
    merged: list[dict] = []
    seen: set[tuple[str, str, int, int]] = set()
    for e in redis_events + local_events:
        key = (
            str(e.get("request_id") or ""),
            str(e.get("path") or ""),
            int(e.get("status_code") or 0),
            int(e["ts"].replace(tzinfo=timezone.utc).timestamp()),
        )
        if key in seen:
            continue
        seen.add(key)
        merged.append(e)
    return merged


def _percentile(values: list[float], p: float) -> float:
    if not values:
        return 0.0
    items = sorted(values)
    idx = int(round((len(items) - 1) * p))
    return float(items[max(0, min(idx, len(items) - 1))])


def get_ops_metrics_snapshot(window_minutes: int = 15) -> dict:
    events = _recent_http_events(window_minutes)
    durations = [float(e["duration_ms"]) for e in events]

    by_status_class = {"2xx": 0, "3xx": 0, "4xx": 0, "5xx": 0}
    by_path: dict[str, int] = {}
    for e in events:
        cls = f"{int(e['status_code']) // 100}xx"
        if cls in by_status_class:
            by_status_class[cls] += 1
        by_path[e["path"]] = by_path.get(e["path"], 0) + 1

    top_paths = [
        {"path": path, "count": count}
        for path, count in sorted(by_path.items(), key=lambda x: (-x[1], x[0]))[:10]
    ]
    return {
        "window_minutes": int(window_minutes),
        "checked_at": utc_now_naive(),
        "requests_total": len(events),
        "error_5xx_count": by_status_class["5xx"],
        "timeout_like_count": sum(1 for e in events if e["timeout_like"]),
        "latency_ms_p50": round(_percentile(durations, 0.50), 2),
        "latency_ms_p95": round(_percentile(durations, 0.95), 2),
        "by_status_class": by_status_class,
        "top_paths": top_paths,
    }


async def request_tracing_middleware(request: Request, call_next):
    request_id = (request.headers.get("x-request-id") or "").strip() or str(uuid.uuid4())
    request_id_ctx.set(request_id)

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        path=request.url.path,
        method=request.method,
        actor_id=actor_id_ctx.get(),
    )

    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        duration_ms = round((time.perf_counter() - start) * 1000.0, 2)
        record_http_event(
            method=request.method,
            path=request.url.path,
            status_code=500,
            duration_ms=duration_ms,
            request_id=request_id,
        )
        logger.error("http_request_failed", error=str(exc), duration_ms=duration_ms)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error", "request_id": request_id},
            headers={"X-Request-ID": request_id},
        )

    duration_ms = round((time.perf_counter() - start) * 1000.0, 2)
    record_http_event(
        method=request.method,
        path=request.url.path,
        status_code=int(response.status_code),
        duration_ms=duration_ms,
        request_id=request_id,
    )
    logger.info("http_request", status=response.status_code, duration_ms=duration_ms)
    response.headers["X-Request-ID"] = request_id
    return response
