import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./visitgate.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", False)
    REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0").strip()

    OPS_TIMEOUT_LIKE_MS = _get_int("OPS_TIMEOUT_LIKE_MS", 1500)
    OPS_EVENTS_PERSIST_ENABLED = _get_bool("OPS_EVENTS_PERSIST_ENABLED", True)
    OPS_EVENTS_STREAM = os.getenv("OPS_EVENTS_STREAM", "visitgate.http_events").strip()
    REDIS_SOCKET_TIMEOUT_MS = _get_int("REDIS_SOCKET_TIMEOUT_MS", 250)

    # UTC+5:30 has no daylight saving rule, so a fixed offset is exact.
    VISIT_TZ_OFFSET_MINUTES = _get_int("VISIT_TZ_OFFSET_MINUTES", 330)
    VISIT_TZ_LABEL = os.getenv("VISIT_TZ_LABEL", "IST").strip() or "IST"
    VISIT_WINDOW_OPEN_HOUR = _get_int("VISIT_WINDOW_OPEN_HOUR", 12)
    VISIT_WINDOW_HOURS = _get_int("VISIT_WINDOW_HOURS", 48)

    BULK_MAX_TARGETS = _get_int("BULK_MAX_TARGETS", 500)
    IDEMPOTENCY_KEY_MAX_LENGTH = _get_int("IDEMPOTENCY_KEY_MAX_LENGTH", 200)

    MAINTENANCE_READ_ONLY = _get_bool("MAINTENANCE_READ_ONLY", False)
    MAINTENANCE_RETRY_AFTER_SECONDS = _get_int("MAINTENANCE_RETRY_AFTER_SECONDS", 120)
    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)


settings = Settings()
