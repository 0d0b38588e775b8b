import os
from datetime import timedelta

from app.config import settings

# Beat intervals below these floors are clamped up.
MIN_TRASH_SWEEP_INTERVAL_SECONDS = 60
MIN_PIN_RECONCILE_INTERVAL_SECONDS = 300


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_value(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = _env_value(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_celery_config() -> dict:
    broker = (
        _env_value("CELERY_BROKER_URL")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/0"
    )
    backend = (
        _env_value("CELERY_RESULT_BACKEND")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/1"
    )
    config: dict[str, object] = {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": _env_value("CELERY_TIMEZONE") or "UTC",
    }
    config["beat_max_loop_interval"] = _env_int("CELERY_BEAT_MAX_LOOP_INTERVAL", 5)
    return config


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    if _env_bool("TRASH_SWEEP_ENABLED", True):
        interval = max(settings.trash_sweep_interval_seconds, MIN_TRASH_SWEEP_INTERVAL_SECONDS)
        schedule["trash_sweep"] = {
            "task": "app.tasks.trash.sweep_expired_trash",
            "schedule": timedelta(seconds=interval),
        }
    # Reconciliation is normally run on demand; a periodic run is opt-in.
    if _env_bool("PIN_RECONCILE_ENABLED", False):
        interval = max(
            _env_int("PIN_RECONCILE_INTERVAL_SECONDS", 86400),
            MIN_PIN_RECONCILE_INTERVAL_SECONDS,
        )
        schedule["pin_reconcile"] = {
            "task": "app.tasks.pins.reconcile_pins",
            "schedule": timedelta(seconds=interval),
        }
    return schedule
