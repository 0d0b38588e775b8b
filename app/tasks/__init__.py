from app.tasks.pins import reconcile_pins
from app.tasks.trash import sweep_expired_trash

__all__ = [
    "reconcile_pins",
    "sweep_expired_trash",
]
