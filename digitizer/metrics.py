# User value: This file gives ops per-job counters and latencies without running a metrics backend.
import logging
import threading
from copy import deepcopy

from digitizer.notifications import Notification, NotificationBus, Subscription, WorkerEvent

logger = logging.getLogger("digitizer.metrics")
_LOCK = threading.Lock()

_COUNTERS: dict[str, int] = {}
_TIMERS: dict[str, dict[str, float]] = {}


def _tagged_name(name: str, tags: dict[str, str]) -> str:
    parts = [f"{k}={v}" for k, v in sorted(tags.items()) if v]
    if not parts:
        return name
    return f"{name}|{'|'.join(parts)}"


def incr(name: str, amount: int = 1, **tags) -> None:
    metric = _tagged_name(name, {k: str(v) for k, v in tags.items()})
    with _LOCK:
        _COUNTERS[metric] = _COUNTERS.get(metric, 0) + int(amount)
        total = _COUNTERS[metric]
    logger.debug(
        "metric_counter_update",
        extra={"metric_name": metric, "metric_type": "counter", "delta": amount, "total": total},
    )


def observe_ms(name: str, duration_ms: float, **tags) -> None:
    metric = _tagged_name(name, {k: str(v) for k, v in tags.items()})
    value = float(max(0.0, duration_ms))
    with _LOCK:
        current = _TIMERS.get(metric)
        if not current:
            _TIMERS[metric] = {"count": 1.0, "sum_ms": value, "min_ms": value, "max_ms": value}
        else:
            current["count"] += 1.0
            current["sum_ms"] += value
            current["min_ms"] = min(current["min_ms"], value)
            current["max_ms"] = max(current["max_ms"], value)
    logger.debug(
        "metric_timer_observe",
        extra={"metric_name": metric, "metric_type": "timer_ms", "value_ms": round(value, 3)},
    )


def snapshot() -> dict:
    with _LOCK:
        counters = deepcopy(_COUNTERS)
        timers = deepcopy(_TIMERS)
    return {"counters": counters, "timers_ms": timers}


def reset() -> None:
    with _LOCK:
        _COUNTERS.clear()
        _TIMERS.clear()


def subscribe_metrics(bus: NotificationBus, queue_name: str) -> Subscription:
    """Count worker notifications per queue; progress updates are not counted."""

    def _observe(notification: Notification) -> None:
        if notification.event == WorkerEvent.ACTIVE:
            incr("worker_jobs_active_total", queue=queue_name)
        elif notification.event == WorkerEvent.COMPLETED:
            incr("worker_jobs_completed_total", queue=queue_name)
        elif notification.event == WorkerEvent.FAILED:
            incr("worker_jobs_failed_total", queue=queue_name, final=notification.final)

    return bus.subscribe(_observe, events=[WorkerEvent.ACTIVE, WorkerEvent.COMPLETED, WorkerEvent.FAILED])
