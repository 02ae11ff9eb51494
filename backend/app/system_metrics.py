import threading
import time
from typing import Any


_lock = threading.Lock()
_metrics: dict[str, float] = {
    "ws_connections_active": 0.0,
    "ws_disconnects_total": 0.0,
    "ws_send_failures_total": 0.0,
    "ws_protocol_errors_total": 0.0,
    "ws_peers_dropped_total": 0.0,
    "rooms_active": 0.0,
    "code_changes_total": 0.0,
    "executions_total": 0.0,
    "executions_success": 0.0,
    "executions_compile_error": 0.0,
    "executions_runtime_error": 0.0,
    "executions_timeout": 0.0,
    "executions_error": 0.0,
    "executions_unsupported": 0.0,
    "execution_total_ms": 0.0,
    "execution_samples": 0.0,
}


def increment_metric(name: str, amount: float = 1.0) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        _metrics[key] = float(_metrics.get(key, 0.0)) + float(amount)


def decrement_metric(name: str, amount: float = 1.0) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        next_value = float(_metrics.get(key, 0.0)) - float(amount)
        _metrics[key] = max(0.0, next_value)


def set_metric(name: str, value: float) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        _metrics[key] = max(0.0, float(value))


def observe_execution_ms(value_ms: float) -> None:
    duration = max(0.0, float(value_ms or 0.0))
    with _lock:
        _metrics["execution_total_ms"] = float(_metrics.get("execution_total_ms", 0.0)) + duration
        _metrics["execution_samples"] = float(_metrics.get("execution_samples", 0.0)) + 1.0


def get_metrics_snapshot(extra: dict[str, Any] | None = None) -> dict[str, Any]:
    with _lock:
        data = dict(_metrics)

    execution_samples = max(1.0, float(data.get("execution_samples") or 0.0))

    payload: dict[str, Any] = {
        "generated_at": time.time(),
        "avg_execution_ms": round(float(data.get("execution_total_ms") or 0.0) / execution_samples, 2),
    }
    for key, value in data.items():
        payload[key] = round(float(value), 2) if key.endswith("_ms") else int(value)

    if extra:
        payload.update(extra)
    return payload
