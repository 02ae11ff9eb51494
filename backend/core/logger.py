import json
import logging
from typing import Any

logger = logging.getLogger("interview_pad")

# Candidate code and program output never reach the log, only their size.
_REDACTED_KEYS = frozenset({"code", "source", "source_text", "output", "stdout", "stderr"})
_NOISY_OUTCOMES = frozenset({"timeout", "error"})


def _sanitize_value(key: str, value: Any) -> Any:
	normalized_key = str(key or "").lower()
	if normalized_key in _REDACTED_KEYS:
		text = str(value or "")
		return {"redacted": True, "length": len(text)}
	if isinstance(value, (str, int, float, bool)) or value is None:
		return value
	if isinstance(value, dict):
		return {str(k): _sanitize_value(str(k), v) for k, v in value.items()}
	if isinstance(value, (list, tuple, set)):
		return [_sanitize_value(normalized_key, item) for item in value]
	return str(value)


def _emit(level: int, payload: dict, extra: dict) -> None:
	payload.update({str(k): _sanitize_value(str(k), v) for k, v in extra.items()})
	logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))


def log_event(component: str, event: str, room_id: str = "", **kwargs) -> None:
	"""Room-scoped event. Connection-level events pass no room and omit the key."""
	payload: dict[str, Any] = {
		"component": str(component or "app"),
		"event": str(event or "unknown"),
	}
	if room_id:
		payload["room_id"] = str(room_id)
	_emit(logging.INFO, payload, kwargs)


def log_execution(job_id: str, language: str, outcome: str, duration_ms: float, **kwargs) -> None:
	payload: dict[str, Any] = {
		"component": "execution",
		"event": "finished",
		"job_id": str(job_id or ""),
		"language": str(language or ""),
		"outcome": str(outcome or "unknown"),
		"duration_ms": round(max(0.0, float(duration_ms or 0.0)), 1),
	}
	level = logging.WARNING if payload["outcome"] in _NOISY_OUTCOMES else logging.INFO
	_emit(level, payload, kwargs)
