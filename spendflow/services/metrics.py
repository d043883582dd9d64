"""
Metrics collection for the Spendflow API and engine.
"""
import threading
from typing import Dict, Any
from collections import defaultdict
from datetime import datetime, timezone

# In-memory metrics store (use Prometheus/StatsD in production)
_lock = threading.Lock()
_metrics: Dict[str, Any] = {
    "requests": defaultdict(int),
    "errors": defaultdict(int),
    "chain_transitions": defaultdict(int),
    "ledger_operations": defaultdict(int),
    "response_times": [],
    "start_time": datetime.now(timezone.utc).isoformat(),
}


def record_request(method: str, path: str, status_code: int, duration_ms: float):
    """Record HTTP request metrics."""
    with _lock:
        _metrics["requests"][f"{method} {path}"] += 1
        _metrics["requests"][f"status_{status_code}"] += 1

        # Keep last 1000 response times
        _metrics["response_times"].append(duration_ms)
        if len(_metrics["response_times"]) > 1000:
            _metrics["response_times"] = _metrics["response_times"][-1000:]


def record_error(error_type: str, path: str = ""):
    """Record error metrics."""
    with _lock:
        _metrics["errors"][error_type] += 1
        if path:
            _metrics["errors"][f"{error_type}:{path}"] += 1


def record_chain_transition(chain_kind: str, to_state: str):
    with _lock:
        _metrics["chain_transitions"][f"{chain_kind}:{to_state}"] += 1


def record_ledger_operation(operation: str, outcome: str):
    with _lock:
        _metrics["ledger_operations"][f"{operation}:{outcome}"] += 1


def get_metrics() -> Dict[str, Any]:
    """Get current metrics."""
    with _lock:
        response_times = list(_metrics["response_times"])
        requests = dict(_metrics["requests"])
        errors = dict(_metrics["errors"])
        transitions = dict(_metrics["chain_transitions"])
        ledger_ops = dict(_metrics["ledger_operations"])
        start_time = _metrics["start_time"]

    avg_response_time = sum(response_times) / len(response_times) if response_times else 0
    p95_response_time = sorted(response_times)[int(len(response_times) * 0.95)] if len(response_times) >= 20 else 0

    uptime_seconds = (datetime.now(timezone.utc) - datetime.fromisoformat(start_time)).total_seconds()

    return {
        "uptime_seconds": int(uptime_seconds),
        "requests": {
            "total": sum(v for k, v in requests.items() if not k.startswith("status_")),
            "by_endpoint": requests,
        },
        "errors": {
            "total": sum(v for k, v in errors.items() if ":" not in k),
            "by_type": errors,
        },
        "response_times": {
            "avg_ms": round(avg_response_time, 2),
            "p95_ms": round(p95_response_time, 2),
        },
        "chain_transitions": transitions,
        "ledger_operations": ledger_ops,
    }


def reset_metrics():
    """Reset all metrics (for testing)."""
    with _lock:
        _metrics["requests"] = defaultdict(int)
        _metrics["errors"] = defaultdict(int)
        _metrics["chain_transitions"] = defaultdict(int)
        _metrics["ledger_operations"] = defaultdict(int)
        _metrics["response_times"] = []
        _metrics["start_time"] = datetime.now(timezone.utc).isoformat()
