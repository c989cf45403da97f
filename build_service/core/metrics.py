"""
Simple in-memory metrics for Prometheus exposition.
Thread-safe counters, reset on restart.
"""
import threading
from typing import Dict

_HELP = {
    "requests_total": "Total HTTP requests",
    "builds_started_total": "Build jobs that passed validation",
    "builds_succeeded_total": "Build jobs that produced an artifact",
    "builds_failed_total": "Build jobs that failed after validation",
    "builds_timed_out_total": "Build jobs that exceeded the build timeout",
    "updates_started_total": "Self-updates started",
    "updates_failed_total": "Self-updates whose script failed",
    "updates_rejected_total": "Self-update triggers rejected as already running",
}


class Metrics:
    """Thread-safe metrics collection."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "requests_total": 0,
            "requests_2xx": 0,
            "requests_4xx": 0,
            "requests_5xx": 0,
        }
        for name in _HELP:
            self._counters.setdefault(name, 0)

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        with self._lock:
            if name not in self._counters:
                self._counters[name] = 0
            self._counters[name] += value

    def record_response(self, status_code: int) -> None:
        """Count one response under its status class."""
        status_class = f"requests_{status_code // 100}xx"
        with self._lock:
            self._counters["requests_total"] += 1
            if status_class in self._counters:
                self._counters[status_class] += 1

    def get(self, name: str) -> int:
        """Get a counter value."""
        with self._lock:
            return self._counters.get(name, 0)

    def get_all(self) -> Dict[str, int]:
        """Get all counter values."""
        with self._lock:
            return self._counters.copy()

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        counters = self.get_all()

        lines.append("# HELP buildsvc_requests_by_status HTTP requests by status class")
        lines.append("# TYPE buildsvc_requests_by_status counter")
        lines.append(f'buildsvc_requests_by_status{{status="2xx"}} {counters["requests_2xx"]}')
        lines.append(f'buildsvc_requests_by_status{{status="4xx"}} {counters["requests_4xx"]}')
        lines.append(f'buildsvc_requests_by_status{{status="5xx"}} {counters["requests_5xx"]}')

        for name, help_text in _HELP.items():
            lines.append(f"# HELP buildsvc_{name} {help_text}")
            lines.append(f"# TYPE buildsvc_{name} counter")
            lines.append(f"buildsvc_{name} {counters.get(name, 0)}")

        return "\n".join(lines) + "\n"


# Global metrics instance
metrics = Metrics()
