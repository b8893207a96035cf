"""Request counters and process gauges in Prometheus text format."""

import os
import threading
import time

import psutil


def _format_metric(name: str, value, metric_type: str, help_text: str, labels: dict | None = None) -> list[str]:
    lines = [f"# HELP {name} {help_text}", f"# TYPE {name} {metric_type}"]
    if labels:
        for label_value, v in labels.items():
            lines.append(f'{name}{{type="{label_value}"}} {v}')
    else:
        lines.append(f"{name} {value}")
    return lines


class RequestMetrics:
    def __init__(self, clock=time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self.started_at = clock()
        self.requests = 0
        self.tracking = 0
        self.errors = 0

    def record_request(self):
        with self._lock:
            self.requests += 1

    def record_tracking(self):
        with self._lock:
            self.tracking += 1

    def record_error(self):
        with self._lock:
            self.errors += 1

    def uptime(self) -> float:
        return self._clock() - self.started_at

    def render_prometheus(self) -> str:
        with self._lock:
            requests, tracking, errors = self.requests, self.tracking, self.errors

        mem = psutil.Process(os.getpid()).memory_info()
        lines: list[str] = []
        lines += _format_metric("http_requests_total", requests, "counter", "Total number of HTTP requests")
        lines.append("")
        lines += _format_metric("tracking_requests_total", tracking, "counter", "Total number of tracking requests")
        lines.append("")
        lines += _format_metric("http_errors_total", errors, "counter", "Total number of HTTP errors")
        lines.append("")
        lines += _format_metric("process_uptime_seconds", round(self.uptime(), 3), "gauge", "Process uptime in seconds")
        lines.append("")
        lines += _format_metric(
            "process_memory_usage_bytes",
            None,
            "gauge",
            "Process memory usage in bytes",
            labels={"rss": mem.rss, "vms": mem.vms},
        )
        return "\n".join(lines) + "\n"
