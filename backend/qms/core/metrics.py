"""Prometheus-compatible metrics for the queue API.

Counters live in process memory and are rendered in the text exposition
format by ``GET /metrics``.
"""

import logging
import time
from collections import defaultdict
from typing import DefaultDict, Dict, List, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

# Keep at most this many request durations per route
DURATION_SAMPLES = 1000


def _route_of(path: str) -> str:
    """Collapse numeric path segments (/tokens/42 -> /tokens/:id)."""
    return "/".join(":id" if part.isdigit() else part for part in path.split("/"))


class MetricsCollector:
    """In-process counters for HTTP traffic and queue lifecycle activity."""

    def __init__(self):
        self.requests: DefaultDict[Tuple[str, str], int] = defaultdict(int)
        self.durations: DefaultDict[Tuple[str, str], List[float]] = defaultdict(list)
        self.errors: DefaultDict[int, int] = defaultdict(int)
        self.active_requests = 0

        self.queue_events: DefaultDict[str, int] = defaultdict(int)
        self.queue_errors: DefaultDict[str, int] = defaultdict(int)
        self.broadcast_failures = 0
        self.ws_active_connections = 0

    def record_request(self, method: str, path: str, status: int, duration: float):
        key = (method, _route_of(path))
        self.requests[key] += 1
        samples = self.durations[key]
        samples.append(duration)
        if len(samples) > DURATION_SAMPLES:
            del samples[: len(samples) - DURATION_SAMPLES]
        if status >= 400:
            self.errors[status] += 1

    def record_queue_event(self, event: str):
        """Count a delivered real-time event (token:created, queue:updated, ...)."""
        self.queue_events[event] += 1

    def record_queue_error(self, kind: str):
        self.queue_errors[kind] += 1

    def record_broadcast_failure(self):
        self.broadcast_failures += 1

    def snapshot(self) -> Dict[str, object]:
        """Plain-dict view used by the readiness check."""
        return {
            "requests": sum(self.requests.values()),
            "queue_events": dict(self.queue_events),
            "queue_errors": dict(self.queue_errors),
            "broadcast_failures": self.broadcast_failures,
            "ws_active_connections": self.ws_active_connections,
        }

    def get_prometheus_metrics(self) -> str:
        lines: List[str] = []

        def block(name: str, kind: str, help_text: str):
            lines.append(f"# HELP {name} {help_text}")
            lines.append(f"# TYPE {name} {kind}")

        block("http_requests_total", "counter", "Total HTTP requests")
        for (method, path), count in sorted(self.requests.items()):
            lines.append(f'http_requests_total{{method="{method}",path="{path}"}} {count}')

        block("http_errors_total", "counter", "HTTP responses with status >= 400")
        for code, count in sorted(self.errors.items()):
            lines.append(f'http_errors_total{{status="{code}"}} {count}')

        block("http_active_requests", "gauge", "Requests in flight")
        lines.append(f"http_active_requests {self.active_requests}")

        block("http_request_duration_seconds", "summary", "Request duration")
        for (method, path), samples in sorted(self.durations.items()):
            if not samples:
                continue
            ordered = sorted(samples)
            median = ordered[len(ordered) // 2]
            p99 = ordered[min(len(ordered) - 1, int(len(ordered) * 0.99))]
            labels = f'method="{method}",path="{path}"'
            lines.append(f'http_request_duration_seconds{{{labels},quantile="0.5"}} {median:.4f}')
            lines.append(f'http_request_duration_seconds{{{labels},quantile="0.99"}} {p99:.4f}')

        block("queue_events_total", "counter", "Queue events delivered to subscribers")
        for event, count in sorted(self.queue_events.items()):
            lines.append(f'queue_events_total{{event="{event}"}} {count}')

        block("queue_errors_total", "counter", "Failed queue operations by error kind")
        for kind, count in sorted(self.queue_errors.items()):
            lines.append(f'queue_errors_total{{kind="{kind}"}} {count}')

        block("broadcast_failures_total", "counter", "Real-time deliveries that failed")
        lines.append(f"broadcast_failures_total {self.broadcast_failures}")

        block("ws_active_connections", "gauge", "Open WebSocket connections")
        lines.append(f"ws_active_connections {self.ws_active_connections}")

        return "\n".join(lines) + "\n"


metrics = MetricsCollector()


class MetricsMiddleware(BaseHTTPMiddleware):
    """Times every request except the metrics scrape itself."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        metrics.active_requests += 1
        start = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            metrics.record_request(request.method, request.url.path, status, time.perf_counter() - start)
            metrics.active_requests -= 1
