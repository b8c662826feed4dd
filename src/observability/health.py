"""
Dependency Health for EventFlow
Aggregates event store, delivery channel and analytics sink checks
"""

import asyncio
import json
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Awaitable, Callable, Dict, Iterable, Tuple

import structlog

from src import __version__

logger = structlog.get_logger(__name__)

HealthCheck = Callable[[], Awaitable[bool]]

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"


@dataclass
class DependencyHealth:
    """Result of the latest check of one dependency"""

    up: bool
    latency_ms: float
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "up" if self.up else "down",
            "latency_ms": round(self.latency_ms, 2),
            "last_check": self.checked_at.isoformat(),
        }


class HealthStatus:
    """
    Latest health of every dependency

    Optional dependencies (the analytics sink) being down makes the process
    "degraded" rather than "unhealthy": events are still accepted and delivered.
    """

    def __init__(self, optional: Iterable[str] = ()):
        self.optional = frozenset(optional)
        self.dependencies: Dict[str, DependencyHealth] = {}
        self.started_at = time.monotonic()

    def record(self, name: str, up: bool, latency_ms: float) -> None:
        self.dependencies[name] = DependencyHealth(up=up, latency_ms=latency_ms)

    @property
    def overall(self) -> str:
        if not self.dependencies:
            return UNHEALTHY

        down = {name for name, dep in self.dependencies.items() if not dep.up}
        if not down:
            return HEALTHY
        return DEGRADED if down <= self.optional else UNHEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.overall,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(time.monotonic() - self.started_at, 2),
            "version": __version__,
            "dependencies": {name: dep.to_dict() for name, dep in self.dependencies.items()},
        }


async def timed_check(check: HealthCheck, timeout_seconds: float = 5.0) -> Tuple[bool, float]:
    """
    Run one check; raising or timing out counts as down

    Returns:
        Tuple of (is_up, latency_ms)
    """
    start = time.perf_counter()
    try:
        up = bool(await asyncio.wait_for(check(), timeout=timeout_seconds))
    except Exception as e:
        logger.warning("Health check raised", error=str(e), error_type=type(e).__name__)
        up = False
    return up, (time.perf_counter() - start) * 1000


class HealthMonitor:
    """
    Runs registered dependency checks and keeps the latest HealthStatus

    Example:
        monitor = HealthMonitor({"event_store": store.health_check})
        await monitor.run_checks()
        monitor.status.to_dict()
    """

    def __init__(
        self,
        checks: Dict[str, HealthCheck],
        timeout_seconds: float = 5.0,
        optional: Iterable[str] = (),
    ):
        self.checks = dict(checks)
        self.timeout_seconds = timeout_seconds
        self.status = HealthStatus(optional)

    def add_check(self, name: str, check: HealthCheck) -> None:
        """Register a required dependency after construction"""
        self.checks[name] = check

    async def run_checks(self) -> Dict[str, Any]:
        """Check all dependencies concurrently; returns the status dictionary"""
        names = list(self.checks)
        results = await asyncio.gather(
            *(timed_check(self.checks[name], self.timeout_seconds) for name in names)
        )

        for name, (up, latency_ms) in zip(names, results):
            self.status.record(name, up, latency_ms)

        logger.debug(
            "Dependencies checked",
            status=self.status.overall,
            down=[name for name, (up, _) in zip(names, results) if not up],
        )
        return self.status.to_dict()

    async def run_periodic(self, interval_seconds: float = 30.0) -> None:
        """Refresh the status every ``interval_seconds`` until cancelled"""
        while True:
            await self.run_checks()
            await asyncio.sleep(interval_seconds)


def start_health_server(monitor: HealthMonitor, port: int = 8081) -> HTTPServer:
    """
    Serve the monitor's latest status on GET /health from a daemon thread

    Worker processes have no HTTP API, so this is their liveness endpoint.
    Responds 503 only when the status is "unhealthy".
    """

    class HealthHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path != "/health":
                self.send_response(404)
                self.end_headers()
                return

            body = monitor.status.to_dict()
            self.send_response(503 if body["status"] == UNHEALTHY else 200)
            self.send_header("Content-Type", "application/json")
            self.end_headers()
            self.wfile.write(json.dumps(body).encode("utf-8"))

        def log_message(self, format, *args):
            pass

    server = HTTPServer(("0.0.0.0", port), HealthHandler)
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()

    logger.info("Health check server started", port=port)
    return server
