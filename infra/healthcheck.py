"""Health endpoint: scheduler job states as JSON, 503 once any job is failing."""

from __future__ import annotations

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

HealthProvider = Callable[[], Dict[str, Any]]

HEALTH_PATHS = ("/", "/health", "/healthz")


def build_health_payload(jobs: Dict[str, Dict[str, Any]], **extra: Any) -> Dict[str, Any]:
    """Unhealthy as soon as any job's last run ended in error."""
    failing = sorted(name for name, job in jobs.items() if job.get("status") == "error")
    return {"ok": not failing, "failing_jobs": failing, "jobs": jobs, **extra}


class _EngineHealthServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address, provider: HealthProvider):
        super().__init__(address, _HealthHandler)
        self.provider = provider


class _HealthHandler(BaseHTTPRequestHandler):
    server: _EngineHealthServer

    def do_GET(self) -> None:  # noqa: N802
        if self.path.split("?", 1)[0] not in HEALTH_PATHS:
            self._reply(404, {"error": f"unknown path {self.path}"})
            return
        payload = self.server.provider()
        self._reply(200 if payload.get("ok") else 503, payload)

    def _reply(self, status: int, payload: Dict[str, Any]) -> None:
        body = json.dumps(payload, default=str).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover
        logger.debug("health %s", format % args)


class HealthServer:
    """Serves ``status_provider()`` (a build_health_payload dict) on a background thread."""

    def __init__(self, port: int, status_provider: HealthProvider, host: str = "0.0.0.0"):
        self._address = (host, int(port))
        self._provider = status_provider
        self._server: Optional[_EngineHealthServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        return self._server.server_port if self._server is not None else None

    def start(self) -> None:
        if self._server is not None:
            return
        self._server = _EngineHealthServer(self._address, self._provider)
        self._thread = threading.Thread(target=self._server.serve_forever, name="health", daemon=True)
        self._thread.start()
        logger.info("Health endpoint on %s:%s/health", self._address[0], self.port)

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=3)
        self._server = None
        self._thread = None


__all__ = ["HealthServer", "build_health_payload"]
