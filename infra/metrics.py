"""Prometheus-backed metrics hooks for scheduled jobs, consensus and trading."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """
    Expose engine stats via Prometheus.

    Singleton pattern so every component records into the same collectors.
    The last values are also kept in plain dicts for the health endpoint and
    for tests, whether or not the exporter is enabled.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self.job_runs: Dict[str, int] = defaultdict(int)
        self.job_failures: Dict[str, int] = defaultdict(int)
        self.overlap_skips: Dict[str, int] = defaultdict(int)
        self.blocked: Dict[str, int] = defaultdict(int)
        self.trades: Dict[str, int] = defaultdict(int)
        self.consensus: Dict[str, int] = defaultdict(int)
        self.advisor_health: Dict[str, float] = {}
        self.last_job_durations: Dict[str, float] = {}

        self.registry = CollectorRegistry()
        self._job_summary = Summary(
            "engine_job_duration_seconds",
            "Duration of a scheduled job run",
            labelnames=("job",),
            registry=self.registry,
        )
        self._job_counter = Counter(
            "engine_job_runs_total",
            "Scheduled job runs by outcome",
            labelnames=("job", "status"),
            registry=self.registry,
        )
        self._overlap_counter = Counter(
            "engine_job_overlap_skips_total",
            "Ticks skipped because the previous run was still in flight",
            labelnames=("job",),
            registry=self.registry,
        )
        self._consensus_counter = Counter(
            "engine_consensus_total",
            "Consensus evaluations by status and action",
            labelnames=("status", "action"),
            registry=self.registry,
        )
        self._advisor_health_gauge = Gauge(
            "engine_advisor_health",
            "Advisor health score (0-100)",
            labelnames=("advisor",),
            registry=self.registry,
        )
        self._blocked_counter = Counter(
            "engine_blocked_total",
            "Entries refused, grouped by the gate that refused them",
            labelnames=("gate",),
            registry=self.registry,
        )
        self._trades_counter = Counter(
            "engine_trades_total",
            "Executed swaps by side",
            labelnames=("side",),
            registry=self.registry,
        )
        self._positions_gauge = Gauge(
            "engine_open_positions",
            "Open positions per wallet",
            labelnames=("wallet",),
            registry=self.registry,
        )
        self._portfolio_gauge = Gauge(
            "engine_portfolio_value_sol",
            "Portfolio value per wallet in SOL",
            labelnames=("wallet",),
            registry=self.registry,
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port, registry=self.registry)
                self._started = True
                if port != self._port:
                    logger.warning("Port %s in use, bound to port %s instead", self._port, port)
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                continue

        self._enabled = False
        logger.error("Failed to start metrics exporter after trying ports %s: %s", ports_to_try, last_error)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_job(self, name: str, status: str, duration: float) -> None:
        self.job_runs[name] += 1
        if status != "ok":
            self.job_failures[name] += 1
        self.last_job_durations[name] = duration
        self._job_summary.labels(job=name).observe(duration)
        self._job_counter.labels(job=name, status=status).inc()

    def record_overlap_skip(self, name: str) -> None:
        self.overlap_skips[name] += 1
        self._overlap_counter.labels(job=name).inc()

    def record_consensus(self, status: str, action: str) -> None:
        self.consensus[f"{status}:{action}"] += 1
        self._consensus_counter.labels(status=status, action=action).inc()

    def record_advisor_health(self, snapshot: Dict[str, Dict[str, object]]) -> None:
        for name, info in snapshot.items():
            health = float(info.get("health", 0.0))
            self.advisor_health[name] = health
            self._advisor_health_gauge.labels(advisor=name).set(health)

    def record_blocked(self, gate: str) -> None:
        gate = gate or "unknown"
        self.blocked[gate] += 1
        self._blocked_counter.labels(gate=gate).inc()

    def record_trade(self, side: str) -> None:
        self.trades[side] += 1
        self._trades_counter.labels(side=side).inc()

    def set_open_positions(self, wallet: str, count: int) -> None:
        self._positions_gauge.labels(wallet=wallet).set(count)

    def set_portfolio_value(self, wallet: str, value_sol: float) -> None:
        self._portfolio_gauge.labels(wallet=wallet).set(value_sol)
