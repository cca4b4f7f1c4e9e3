"""
Tests for event broadcasting, the health payload and the audit trail.
"""
import json
import urllib.error
import urllib.request
from unittest.mock import patch

import pytest

from core.audit_log import AuditLogger
from infra.alerting import BroadcastConfig, EventBroadcaster, EventSeverity
from infra.healthcheck import HealthServer, build_health_payload
from infra.metrics import MetricsRecorder
from tests.helpers import FixedClock


def _broadcaster(clock, **overrides):
    fields = dict(
        enabled=True, webhook_url="http://hooks.invalid/x", min_severity=EventSeverity.INFO,
        dry_run=True, dedupe_seconds=60,
    )
    fields.update(overrides)
    return EventBroadcaster(BroadcastConfig(**fields), clock=clock.monotonic)


class TestEventBroadcaster:
    def test_disabled_without_webhook(self, monkeypatch):
        monkeypatch.delenv("EVENT_WEBHOOK_URL", raising=False)

        broadcaster = EventBroadcaster.from_config({"enabled": True})

        assert not broadcaster.is_enabled()

    def test_webhook_from_env(self, monkeypatch):
        monkeypatch.setenv("HOOK", "http://hooks.invalid/y")

        broadcaster = EventBroadcaster.from_config({"enabled": True, "webhook_env": "HOOK"})

        assert broadcaster.is_enabled()

    def test_duplicate_events_are_deduped(self, monkeypatch):
        clock = FixedClock()
        broadcaster = _broadcaster(clock, dry_run=False)
        sent = []
        monkeypatch.setattr(broadcaster, "_send", sent.append)

        broadcaster.publish("position_opened", "TOK: bought")
        broadcaster.publish("position_opened", "TOK: bought")
        clock.advance(seconds=61)
        broadcaster.publish("position_opened", "TOK: bought")

        assert len(sent) == 2
        assert len(broadcaster.recent) == 3

    def test_min_severity_filters_delivery(self, monkeypatch):
        broadcaster = _broadcaster(FixedClock(), dry_run=False, min_severity=EventSeverity.WARNING)
        sent = []
        monkeypatch.setattr(broadcaster, "_send", sent.append)

        broadcaster.publish("position_opened", "info only")
        broadcaster.publish("drawdown_paused", "paused", EventSeverity.WARNING, {"wallet": "w"})

        assert [p["type"] for p in sent] == ["drawdown_paused"]
        assert "wallet" in sent[0]["text"]

    def test_failed_delivery_is_counted_not_raised(self):
        broadcaster = _broadcaster(FixedClock(), dry_run=False)

        with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("connection refused")):
            broadcaster._send({"type": "x", "text": "y"})

        assert broadcaster.delivery_failures == 1

    async def test_publish_inside_loop_runs_in_background(self, monkeypatch):
        broadcaster = _broadcaster(FixedClock(), dry_run=False)
        sent = []
        monkeypatch.setattr(broadcaster, "_send", sent.append)

        broadcaster.publish("position_closed", "TOK: take_profit")
        await broadcaster.drain(timeout=1)

        assert len(sent) == 1


class TestHealthPayload:
    def test_healthy(self):
        payload = build_health_payload({"scan": {"status": "idle"}}, mode="PAPER")

        assert payload["ok"]
        assert payload["mode"] == "PAPER"

    def test_failing_job_marks_unhealthy(self):
        payload = build_health_payload({"scan": {"status": "error"}, "monitor": {"status": "running"}})

        assert not payload["ok"]
        assert payload["failing_jobs"] == ["scan"]


class TestAuditLogger:
    def test_writes_jsonl(self, tmp_path):
        audit = AuditLogger(str(tmp_path / "audit.jsonl"), mode="PAPER")

        audit.log_decision("w", "TOK", "SKIP", "below strategy", gate="strategy_confidence", measured=55, threshold=60)
        audit.log_decision("w", "TOK", "BUY", "sized", extra={"size_sol": 0.5})

        lines = (tmp_path / "audit.jsonl").read_text().splitlines()
        first = json.loads(lines[0])
        assert first["gate"] == "strategy_confidence"
        assert first["mode"] == "PAPER"
        assert audit.get_recent(1)[0]["extra"] == {"size_sol": 0.5}


class TestHealthServer:
    @pytest.fixture
    def served(self):
        status = {"payload": build_health_payload({"scan": {"status": "idle"}})}
        server = HealthServer(0, lambda: status["payload"], host="127.0.0.1")
        server.start()
        yield server, status
        server.stop()

    def _get(self, server, path):
        try:
            with urllib.request.urlopen(f"http://127.0.0.1:{server.port}{path}", timeout=5) as response:
                return response.status, json.loads(response.read())
        except urllib.error.HTTPError as exc:
            return exc.code, None

    def test_healthy_returns_200(self, served):
        server, _ = served

        code, body = self._get(server, "/health")

        assert code == 200
        assert body["ok"] is True

    def test_failing_job_returns_503(self, served):
        server, status = served
        status["payload"] = build_health_payload({"scan": {"status": "error"}})

        code, _ = self._get(server, "/health")

        assert code == 503

    def test_unknown_path_404(self, served):
        server, _ = served

        code, _ = self._get(server, "/metrics")

        assert code == 404

    def test_query_string_ignored(self, served):
        server, _ = served

        code, body = self._get(server, "/healthz?verbose=1")

        assert code == 200
        assert body["failing_jobs"] == []


class TestMetricsRecorder:
    def test_singleton_shared(self):
        assert MetricsRecorder(enabled=False) is MetricsRecorder()

    def test_counters_kept_when_exporter_disabled(self):
        metrics = MetricsRecorder(enabled=False)

        metrics.record_blocked("drawdown")
        metrics.record_blocked("")
        metrics.record_trade("buy")
        metrics.record_job("quick_scan", "error", 0.5)

        assert metrics.blocked == {"drawdown": 1, "unknown": 1}
        assert metrics.trades["buy"] == 1
        assert metrics.job_failures["quick_scan"] == 1
        assert not metrics.is_enabled()
