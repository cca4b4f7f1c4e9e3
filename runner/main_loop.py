"""
Hivemind Runner: Main Loop

Wires every component from config and runs the scheduled jobs.

Jobs:
1. quick_scan        - cached discovery, technical pre-filter, top 2 through consensus
2. deep_scan         - fresh strategy per wallet, full strategy filters, consensus
3. position_monitor  - exits, trailing stops, lost-track detection
4. rebalance         - trim over-concentrated holdings, log performance
5. cache_janitor     - evict cache entries, heal advisor health
6. stale_janitor     - purge old closed positions and journal rows
"""

import asyncio
import logging
import os
import signal
from datetime import timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import yaml

from ai.advisor import AdvisorRegistry
from ai.consensus import ConsensusEngine
from analytics.trade_journal import summarize
from core.audit_log import AuditLogger
from core.exceptions import ConfigError
from core.execution import HttpSwapExecutor, PaperSwapExecutor, SwapRouter
from core.lifecycle import LifecycleManager
from core.market_cache import AnalysisCache, FingerprintTable, TokenDiscoveryCache
from core.market_data import DEFAULT_DISCOVERY_FILTERS, DexScreenerMarketData
from core.models import BotConfig, utc_now
from core.portfolio import PortfolioAnalyzer
from core.position_manager import PositionManager
from core.risk import DrawdownGuard, LossProbabilityScreen, RiskGate
from core.rotation import RotationPlanner
from core.sizing import ModeSelector
from core.wallet import PaperWallet, RpcWalletAccess
from infra.alerting import EventBroadcaster
from infra.healthcheck import HealthServer, build_health_payload
from infra.metrics import MetricsRecorder
from infra.scheduler import Scheduler
from infra.state_store import JsonStateStore
from infra.ttl_store import TTLStore
from strategy.hivemind import StrategyGenerator, select_deep_candidates, select_quick_candidates

logger = logging.getLogger(__name__)

ALLOWED_MODES = {"DRY_RUN", "PAPER", "LIVE"}

DEFAULT_JOBS = {
    "quick_scan": {"interval_seconds": 600, "run_on_start": True},
    "deep_scan": {"interval_seconds": 1800},
    "position_monitor": {"interval_seconds": 300},
    "rebalance": {"interval_seconds": 1200},
    "cache_janitor": {"interval_seconds": 3600},
    "stale_janitor": {"interval_seconds": 86400},
}


class TradingEngine:
    """
    Engine orchestrator.

    Responsibilities:
    - Validate and load config
    - Build collaborators for the selected mode
    - Register and run the scheduled jobs
    - Fan each job out over wallets, isolating per-wallet failures

    Any collaborator can be injected, which is how the tests run the
    engine against fakes.
    """

    def __init__(
        self,
        config_dir: str = "config",
        mode: Optional[str] = None,
        *,
        market_data=None,
        wallet_access=None,
        router=None,
        registry: Optional[AdvisorRegistry] = None,
        store=None,
        events: Optional[EventBroadcaster] = None,
        metrics: Optional[MetricsRecorder] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        configure_logging: bool = True,
    ):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                logger.error(f"{idx:>2}. {error}")
            logger.error("=" * 80)
            raise ConfigError(validation_errors)

        self.app_config = self._load_yaml("app.yaml")
        self.policy_config = self._load_yaml("policy.yaml")
        self.advisors_config = self._load_yaml("advisors.yaml")

        self.mode = (mode or self.app_config.get("app", {}).get("mode", "DRY_RUN")).upper()
        if self.mode not in ALLOWED_MODES:
            raise ValueError(f"Invalid mode: {self.mode}")

        if configure_logging:
            self._setup_logging()
        logger.info(f"Starting hivemind-trader in mode={self.mode}")

        monitoring = self.app_config.get("monitoring", {}) or {}
        self.metrics = metrics or MetricsRecorder(
            enabled=monitoring.get("metrics_enabled", False),
            port=monitoring.get("metrics_port", 9100),
        )

        policy = self.policy_config
        cache_cfg = policy.get("cache", {}) or {}
        self.discovery_store = TTLStore("token_discovery")
        self.analysis_store = TTLStore("advisor_analysis")
        self.fingerprint_store = TTLStore("position_fingerprints")
        self.discovery_cache = TokenDiscoveryCache(
            self.discovery_store, ttl_seconds=cache_cfg.get("discovery_ttl_seconds", 900),
        )
        self.analysis_cache = AnalysisCache(
            self.analysis_store,
            max_age_seconds=cache_cfg.get("analysis_max_age_seconds", 1800),
            price_move_pct=cache_cfg.get("analysis_price_move_pct", 5.0),
            profit_move_pct=cache_cfg.get("analysis_profit_move_pct", 5.0),
        )
        self.fingerprints = FingerprintTable(
            self.fingerprint_store,
            price_move_pct=cache_cfg.get("fingerprint_price_move_pct", 2.0),
            profit_move_pct=cache_cfg.get("fingerprint_profit_move_pct", 2.0),
            min_interval_seconds=cache_cfg.get("fingerprint_min_interval_seconds", 900),
        )
        self.fingerprint_max_age = float(cache_cfg.get("fingerprint_max_age_seconds", 7200))

        self.market_data = market_data or DexScreenerMarketData(self.app_config.get("market_data", {}))
        self.wallet_access, self.router = self._build_execution(wallet_access, router)

        self.registry = registry or AdvisorRegistry.from_config(self.advisors_config, policy.get("consensus", {}))
        self.consensus = ConsensusEngine(self.registry, policy.get("consensus", {}), metrics=self.metrics)
        self.health_recovery = float((policy.get("consensus", {}) or {}).get("health_recovery_per_janitor", 10.0))

        loss_screen = LossProbabilityScreen(policy.get("loss_screen", {}), estimator=self.consensus.estimate_loss)
        self.risk_gate = RiskGate(DrawdownGuard(policy.get("drawdown", {})), loss_screen)
        self.mode_selector = ModeSelector(policy.get("modes"))
        self.position_manager = PositionManager(policy, self.mode_selector)
        self.portfolio = PortfolioAnalyzer(self.market_data, policy.get("portfolio", {}))
        self.rotation_planner = RotationPlanner(policy.get("rotation", {}))

        state_cfg = self.app_config.get("state", {}) or {}
        self.store = store or JsonStateStore(state_cfg.get("file"))
        self.retention_days = float(state_cfg.get("retention_days", 30))

        log_cfg = self.app_config.get("logging", {}) or {}
        self.audit = AuditLogger(log_cfg.get("audit_file", "logs/audit.jsonl"), mode=self.mode)
        self.events = events or EventBroadcaster.from_config(self.app_config.get("events", {}))
        self.strategies = StrategyGenerator(self.store, policy.get("strategy", {}))

        discovery_cfg = policy.get("discovery", {}) or {}
        self.discovery_filters = {**DEFAULT_DISCOVERY_FILTERS, **(discovery_cfg.get("filters") or {})}
        self.quick_scan_limit = int(discovery_cfg.get("quick_scan_top", 2))
        self.deep_scan_limit = int(discovery_cfg.get("max_candidates", 10))

        lifecycle_cfg = {**(policy.get("execution", {}) or {}), **(policy.get("lifecycle", {}) or {})}
        self.lifecycle = LifecycleManager(
            store=self.store,
            market_data=self.market_data,
            wallet_access=self.wallet_access,
            router=self.router,
            consensus=self.consensus,
            loss_screen=loss_screen,
            risk_gate=self.risk_gate,
            portfolio=self.portfolio,
            mode_selector=self.mode_selector,
            position_manager=self.position_manager,
            rotation_planner=self.rotation_planner,
            analysis_cache=self.analysis_cache,
            fingerprints=self.fingerprints,
            audit=self.audit,
            events=self.events,
            metrics=self.metrics,
            config=lifecycle_cfg,
            mode=self.mode,
        )

        scheduler_cfg = self.app_config.get("scheduler", {}) or {}
        self.max_concurrent_wallets = int(scheduler_cfg.get("max_concurrent_wallets", 4))
        self.drain_timeout = float(scheduler_cfg.get("drain_timeout_seconds", 30))
        self.scheduler = Scheduler(
            sleep=sleep or asyncio.sleep,
            jitter_pct=scheduler_cfg.get("jitter_pct", 0.0),
            metrics=self.metrics,
        )
        self._register_jobs(scheduler_cfg.get("jobs", {}) or {})
        self._bootstrap_wallets(self.app_config.get("wallets", []) or [])

        self.health_server: Optional[HealthServer] = None
        if monitoring.get("health_enabled", False):
            self.health_server = HealthServer(monitoring.get("health_port", 8080), self.health_status)

        logger.info(f"Initialized TradingEngine in {self.mode} mode")

    def _load_yaml(self, filename: str) -> dict:
        """Load YAML config file"""
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _setup_logging(self) -> None:
        log_cfg = self.app_config.get("logging", {}) or {}
        log_file = log_cfg.get("file", "logs/hivemind.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        logging.basicConfig(
            level=getattr(logging, log_cfg.get("level", "INFO").upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

    def _build_execution(self, wallet_access, router):
        execution_cfg = self.app_config.get("execution", {}) or {}
        if self.mode == "LIVE":
            if wallet_access is None:
                rpc_url = os.getenv(execution_cfg.get("rpc_url_env", "SOLANA_RPC_URL"), "")
                if not rpc_url:
                    raise ConfigError(["LIVE mode requires a Solana RPC URL in the environment"])
                wallet_access = RpcWalletAccess(rpc_url)
            if router is None:
                primary_url = os.getenv(execution_cfg.get("primary_url_env", "SWAP_SERVICE_URL"), "")
                if not primary_url:
                    raise ConfigError(["LIVE mode requires a swap service URL in the environment"])
                secondary_url = os.getenv(execution_cfg.get("secondary_url_env", "SWAP_FALLBACK_URL"), "")
                router = SwapRouter(
                    HttpSwapExecutor(primary_url, name="primary"),
                    HttpSwapExecutor(secondary_url, name="secondary") if secondary_url else None,
                )
            return wallet_access, router

        paper_cfg = self.app_config.get("paper", {}) or {}
        if wallet_access is None:
            wallet_access = PaperWallet(paper_cfg.get("balances", {}))
        if router is None:
            router = SwapRouter(PaperSwapExecutor(
                self.market_data,
                wallet_access,
                simulated_slippage_bps=paper_cfg.get("simulated_slippage_bps", 50),
            ))
        return wallet_access, router

    def _bootstrap_wallets(self, wallets: List[Dict[str, Any]]) -> None:
        """Create BotConfigs for wallets named in app.yaml that the store has never seen."""
        for entry in wallets:
            address = entry["address"]
            if self.store.get_bot_config(address) is not None:
                continue
            config = BotConfig(
                wallet=address,
                enabled=entry.get("enabled", True),
                total_budget=entry.get("total_budget", 0.0),
                max_trade_pct=entry.get("max_trade_pct", 10.0),
                fee_exempt=entry.get("fee_exempt", False),
                drawdown_bypass=entry.get("drawdown_bypass", False),
            )
            self.store.save_bot_config(config)
            logger.info("Registered wallet %s", address)

    def _register_jobs(self, jobs_cfg: Dict[str, Dict[str, Any]]) -> None:
        bodies = {
            "quick_scan": self.quick_scan,
            "deep_scan": self.deep_scan,
            "position_monitor": self.monitor_positions,
            "rebalance": self.rebalance,
            "cache_janitor": self.cache_janitor,
            "stale_janitor": self.stale_janitor,
        }
        for name, body in bodies.items():
            cfg = {**DEFAULT_JOBS[name], **(jobs_cfg.get(name) or {})}
            if not cfg.get("enabled", True):
                logger.info("Job %s disabled in config", name)
                continue
            self.scheduler.register(name, body, cfg["interval_seconds"], run_on_start=cfg.get("run_on_start", False))

    async def _fan_out(self, wallets: List[str], work: Callable[[str], Awaitable[Any]]) -> Dict[str, Any]:
        """Run ``work`` for every wallet, a bounded number at a time. One wallet's failure never stops the rest."""
        semaphore = asyncio.Semaphore(self.max_concurrent_wallets)

        async def _bounded(wallet: str):
            async with semaphore:
                return await work(wallet)

        results = await asyncio.gather(*(_bounded(w) for w in wallets), return_exceptions=True)
        outcomes: Dict[str, Any] = {}
        for wallet, result in zip(wallets, results):
            if isinstance(result, Exception):
                logger.error("Wallet %s failed: %s", wallet, result, exc_info=result)
            outcomes[wallet] = result
        return outcomes

    @staticmethod
    def _summarize(outcomes: Dict[str, Any]) -> str:
        failed = sum(1 for r in outcomes.values() if isinstance(r, Exception))
        return f"{len(outcomes)} wallets, {failed} failed"

    # Jobs

    async def _scan(self, select: Callable, limit: int, use_cache: bool) -> str:
        configs = {c.wallet: c for c in self.store.enabled_configs()}
        if not configs:
            return "no enabled wallets"

        if use_cache:
            tokens = await self.discovery_cache.get_or_fetch(self.discovery_filters, self.market_data.discover)
        else:
            tokens = await self.market_data.discover(self.discovery_filters)
            self.discovery_cache.put(self.discovery_filters, tokens)

        async def _scan_wallet(wallet: str):
            strategy = self.strategies.ensure_fresh(wallet)
            candidates = select(tokens, strategy, limit)
            if not candidates:
                return []
            return await self.lifecycle.scan_wallet(configs[wallet], candidates, strategy)

        outcomes = await self._fan_out(list(configs), _scan_wallet)
        return f"{len(tokens)} tokens; {self._summarize(outcomes)}"

    async def quick_scan(self) -> str:
        return await self._scan(select_quick_candidates, self.quick_scan_limit, use_cache=True)

    async def deep_scan(self) -> str:
        return await self._scan(select_deep_candidates, self.deep_scan_limit, use_cache=False)

    async def monitor_positions(self) -> str:
        wallets = self.store.wallets_with_positions()
        if not wallets:
            return "no open positions"
        outcomes = await self._fan_out(wallets, self.lifecycle.monitor_wallet)
        exits = sum(
            1 for result in outcomes.values() if not isinstance(result, Exception)
            for _, decision in result if decision.should_exit
        )
        return f"{self._summarize(outcomes)}, {exits} exits"

    async def rebalance(self) -> str:
        wallets = [c.wallet for c in self.store.enabled_configs()]
        outcomes = await self._fan_out(wallets, self.lifecycle.rebalance_wallet)
        trims = sum(len(r) for r in outcomes.values() if isinstance(r, dict))

        summary = summarize(self.store.journal(since=utc_now() - timedelta(hours=24)))
        logger.info("Performance (24h): %s", summary.describe())
        return f"{trims} trims; {summary.describe()}"

    async def cache_janitor(self) -> str:
        evicted = (
            self.discovery_store.evict_expired()
            + self.analysis_store.evict_expired()
            + self.fingerprint_store.evict_older_than(self.fingerprint_max_age)
        )
        healed = self.registry.heal(self.health_recovery)
        self.metrics.record_advisor_health(self.registry.snapshot())
        return f"evicted {evicted} cache entries, healed {healed} advisors"

    async def stale_janitor(self) -> str:
        cutoff = utc_now() - timedelta(days=self.retention_days)
        removed = self.store.purge_before(cutoff)
        return f"purged {removed} records older than {self.retention_days:.0f}d"

    # Lifecycle

    def health_status(self) -> Dict[str, Any]:
        return build_health_payload(
            self.scheduler.status(),
            mode=self.mode,
            advisors=self.registry.snapshot(),
        )

    async def run(self) -> None:
        self.metrics.start()
        if self.health_server is not None:
            self.health_server.start()

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        self.scheduler.start()
        try:
            await stop.wait()
            logger.warning("=" * 80)
            logger.warning("SHUTDOWN SIGNAL RECEIVED - Initiating graceful shutdown")
            logger.warning("=" * 80)
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        await self.scheduler.stop(drain_timeout=self.drain_timeout)
        await self.events.drain()
        if self.health_server is not None:
            self.health_server.stop()
        logger.info("Shutdown complete")

    async def run_once(self) -> Dict[str, str]:
        """One quick scan and one monitor pass, then return the job summaries."""
        results = {}
        for name in ("quick_scan", "position_monitor"):
            if name in self.scheduler.jobs:
                await self.scheduler.run_job(name)
                state = self.scheduler.jobs[name]
                results[name] = state.last_error or state.last_result
        return results

    def run_forever(self) -> None:
        asyncio.run(self.run())


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Hivemind multi-advisor Solana trading engine")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--mode", choices=sorted(ALLOWED_MODES), help="Override app.mode from app.yaml")
    parser.add_argument("--once", action="store_true", help="Run one scan and one monitor pass, then exit")

    args = parser.parse_args()

    engine = TradingEngine(config_dir=args.config_dir, mode=args.mode)

    if args.once:
        for job, result in asyncio.run(engine.run_once()).items():
            logger.info("%s: %s", job, result)
    else:
        engine.run_forever()


if __name__ == "__main__":
    main()
