"""
End-to-end scan, monitor and rebalance passes over in-memory market, wallet and swaps.
"""
from datetime import timedelta

import pytest

from ai.consensus import ConsensusEngine
from core.decisions import AddToPosition, Buy, Rotate, Skip
from core.execution import PaperSwapExecutor, SwapRouter
from core.lifecycle import LifecycleManager
from core.exceptions import CriticalDataUnavailable
from core.market_cache import AnalysisCache, FingerprintTable
from core.models import BotConfig, PositionStatus, TradeOutcome
from core.portfolio import PortfolioAnalyzer
from core.position_manager import PositionManager
from core.risk import DrawdownGuard, LossProbabilityScreen, RiskGate
from core.rotation import RotationPlanner
from core.sizing import ModeSelector
from core.wallet import PaperWallet
from infra.state_store import JsonStateStore
from infra.ttl_store import TTLStore
from tests.helpers import (
    START,
    FakeMarket,
    FixedClock,
    RecordingAudit,
    RecordingEvents,
    ScriptedExecutor,
    make_position,
    make_registry,
    make_snapshot,
    make_strategy,
)

WALLET = "wallet1"
BUY_VOTE = {"action": "BUY", "confidence": 0.8, "potential_upside_pct": 50, "reasoning": "momentum"}
SELL_VOTE = {"action": "SELL", "confidence": 0.7, "reasoning": "fading"}
HOLD_VOTE = {"action": "HOLD", "confidence": 0.5, "reasoning": "unclear"}


class Harness:
    """Wires a LifecycleManager the way the engine does, with fakes at the I/O edges."""

    def __init__(self, tmp_path, mode="PAPER", votes=None, sol=10.0, executor=None):
        self.clock = FixedClock()
        self.market = FakeMarket()
        self.wallet = PaperWallet({WALLET: sol})
        self.executor = executor or PaperSwapExecutor(self.market, self.wallet, simulated_slippage_bps=0)
        self.store = JsonStateStore(str(tmp_path / "state.json"))
        self.audit = RecordingAudit()
        self.events = RecordingEvents()
        self.registry = make_registry([votes or BUY_VOTE] * 3)

        consensus = ConsensusEngine(self.registry, {"quorum": 3})
        screen = LossProbabilityScreen({}, estimator=consensus.estimate_loss)
        selector = ModeSelector()
        self.manager = LifecycleManager(
            store=self.store,
            market_data=self.market,
            wallet_access=self.wallet,
            router=SwapRouter(self.executor),
            consensus=consensus,
            loss_screen=screen,
            risk_gate=RiskGate(DrawdownGuard(), screen),
            portfolio=PortfolioAnalyzer(self.market),
            mode_selector=selector,
            position_manager=PositionManager({}, selector),
            rotation_planner=RotationPlanner(),
            analysis_cache=AnalysisCache(TTLStore("analysis", clock=self.clock.monotonic)),
            fingerprints=FingerprintTable(TTLStore("fingerprints", clock=self.clock.monotonic)),
            audit=self.audit,
            events=self.events,
            mode=mode,
            clock=self.clock,
        )

    def hold(self, token_id="TOKEN1", quantity=500.0, price=0.001, **overrides):
        position = make_position(
            token_id=token_id, symbol=token_id, entry_price=price, sol_committed=quantity * price,
            token_quantity=quantity, **overrides,
        )
        self.store.create_position(position)
        self.wallet.tokens.setdefault(WALLET, {})[token_id] = quantity
        return position

    def advisor_calls(self):
        return sum(advisor.client.calls for advisor in self.registry)


class TestScan:
    async def test_paper_buy_opens_position(self, tmp_path):
        h = Harness(tmp_path)
        candidate = h.market.add(make_snapshot("TOKEN1", price=0.001))
        config = BotConfig(wallet=WALLET)

        decisions = await h.manager.scan_wallet(config, [candidate], make_strategy())

        assert isinstance(decisions[0], Buy)
        position = h.store.get_position(WALLET, "TOKEN1")
        assert position.sol_committed == pytest.approx(0.66)
        assert position.token_quantity == pytest.approx(660.0)
        assert position.entry_confidence == pytest.approx(80.0)
        assert h.wallet.sol[WALLET] == pytest.approx(9.34)
        assert h.wallet.token_balance(WALLET, "TOKEN1") == pytest.approx(position.token_quantity)
        assert config.trades_today == 1
        assert h.audit.types() == ["BUY"]
        assert h.events.types() == ["position_opened"]

    async def test_dry_run_only_audits(self, tmp_path):
        h = Harness(tmp_path, mode="DRY_RUN")
        candidate = h.market.add(make_snapshot("TOKEN1", price=0.001))

        decisions = await h.manager.scan_wallet(BotConfig(wallet=WALLET), [candidate], make_strategy())

        assert isinstance(decisions[0], Buy)
        assert h.store.get_open_positions(WALLET) == []
        assert h.wallet.sol[WALLET] == 10.0
        assert h.audit.entries[0]["reason"] == "dry run, not executed"

    async def test_no_supermajority_is_audited_skip(self, tmp_path):
        h = Harness(tmp_path, votes=HOLD_VOTE)
        candidate = h.market.add(make_snapshot("TOKEN1"))

        decisions = await h.manager.scan_wallet(BotConfig(wallet=WALLET), [candidate], make_strategy())

        assert isinstance(decisions[0], Skip)
        assert h.audit.gates() == ["consensus"]
        assert h.store.get_open_positions(WALLET) == []

    async def test_drawdown_pause_blocks_scan(self, tmp_path):
        h = Harness(tmp_path, sol=7.0)
        candidate = h.market.add(make_snapshot("TOKEN1"))
        config = BotConfig(wallet=WALLET, portfolio_peak_value=10.0)

        decisions = await h.manager.scan_wallet(config, [candidate], make_strategy())

        assert decisions == []
        assert h.audit.gates() == ["drawdown"]
        assert h.events.types() == ["drawdown_paused"]
        assert h.store.get_bot_config(WALLET).drawdown_paused
        assert h.advisor_calls() == 0

    async def test_candidate_consensus_is_cached(self, tmp_path):
        h = Harness(tmp_path, mode="DRY_RUN")
        candidate = h.market.add(make_snapshot("TOKEN1"))
        config = BotConfig(wallet=WALLET)

        await h.manager.scan_wallet(config, [candidate], make_strategy())
        calls = h.advisor_calls()
        await h.manager.scan_wallet(config, [candidate], make_strategy())

        assert h.advisor_calls() == calls

    async def test_rotation_sells_weakest_then_resizes(self, tmp_path):
        h = Harness(tmp_path, sol=0.05)
        h.hold("OLD", quantity=1000.0, entry_confidence=60, opened_at=START - timedelta(hours=2))
        h.market.prices["OLD"] = 0.001
        candidate = h.market.add(make_snapshot("NEW", price=0.001))

        decisions = await h.manager.scan_wallet(BotConfig(wallet=WALLET), [candidate], make_strategy())

        assert isinstance(decisions[0], Buy)
        assert h.store.get_position(WALLET, "OLD") is None
        assert h.store.closed_positions(WALLET)[0].exit_reason == "rotation"
        bought = h.store.get_position(WALLET, "NEW")
        assert bought.sol_committed == pytest.approx(1.05 * 0.066)
        assert h.audit.types() == ["EXIT", "ROTATE", "BUY"]

    async def test_dry_run_rotation_only_audits(self, tmp_path):
        h = Harness(tmp_path, mode="DRY_RUN", sol=0.05)
        h.hold("OLD", quantity=1000.0, entry_confidence=60, opened_at=START - timedelta(hours=2))
        h.market.prices["OLD"] = 0.001
        candidate = h.market.add(make_snapshot("NEW", price=0.001))

        decisions = await h.manager.scan_wallet(BotConfig(wallet=WALLET), [candidate], make_strategy())

        assert isinstance(decisions[0], Rotate)
        assert h.store.get_position(WALLET, "OLD") is not None
        assert h.audit.types() == ["ROTATE"]

    async def test_rotation_releases_budget_of_sold_position(self, tmp_path):
        h = Harness(tmp_path, sol=0.05)
        h.store.save_bot_config(BotConfig(wallet=WALLET, total_budget=10.0, budget_used=1.0))
        h.hold("OLD", quantity=1000.0, entry_confidence=60, opened_at=START - timedelta(hours=2))
        h.market.prices["OLD"] = 0.001
        candidate = h.market.add(make_snapshot("NEW", price=0.001))
        stale = BotConfig(wallet=WALLET, total_budget=10.0, budget_used=1.0)

        await h.manager.scan_wallet(stale, [candidate], make_strategy())

        bought = h.store.get_position(WALLET, "NEW")
        assert h.store.get_bot_config(WALLET).budget_used == pytest.approx(bought.sol_committed)

    async def test_scan_uses_stored_config_not_caller_copy(self, tmp_path):
        h = Harness(tmp_path)
        h.store.save_bot_config(BotConfig(wallet=WALLET, total_budget=10.0, budget_used=0.2))
        candidate = h.market.add(make_snapshot("TOKEN1", price=0.001))
        stale = BotConfig(wallet=WALLET, total_budget=10.0, budget_used=1.0)

        await h.manager.scan_wallet(stale, [candidate], make_strategy())

        bought = h.store.get_position(WALLET, "TOKEN1")
        stored = h.store.get_bot_config(WALLET)
        assert stored.budget_used == pytest.approx(0.2 + bought.sol_committed)
        assert stored.trades_today == 1

    async def test_rebuy_respects_concentration_ceiling(self, tmp_path):
        h = Harness(tmp_path, votes={**BUY_VOTE, "confidence": 0.95}, sol=1.0)
        h.hold("TOKEN1", quantity=220.0, entry_confidence=70)
        candidate = h.market.add(make_snapshot("TOKEN1", price=0.00089))

        decisions = await h.manager.scan_wallet(BotConfig(wallet=WALLET), [candidate], make_strategy())

        assert isinstance(decisions[0], AddToPosition)
        assert decisions[0].kind == "rebuy"
        position = h.store.get_position(WALLET, "TOKEN1")
        value = position.value_at(0.00089)
        total = h.wallet.sol[WALLET] + value
        assert value / total <= 0.25 + 1e-9
        assert position.rebuy_count == 1


class TestMonitor:
    async def test_stop_loss_closes_without_asking_advisors(self, tmp_path):
        h = Harness(tmp_path)
        h.hold()
        h.market.prices["TOKEN1"] = 0.00095

        outcomes = await h.manager.monitor_wallet(WALLET)

        assert outcomes[0][1].reason == "stop_loss"
        assert h.store.get_open_positions(WALLET) == []
        entry = h.store.journal(wallet=WALLET)[0]
        assert entry.profit_pct == pytest.approx(-5.0)
        assert entry.outcome == TradeOutcome.LOSS
        assert h.wallet.sol[WALLET] == pytest.approx(10.475)
        assert h.advisor_calls() == 0
        assert h.events.types() == ["position_closed"]

    async def test_advisor_sell_in_profit(self, tmp_path):
        h = Harness(tmp_path, votes=SELL_VOTE)
        h.hold()
        h.market.prices["TOKEN1"] = 0.00102

        outcomes = await h.manager.monitor_wallet(WALLET)

        assert outcomes[0][1].reason == "advisor_sell"
        assert h.store.journal()[0].outcome == TradeOutcome.WIN

    async def test_hold_keeps_position_and_tracking(self, tmp_path):
        h = Harness(tmp_path, votes=HOLD_VOTE)
        h.hold()
        h.market.prices["TOKEN1"] = 0.00101

        outcomes = await h.manager.monitor_wallet(WALLET)

        assert not outcomes[0][1].should_exit
        position = h.store.get_position(WALLET, "TOKEN1")
        assert position.last_price == pytest.approx(0.00101)
        assert position.peak_price == pytest.approx(0.00101)

    async def test_one_failing_position_does_not_block_stop_loss_of_others(self, tmp_path):
        h = Harness(tmp_path, votes=HOLD_VOTE)
        h.hold("AAA")
        h.hold("BBB")
        h.market.prices.update(AAA=0.001, BBB=0.0009)

        async def unreachable(token_id):
            raise ConnectionError("dexscreener timeout")

        h.market.snapshot_of = unreachable

        outcomes = await h.manager.monitor_wallet(WALLET)

        assert [(token, d.reason) for token, d in outcomes] == [("BBB", "stop_loss")]
        assert h.store.get_position(WALLET, "BBB") is None
        assert h.store.get_position(WALLET, "AAA") is not None

    async def test_missing_snapshot_still_asks_advisors_on_price(self, tmp_path):
        h = Harness(tmp_path, votes=HOLD_VOTE)
        h.hold()
        h.market.prices["TOKEN1"] = 0.001

        async def unavailable(token_id):
            raise CriticalDataUnavailable("dexscreener_snapshot")

        h.market.snapshot_of = unavailable

        outcomes = await h.manager.monitor_wallet(WALLET)

        assert not outcomes[0][1].should_exit
        assert h.advisor_calls() == 3

    async def test_lost_track_after_consecutive_misses(self, tmp_path):
        h = Harness(tmp_path)
        h.hold()

        for _ in range(2):
            outcomes = await h.manager.monitor_wallet(WALLET)
            assert outcomes[0][1].reason == "price_unavailable"
        outcomes = await h.manager.monitor_wallet(WALLET)

        assert outcomes[0][1].reason == "lost_track"
        assert h.store.get_open_positions(WALLET) == []
        assert h.store.closed_positions()[0].status == PositionStatus.FAILED
        entry = h.store.journal()[0]
        assert entry.profit_pct == -100.0
        assert entry.outcome == TradeOutcome.LOST_TRACK
        assert h.events.types() == ["position_lost_track"]

    async def test_sell_failures_give_up_after_max(self, tmp_path):
        h = Harness(tmp_path, executor=ScriptedExecutor(errors=["timeout"] * 3))
        h.hold()
        h.market.prices["TOKEN1"] = 0.0009

        for expected_failures in (1, 2):
            await h.manager.monitor_wallet(WALLET)
            position = h.store.get_position(WALLET, "TOKEN1")
            assert position.sell_failures == expected_failures
            assert position.status == PositionStatus.OPEN
        await h.manager.monitor_wallet(WALLET)

        assert h.store.get_open_positions(WALLET) == []
        assert h.audit.types() == ["EXIT_FAILED", "EXIT_FAILED", "EXIT_FAILED", "LOST_TRACK"]

    async def test_unsellable_token_fails_immediately(self, tmp_path):
        h = Harness(tmp_path, executor=ScriptedExecutor(errors=["Could not find any route"]))
        h.hold()
        h.market.prices["TOKEN1"] = 0.0009

        await h.manager.monitor_wallet(WALLET)

        assert h.store.get_open_positions(WALLET) == []
        assert h.store.journal()[0].outcome == TradeOutcome.LOST_TRACK

    async def test_dry_run_exit_is_audit_only(self, tmp_path):
        h = Harness(tmp_path, mode="DRY_RUN")
        h.hold()
        h.market.prices["TOKEN1"] = 0.00095

        await h.manager.monitor_wallet(WALLET)

        assert h.store.get_position(WALLET, "TOKEN1") is not None
        assert h.audit.types() == ["EXIT"]


class TestRebalance:
    async def test_trims_over_concentrated_position(self, tmp_path):
        h = Harness(tmp_path, sol=1.0)
        h.hold(quantity=1000.0)
        h.market.prices["TOKEN1"] = 0.001

        trimmed = await h.manager.rebalance_wallet(WALLET)

        assert trimmed == {"TOKEN1": pytest.approx(0.5)}
        position = h.store.get_position(WALLET, "TOKEN1")
        assert position.token_quantity == pytest.approx(500.0)
        assert position.sol_committed == pytest.approx(0.5)
        assert h.audit.types() == ["TRIM"]

    async def test_balanced_wallet_untouched(self, tmp_path):
        h = Harness(tmp_path, sol=10.0)
        h.hold(quantity=1000.0)
        h.market.prices["TOKEN1"] = 0.001

        assert await h.manager.rebalance_wallet(WALLET) == {}
