"""
Position lifecycle: the I/O edge around the pure planners.

LifecycleManager gathers balances, prices and advisor opinions, asks
``plan_entry`` / ``PositionManager`` what to do, executes swaps and persists
the result. All work that touches one wallet's positions runs under that
wallet's lock, so scan, monitor and rebalance never interleave per wallet.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ai.schemas import AdvisorContext, ConsensusResult
from analytics.trade_journal import build_journal_entry
from infra.alerting import EventSeverity

from .decisions import AddToPosition, Buy, EntryDecision, ExitDecision, Rotate, Skip
from .entry_planner import EntryInputs, consensus_gate, plan_entry
from .exceptions import CriticalDataUnavailable
from .models import BotConfig, Position, PositionStatus, Strategy, TokenMarketSnapshot, utc_now
from .portfolio import PortfolioSnapshot

logger = logging.getLogger(__name__)

# Exits that never wait for the advisor panel
UNCONDITIONAL_EXITS = ("stop_loss", "trailing_stop", "max_hold")


def market_context(snapshot: TokenMarketSnapshot, now: datetime) -> Dict[str, Any]:
    data = asdict(snapshot)
    data["pair_created_at"] = snapshot.pair_created_at.isoformat() if snapshot.pair_created_at else None
    data["age_hours"] = snapshot.age_hours(now)
    return data


def position_context(position: Position, price: float, now: datetime) -> Dict[str, Any]:
    data = position.to_dict()
    data["profit_pct"] = position.profit_pct(price)
    data["hold_minutes"] = position.hold_minutes(now)
    data["current_price"] = price
    return data


class LifecycleManager:
    def __init__(
        self,
        store,
        market_data,
        wallet_access,
        router,
        consensus,
        loss_screen,
        risk_gate,
        portfolio,
        mode_selector,
        position_manager,
        rotation_planner,
        analysis_cache,
        fingerprints,
        audit,
        events=None,
        metrics=None,
        config: Optional[Dict[str, Any]] = None,
        mode: str = "DRY_RUN",
        clock: Callable[[], datetime] = utc_now,
    ):
        config = config or {}
        self.store = store
        self.market_data = market_data
        self.wallet_access = wallet_access
        self.router = router
        self.consensus = consensus
        self.loss_screen = loss_screen
        self.risk_gate = risk_gate
        self.portfolio = portfolio
        self.mode_selector = mode_selector
        self.position_manager = position_manager
        self.rotation_planner = rotation_planner
        self.analysis_cache = analysis_cache
        self.fingerprints = fingerprints
        self.audit = audit
        self.events = events
        self.metrics = metrics
        self.mode = mode.upper()
        self.clock = clock

        self.min_trade = float(config.get("min_trade_sol", 0.01))
        self.buy_slippage_bps = int(config.get("buy_slippage_bps", 300))
        self.sell_slippage_bps = int(config.get("sell_slippage_bps", 1000))
        self.lost_track_misses = int(config.get("lost_track_misses", 3))
        self.max_sell_failures = int(config.get("max_sell_failures", 3))

        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._live_configs: Dict[str, BotConfig] = {}

    @property
    def dry_run(self) -> bool:
        return self.mode == "DRY_RUN"

    def lock_for(self, wallet: str) -> asyncio.Lock:
        return self._locks[wallet]

    # Audit / events

    def _audit(self, wallet: str, token: Optional[str], decision_type: str, reason: str, **kwargs) -> None:
        self.audit.log_decision(wallet, token, decision_type, reason, **kwargs)

    def _audit_skip(self, wallet: str, token: Optional[str], skip: Skip) -> None:
        logger.info("%s %s: skip %s", wallet, token or "-", skip.describe())
        self._audit(
            wallet, token, "SKIP", skip.reason,
            gate=skip.gate, measured=skip.measured, threshold=skip.threshold,
        )
        if self.metrics is not None and skip.gate:
            self.metrics.record_blocked(skip.gate)

    def _publish(self, event_type: str, message: str, severity: EventSeverity = EventSeverity.INFO, **context) -> None:
        if self.events is not None:
            self.events.publish(event_type, message, severity, context)

    # Portfolio

    async def _portfolio_snapshot(self, wallet: str) -> Tuple[float, List[Position], PortfolioSnapshot]:
        balance = await self.wallet_access.balance_of(wallet)
        positions = self.store.get_open_positions(wallet)
        snapshot = await self.portfolio.analyze(wallet, positions, balance)
        if self.metrics is not None:
            self.metrics.set_open_positions(wallet, len(positions))
            self.metrics.set_portfolio_value(wallet, snapshot.total_value)
        return balance, positions, snapshot

    # Entry path

    async def scan_wallet(
        self,
        bot_config: BotConfig,
        candidates: List[TokenMarketSnapshot],
        strategy: Strategy,
    ) -> List[EntryDecision]:
        """Evaluate candidates for one wallet and execute whatever the planner decides."""
        wallet = bot_config.wallet
        async with self.lock_for(wallet):
            bot_config = self.store.get_bot_config(wallet) or bot_config
            self._live_configs[wallet] = bot_config
            try:
                return await self._scan_locked(bot_config, candidates, strategy)
            finally:
                self._live_configs.pop(wallet, None)

    async def _scan_locked(
        self,
        bot_config: BotConfig,
        candidates: List[TokenMarketSnapshot],
        strategy: Strategy,
    ) -> List[EntryDecision]:
        wallet = bot_config.wallet
        now = self.clock()
        bot_config.roll_trade_day(now.date().isoformat())
        _, positions, snapshot = await self._portfolio_snapshot(wallet)

        drawdown = self.risk_gate.drawdown_guard.evaluate(bot_config, snapshot.total_value)
        self.store.save_bot_config(bot_config)
        if drawdown.changed:
            state = "paused" if drawdown.paused else "resumed"
            self._publish(
                f"drawdown_{state}", f"{wallet}: trading {state}, {drawdown.reason}",
                EventSeverity.WARNING, wallet=wallet, drawdown_pct=round(drawdown.drawdown_pct, 2),
            )
        if drawdown.blocked:
            self._audit_skip(wallet, None, Skip(
                reason=drawdown.reason,
                gate="drawdown",
                measured=drawdown.drawdown_pct,
                threshold=-self.risk_gate.drawdown_guard.pause_pct,
            ))
            return []

        decisions: List[EntryDecision] = []
        for candidate in candidates:
            decision = await self._evaluate_candidate(bot_config, strategy, candidate, positions, snapshot, drawdown, now)
            decisions.append(decision)
            if not isinstance(decision, Skip) and not self.dry_run:
                _, positions, snapshot = await self._portfolio_snapshot(wallet)
        return decisions

    async def _candidate_consensus(self, ctx: AdvisorContext, price: float) -> ConsensusResult:
        key = f"candidate:{ctx.token_id}"
        cached = self.analysis_cache.get(key, price)
        if cached is not None:
            logger.debug("Analysis cache hit for %s", ctx.symbol)
            return cached
        result = await self.consensus.evaluate(ctx)
        if result.quorum_met:
            self.analysis_cache.put(key, result, price)
        return result

    def _entry_inputs(
        self,
        bot_config: BotConfig,
        strategy: Strategy,
        candidate: TokenMarketSnapshot,
        consensus: ConsensusResult,
        risk,
        positions: List[Position],
        snapshot: PortfolioSnapshot,
        now: datetime,
    ) -> EntryInputs:
        token = candidate.token_id
        prices = {
            token_id: holding.price
            for token_id, holding in snapshot.holdings.items()
            if holding.price is not None
        }
        return EntryInputs(
            token_id=token,
            symbol=candidate.symbol,
            consensus=consensus,
            strategy=strategy,
            bot_config=bot_config,
            portfolio_value=snapshot.total_value,
            available=self.portfolio.available_for_trade(snapshot),
            concentration_headroom=self.portfolio.concentration_headroom(snapshot, token),
            price=candidate.price_native,
            risk=risk,
            now=now,
            min_trade=self.min_trade,
            existing=next((p for p in positions if p.token_id == token), None),
            positions=positions,
            prices=prices,
        )

    async def _evaluate_candidate(
        self,
        bot_config: BotConfig,
        strategy: Strategy,
        candidate: TokenMarketSnapshot,
        positions: List[Position],
        snapshot: PortfolioSnapshot,
        drawdown,
        now: datetime,
    ) -> EntryDecision:
        wallet, token = bot_config.wallet, candidate.token_id
        if candidate.price_native <= 0:
            skip = Skip(reason="no SOL price for candidate", gate="market_data")
            self._audit_skip(wallet, token, skip)
            return skip

        ctx = AdvisorContext(
            kind="candidate",
            token_id=token,
            symbol=candidate.symbol,
            market=market_context(candidate, now),
            strategy=strategy.to_dict(),
        )
        consensus = await self._candidate_consensus(ctx, candidate.price_native)

        gate = consensus_gate(consensus, strategy)
        if gate is not None:
            self._audit_skip(wallet, token, gate)
            return gate

        loss = await self.loss_screen.screen(ctx, candidate, now)
        risk = self.risk_gate.check(drawdown, loss)
        inputs = self._entry_inputs(bot_config, strategy, candidate, consensus, risk, positions, snapshot, now)
        decision = plan_entry(inputs, self.mode_selector, self.position_manager, self.rotation_planner)

        if isinstance(decision, Skip):
            self._audit_skip(wallet, token, decision)
            return decision
        if isinstance(decision, Buy):
            await self._open_position(bot_config, candidate, decision, now)
        elif isinstance(decision, AddToPosition):
            await self._add_to_position(bot_config, inputs.existing, candidate, decision)
        elif isinstance(decision, Rotate):
            return await self._rotate(bot_config, strategy, candidate, consensus, risk, decision)
        return decision

    async def _buy(self, wallet: str, token: str, size: float):
        signing_key = await self.wallet_access.decrypted_key_for(wallet)
        result = await self.router.swap("BUY", token, size, self.buy_slippage_bps, wallet, signing_key)
        if result.success and self.metrics is not None:
            self.metrics.record_trade("BUY")
        return result

    def _record_spend(self, bot_config: BotConfig, size: float) -> None:
        bot_config.trades_today += 1
        bot_config.budget_used += size
        self.store.save_bot_config(bot_config)

    async def _open_position(
        self,
        bot_config: BotConfig,
        candidate: TokenMarketSnapshot,
        decision: Buy,
        now: datetime,
    ) -> Optional[Position]:
        wallet, token = bot_config.wallet, candidate.token_id
        extra = {
            "size_sol": decision.size,
            "mode": decision.profile.mode.value,
            "stop_loss_pct": decision.stop_loss_pct,
            "profit_target_pct": decision.profit_target_pct,
            "note": decision.size_note,
        }
        if self.dry_run:
            self._audit(wallet, token, "BUY", "dry run, not executed", measured=decision.confidence, extra=extra)
            logger.info("DRY_RUN: would buy %.4f SOL of %s (%s)", decision.size, candidate.symbol, decision.size_note)
            return None

        result = await self._buy(wallet, token, decision.size)
        if not result.success:
            self._audit(wallet, token, "BUY_FAILED", result.error or "swap failed", extra=extra)
            logger.error("Buy of %s for %s failed: %s", candidate.symbol, wallet, result.error)
            return None

        quantity = result.output_amount
        position = Position(
            wallet=wallet,
            token_id=token,
            symbol=candidate.symbol,
            entry_price=decision.size / quantity,
            sol_committed=decision.size,
            token_quantity=quantity,
            entry_confidence=decision.confidence * 100.0,
            mode=decision.profile.mode,
            stop_loss_pct=decision.stop_loss_pct,
            profit_target_pct=decision.profit_target_pct,
            max_hold_minutes=decision.profile.max_hold_minutes,
            status=PositionStatus.OPEN,
            opened_at=now,
        )
        self.store.create_position(position)
        self._record_spend(bot_config, decision.size)

        self._audit(wallet, token, "BUY", decision.size_note, measured=decision.confidence, extra={
            **extra, "signature": result.signature, "entry_price": position.entry_price,
        })
        self._publish(
            "position_opened",
            f"{candidate.symbol}: bought {decision.size:.4f} SOL ({decision.profile.mode.value})",
            wallet=wallet, token=token, signature=result.signature,
        )
        logger.info(
            "Opened %s %s: %.4f SOL -> %.2f tokens @ %.10g (stop -%.2f%%, target +%.2f%%)",
            decision.profile.mode.value, candidate.symbol, decision.size, quantity,
            position.entry_price, position.stop_loss_pct, position.profit_target_pct,
        )
        return position

    async def _add_to_position(
        self,
        bot_config: BotConfig,
        position: Position,
        candidate: TokenMarketSnapshot,
        decision: AddToPosition,
    ) -> Optional[Position]:
        wallet, token = bot_config.wallet, position.token_id
        decision_type = decision.kind.upper()
        if self.dry_run:
            self._audit(
                wallet, token, decision_type, "dry run, not executed",
                measured=decision.profit_pct, extra={"size_sol": decision.size},
            )
            return None

        result = await self._buy(wallet, token, decision.size)
        if not result.success:
            self._audit(wallet, token, f"{decision_type}_FAILED", result.error or "swap failed")
            return None

        quantity = result.output_amount
        position.merge_buy(
            price=decision.size / quantity,
            sol_amount=decision.size,
            quantity=quantity,
            confidence=decision.confidence * 100.0,
        )
        self.store.save_position(position)
        self._record_spend(bot_config, decision.size)
        self.fingerprints.forget(f"position:{wallet}:{token}")

        self._audit(
            wallet, token, decision_type,
            f"{decision.kind} at {decision.profit_pct:.2f}%, new entry {position.entry_price:.10g}",
            measured=decision.confidence, extra={"size_sol": decision.size, "rebuy_count": position.rebuy_count},
        )
        self._publish(
            f"position_{decision.kind}",
            f"{position.symbol}: {decision.kind} {decision.size:.4f} SOL ({position.rebuy_count}/{self.position_manager.max_rebuys})",
            wallet=wallet, token=token,
        )
        return position

    async def _rotate(
        self,
        bot_config: BotConfig,
        strategy: Strategy,
        candidate: TokenMarketSnapshot,
        consensus: ConsensusResult,
        risk,
        decision: Rotate,
    ) -> EntryDecision:
        wallet, token = bot_config.wallet, candidate.token_id
        plan = decision.plan
        if self.dry_run:
            self._audit(
                wallet, token, "ROTATE", f"dry run: would sell {plan.sell.symbol}; {plan.reason}",
                measured=plan.expected_proceeds, threshold=decision.required,
            )
            return decision

        sell_price = plan.expected_proceeds / plan.sell.token_quantity if plan.sell.token_quantity else None
        sold = await self._close_position(plan.sell, sell_price, "rotation", plan.reason)
        if not sold:
            skip = Skip(reason=f"rotation sell of {plan.sell.symbol} failed", gate="rotation_sell")
            self._audit_skip(wallet, token, skip)
            return skip

        # Proceeds were an estimate; size the buy from the balance actually there now
        now = self.clock()
        _, positions, snapshot = await self._portfolio_snapshot(wallet)
        inputs = self._entry_inputs(bot_config, strategy, candidate, consensus, risk, positions, snapshot, now)
        follow_up = plan_entry(inputs, self.mode_selector, self.position_manager, rotation_planner=None)
        self._audit(
            wallet, token, "ROTATE", f"sold {plan.sell.symbol}: {plan.reason}",
            measured=plan.expected_proceeds, threshold=decision.required,
        )
        if isinstance(follow_up, Buy):
            await self._open_position(bot_config, candidate, follow_up, now)
            return follow_up
        if isinstance(follow_up, Skip):
            self._audit_skip(wallet, token, follow_up)
        return follow_up

    # Exit path

    async def monitor_wallet(self, wallet: str) -> List[Tuple[str, ExitDecision]]:
        """One monitor pass over every open position of ``wallet``."""
        async with self.lock_for(wallet):
            positions = self.store.get_open_positions(wallet)
            if not positions:
                return []
            prices = await self.market_data.batch_price_of([p.token_id for p in positions])
            outcomes: List[Tuple[str, ExitDecision]] = []
            for position in positions:
                try:
                    decision = await self._monitor_position(position, prices.get(position.token_id))
                except Exception:
                    logger.exception("Monitor of %s for %s failed", position.symbol, wallet)
                    continue
                outcomes.append((position.token_id, decision))
            if self.metrics is not None:
                self.metrics.set_open_positions(wallet, len(self.store.get_open_positions(wallet)))
            return outcomes

    async def _monitor_position(self, position: Position, price: Optional[float]) -> ExitDecision:
        now = self.clock()
        if price is None or price <= 0:
            position.price_miss_count += 1
            if position.price_miss_count >= self.lost_track_misses:
                await self._fail_position(position, f"no price for {position.price_miss_count} consecutive passes")
                return ExitDecision(should_exit=True, reason="lost_track")
            logger.warning(
                "%s: no price (%d/%d misses)", position.symbol, position.price_miss_count, self.lost_track_misses,
            )
            self.store.save_position(position)
            return ExitDecision(should_exit=False, reason="price_unavailable")

        self.position_manager.update_tracking(position, price)

        forced = self.position_manager.evaluate_exit(position, price, now)
        if forced.should_exit and forced.reason in UNCONDITIONAL_EXITS:
            await self._close_position(position, price, forced.reason, forced.detail)
            return forced

        opinion, fresh = await self._position_opinion(position, price, now)
        if fresh:
            self.position_manager.record_advisor_reading(position, opinion)

        decision = self.position_manager.evaluate_exit(position, price, now, opinion)
        if decision.should_exit:
            await self._close_position(position, price, decision.reason, decision.detail)
            return decision

        if decision.held_back:
            self._audit(position.wallet, position.token_id, "HOLD", decision.detail, gate=decision.reason)
        self.store.save_position(position)
        return decision

    async def _position_opinion(
        self, position: Position, price: float, now: datetime,
    ) -> Tuple[Optional[ConsensusResult], bool]:
        """(opinion, is_new_reading). Fingerprint suppression and cache hits are not new readings."""
        key = f"position:{position.wallet}:{position.token_id}"
        profit = position.profit_pct(price)

        if not self.fingerprints.should_reanalyze(key, price, profit):
            return self.analysis_cache.peek(key), False

        cached = self.analysis_cache.get(key, price, profit)
        if cached is not None:
            return cached, False

        try:
            snapshot = await self.market_data.snapshot_of(position.token_id)
        except CriticalDataUnavailable as exc:
            logger.warning("%s: market snapshot unavailable, asking on price only: %s", position.symbol, exc)
            snapshot = None
        market = market_context(snapshot, now) if snapshot else {"price_native": price}
        ctx = AdvisorContext(
            kind="position",
            token_id=position.token_id,
            symbol=position.symbol,
            market=market,
            position=position_context(position, price, now),
        )
        result = await self.consensus.evaluate(ctx)
        self.fingerprints.record(key, price, profit)
        if result.quorum_met:
            self.analysis_cache.put(key, result, price, profit)
        return result, True

    def _release_budget(self, position: Position) -> None:
        bot_config = self._live_configs.get(position.wallet) or self.store.get_bot_config(position.wallet)
        if bot_config is None:
            return
        bot_config.budget_used = max(0.0, bot_config.budget_used - position.sol_committed)
        self.store.save_bot_config(bot_config)

    def _forget(self, position: Position) -> None:
        key = f"position:{position.wallet}:{position.token_id}"
        self.fingerprints.forget(key)
        self.analysis_cache.drop(key)

    async def _close_position(self, position: Position, price: Optional[float], reason: str, detail: str = "") -> bool:
        wallet, token = position.wallet, position.token_id
        if self.dry_run:
            self._audit(wallet, token, "EXIT", f"dry run: {reason}", gate=reason, extra={"detail": detail})
            return False

        position.status = PositionStatus.EXITING
        self.store.save_position(position)

        signing_key = await self.wallet_access.decrypted_key_for(wallet)
        result = await self.router.swap("SELL", token, position.token_quantity, self.sell_slippage_bps, wallet, signing_key)

        if not result.success:
            position.sell_failures += 1
            position.status = PositionStatus.OPEN
            self._audit(
                wallet, token, "EXIT_FAILED", result.error or "swap failed", gate=reason,
                measured=position.sell_failures, threshold=self.max_sell_failures,
            )
            if result.unsellable or position.sell_failures >= self.max_sell_failures:
                await self._fail_position(position, f"sell failed ({position.sell_failures}x): {result.error}")
            else:
                logger.error(
                    "Sell of %s failed (%d/%d): %s", position.symbol, position.sell_failures,
                    self.max_sell_failures, result.error,
                )
                self.store.save_position(position)
            return False

        now = self.clock()
        sol_out = result.output_amount
        position.status = PositionStatus.CLOSED
        position.closed_at = now
        position.exit_reason = reason
        entry = build_journal_entry(position, price, sol_out, reason, now, exit_snapshot={"detail": detail})
        self.store.append_journal(entry)
        self.store.close_position(position)
        self._release_budget(position)
        self._forget(position)

        if self.metrics is not None:
            self.metrics.record_trade("SELL")
        self._audit(wallet, token, "EXIT", detail or reason, gate=reason, measured=entry.profit_pct, extra={
            "sol_out": sol_out, "outcome": entry.outcome.value, "signature": result.signature,
        })
        self._publish(
            "position_closed",
            f"{position.symbol}: {reason} at {entry.profit_pct:+.2f}% ({sol_out:.4f} SOL)",
            wallet=wallet, token=token, outcome=entry.outcome.value,
        )
        logger.info("Closed %s (%s): %+.2f%%, %.4f SOL back", position.symbol, reason, entry.profit_pct, sol_out)
        return True

    async def _fail_position(self, position: Position, reason: str) -> None:
        """Drop a position from tracking as a loss-of-tracking event."""
        now = self.clock()
        position.status = PositionStatus.FAILED
        position.closed_at = now
        position.exit_reason = reason
        entry = build_journal_entry(position, None, 0.0, reason, now, lost_track=True)
        self.store.append_journal(entry)
        self.store.close_position(position)
        self._release_budget(position)
        self._forget(position)

        logger.warning("LOST TRACK of %s for %s: %s", position.symbol, position.wallet, reason)
        self._audit(position.wallet, position.token_id, "LOST_TRACK", reason, gate="lost_track")
        self._publish(
            "position_lost_track", f"{position.symbol}: {reason}", EventSeverity.WARNING,
            wallet=position.wallet, token=position.token_id,
        )

    # Rebalance

    async def rebalance_wallet(self, wallet: str) -> Dict[str, float]:
        """Trim positions above the concentration ceiling. Returns token -> SOL trimmed."""
        async with self.lock_for(wallet):
            _, positions, snapshot = await self._portfolio_snapshot(wallet)
            trimmed: Dict[str, float] = {}
            for token, excess in self.portfolio.over_concentrated(snapshot).items():
                position = next((p for p in positions if p.token_id == token), None)
                price = snapshot.price_of(token)
                if position is None or price is None:
                    continue
                sold = await self.trim_position(position, price, excess)
                if sold:
                    trimmed[token] = sold
            return trimmed

    async def trim_position(self, position: Position, price: float, excess_sol: float) -> float:
        """Partial sell of ``excess_sol`` worth of tokens. Caller holds the wallet lock."""
        value = position.value_at(price)
        if value <= 0 or excess_sol < self.min_trade:
            return 0.0
        fraction = min(1.0, excess_sol / value)
        quantity = position.token_quantity * fraction
        wallet, token = position.wallet, position.token_id

        if self.dry_run:
            self._audit(wallet, token, "TRIM", f"dry run: would sell {fraction:.1%}", measured=excess_sol)
            return 0.0

        signing_key = await self.wallet_access.decrypted_key_for(wallet)
        result = await self.router.swap("SELL", token, quantity, self.sell_slippage_bps, wallet, signing_key)
        if not result.success:
            self._audit(wallet, token, "TRIM_FAILED", result.error or "swap failed", measured=excess_sol)
            logger.error("Trim of %s failed: %s", position.symbol, result.error)
            return 0.0

        sold_fraction = min(1.0, result.amount_in / position.token_quantity)
        position.token_quantity -= result.amount_in
        position.sol_committed *= 1.0 - sold_fraction
        self.store.save_position(position)
        self._forget(position)
        if self.metrics is not None:
            self.metrics.record_trade("SELL")
        self._audit(
            wallet, token, "TRIM", f"sold {sold_fraction:.1%} above concentration ceiling",
            measured=excess_sol, extra={"sol_out": result.output_amount},
        )
        logger.info("Trimmed %s by %.1f%% (%.4f SOL)", position.symbol, sold_fraction * 100, result.output_amount)
        return result.output_amount
