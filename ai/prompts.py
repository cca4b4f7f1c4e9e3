"""
Prompt builders for the two consensus call sites and the loss screen.

The candidate and position prompts share one system prompt and JSON answer
format so the voting machinery can treat every answer identically.
"""

from typing import Any, Dict, Tuple

from .schemas import AdvisorContext

OPINION_SYSTEM_PROMPT = """You are one member of an independent panel reviewing Solana token trades.

Your role:
- Judge the token on the data given, not on hype
- Favor capital preservation; HOLD when evidence is thin
- Be explicit about risk

Response format (valid JSON only):
{
  "action": "BUY|SELL|HOLD",
  "confidence": 0.0-1.0,
  "reasoning": "one or two sentences",
  "potential_upside_pct": number,
  "risk_level": "low|medium|high|extreme"
}
"""

LOSS_SYSTEM_PROMPT = """You screen Solana tokens for rug pulls, scams and likely losses.

Estimate the probability (0-100) that buying this token now loses most of the stake.
Weigh liquidity depth, liquidity lock, token age, volume manipulation and price spikes.

Response format (valid JSON only):
{
  "loss_probability": 0-100,
  "reasoning": "one sentence naming the main red flag"
}
"""


def _market_lines(market: Dict[str, Any]) -> list:
    return [
        "=== Market ===",
        f"Price: {market.get('price_native', 0):.10f} SOL (${market.get('price_usd', 0):.8f})",
        (
            f"Change: 5m {market.get('price_change_5m', 0):+.1f}% | 1h {market.get('price_change_1h', 0):+.1f}% | "
            f"6h {market.get('price_change_6h', 0):+.1f}% | 24h {market.get('price_change_24h', 0):+.1f}%"
        ),
        f"Volume 24h: ${market.get('volume_24h_usd', 0):,.0f}",
        f"Liquidity: ${market.get('liquidity_usd', 0):,.0f}",
        f"Market cap: ${market.get('market_cap_usd', 0):,.0f}",
        f"Transactions 24h: {market.get('buys_24h', 0)} buys / {market.get('sells_24h', 0)} sells",
        f"Organic score: {market.get('organic_score', 0):.0f}/100 | Quality score: {market.get('quality_score', 0):.0f}/100",
    ]


def build_candidate_prompt(ctx: AdvisorContext) -> Tuple[str, str]:
    parts = [f"Token: {ctx.symbol} ({ctx.token_id})", ""]
    parts.extend(_market_lines(ctx.market))
    if ctx.strategy:
        parts.extend([
            "",
            "=== Strategy ===",
            f"Market sentiment: {ctx.strategy.get('sentiment', 'neutral')}",
            f"Risk level: {ctx.strategy.get('risk_level', 'conservative')}",
        ])
    parts.extend(["", "Should we open a position? Answer in JSON."])
    return OPINION_SYSTEM_PROMPT, "\n".join(parts)


def build_position_prompt(ctx: AdvisorContext) -> Tuple[str, str]:
    position = ctx.position or {}
    parts = [f"Token: {ctx.symbol} ({ctx.token_id})", ""]
    parts.extend(_market_lines(ctx.market))
    parts.extend([
        "",
        "=== Open position ===",
        f"Mode: {position.get('mode', 'SCALP')}",
        f"Entry price: {position.get('entry_price', 0):.10f} SOL",
        f"Current profit: {position.get('profit_pct', 0):+.2f}% (peak {position.get('peak_profit_pct', 0):+.2f}%)",
        f"Held: {position.get('hold_minutes', 0):.0f} minutes",
        f"Entry confidence: {position.get('entry_confidence', 0):.0f}%",
        "",
        "BUY means add or keep with conviction, HOLD means keep, SELL means exit now. Answer in JSON.",
    ])
    return OPINION_SYSTEM_PROMPT, "\n".join(parts)


def build_loss_prompt(ctx: AdvisorContext) -> Tuple[str, str]:
    market = ctx.market
    parts = [f"Token: {ctx.symbol} ({ctx.token_id})", ""]
    parts.extend(_market_lines(market))
    age = market.get("age_hours")
    parts.append(f"Pair age: {age:.1f} hours" if age is not None else "Pair age: unknown")
    locked = market.get("liquidity_locked")
    parts.append(f"Liquidity locked: {'unknown' if locked is None else locked}")
    parts.extend(["", "Estimate the loss probability. Answer in JSON."])
    return LOSS_SYSTEM_PROMPT, "\n".join(parts)


def build_opinion_prompt(ctx: AdvisorContext) -> Tuple[str, str]:
    if ctx.kind == "position":
        return build_position_prompt(ctx)
    return build_candidate_prompt(ctx)
