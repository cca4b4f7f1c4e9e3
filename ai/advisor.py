"""
Advisor capability and registry.

An Advisor wraps one vendor model client and carries its own health score and
circuit-breaker state. The registry holds the roster keyed by name, decides
which advisors are eligible for a call and applies the health bookkeeping
after each call.
"""

import logging
import os
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from core.exceptions import AdvisorResponseError, ProviderExhausted

from .model_client import ModelClient, create_model_client
from .prompts import build_loss_prompt, build_opinion_prompt
from .schemas import AdvisorContext, AdvisorOpinion, LossEstimate

log = logging.getLogger(__name__)

ROLE_CONSENSUS = "consensus"
ROLE_LOSS_SCREEN = "loss_screen"

MAX_HEALTH = 100.0


def parse_opinion(provider: str, raw: Dict[str, Any]) -> AdvisorOpinion:
    """Normalize a raw model answer. Missing action/confidence is a malformed response."""
    if "action" not in raw or "confidence" not in raw:
        raise AdvisorResponseError(provider, f"missing action/confidence in {sorted(raw)}")
    try:
        return AdvisorOpinion(
            action=raw["action"],
            confidence=float(raw["confidence"]),
            reasoning=str(raw.get("reasoning", ""))[:500],
            potential_upside_pct=float(raw.get("potential_upside_pct", raw.get("potentialUpsidePercent", 0)) or 0),
            risk_level=raw.get("risk_level", raw.get("riskLevel", "medium")),
        )
    except (TypeError, ValueError) as exc:
        raise AdvisorResponseError(provider, f"bad field type: {exc}", exc)


def parse_loss_estimate(provider: str, raw: Dict[str, Any]) -> LossEstimate:
    value = raw.get("loss_probability", raw.get("lossProbability"))
    if value is None:
        raise AdvisorResponseError(provider, "missing loss_probability")
    try:
        return LossEstimate(provider=provider, probability=float(value), reasoning=str(raw.get("reasoning", ""))[:300])
    except (TypeError, ValueError) as exc:
        raise AdvisorResponseError(provider, f"bad loss_probability: {exc}", exc)


class Advisor:
    """One registered advisor with first-class health and disable state."""

    def __init__(
        self,
        name: str,
        client: ModelClient,
        weight: float = 1.0,
        roles: Sequence[str] = (ROLE_CONSENSUS,),
        timeout_s: float = 20.0,
    ):
        self.name = name
        self.client = client
        self.weight = float(weight)
        self.roles = tuple(roles)
        self.timeout_s = timeout_s

        self.health = MAX_HEALTH
        self.disabled_until: Optional[float] = None
        self.disable_reason: Optional[str] = None
        self.successes = 0
        self.failures = 0
        self.last_error: Optional[str] = None

    def __repr__(self) -> str:
        return f"Advisor({self.name!r}, health={self.health:.0f}, disabled={self.disabled_until is not None})"

    @property
    def disabled(self) -> bool:
        return self.disabled_until is not None

    def has_role(self, role: str) -> bool:
        return role in self.roles

    async def advise(self, ctx: AdvisorContext) -> AdvisorOpinion:
        system_prompt, user_prompt = build_opinion_prompt(ctx)
        raw = await self.client.complete(system_prompt, user_prompt, timeout=self.timeout_s)
        return parse_opinion(self.name, raw)

    async def estimate_loss_probability(self, ctx: AdvisorContext) -> LossEstimate:
        system_prompt, user_prompt = build_loss_prompt(ctx)
        raw = await self.client.complete(system_prompt, user_prompt, timeout=self.timeout_s)
        return parse_loss_estimate(self.name, raw)


class AdvisorRegistry:
    """
    Roster of advisors keyed by name.

    Health drops by ``failure_penalty`` on each failed call and recovers by
    ``success_recovery`` on each success. Advisors under ``min_health`` are
    skipped until the janitor heals them. A ProviderExhausted failure disables
    the advisor for ``cooldown_seconds``; it comes back at full health.
    """

    def __init__(
        self,
        advisors: Iterable[Advisor] = (),
        min_health: float = 30.0,
        failure_penalty: float = 15.0,
        success_recovery: float = 5.0,
        cooldown_seconds: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_health = min_health
        self.failure_penalty = failure_penalty
        self.success_recovery = success_recovery
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._advisors: Dict[str, Advisor] = {}
        for advisor in advisors:
            self.register(advisor)

    @classmethod
    def from_config(
        cls,
        advisors_cfg: Dict[str, Any],
        consensus_cfg: Optional[Dict[str, Any]] = None,
        env: Optional[Mapping[str, str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "AdvisorRegistry":
        """Build the roster from advisors.yaml; advisors without an API key are skipped."""
        env = os.environ if env is None else env
        consensus_cfg = consensus_cfg or {}
        registry = cls(
            min_health=consensus_cfg.get("min_health", 30.0),
            failure_penalty=consensus_cfg.get("failure_penalty", 15.0),
            success_recovery=consensus_cfg.get("success_recovery", 5.0),
            cooldown_seconds=consensus_cfg.get("disable_cooldown_minutes", 30) * 60.0,
            clock=clock,
        )
        defaults = advisors_cfg.get("defaults", {})
        for entry in advisors_cfg.get("advisors", []):
            if not entry.get("enabled", True):
                continue
            name = entry["name"]
            provider = entry.get("provider", "openai")
            api_key = None
            if provider != "mock":
                api_key = env.get(entry.get("api_key_env", ""))
                if not api_key:
                    log.info("Advisor %s skipped: %s not set", name, entry.get("api_key_env"))
                    continue
            client = create_model_client(
                provider,
                api_key=api_key,
                model=entry.get("model"),
                base_url=entry.get("base_url"),
                fixed_response=entry.get("fixed_response"),
                name=name,
            )
            registry.register(Advisor(
                name=name,
                client=client,
                weight=entry.get("weight", 1.0),
                roles=entry.get("roles", [ROLE_CONSENSUS]),
                timeout_s=entry.get("timeout_s", defaults.get("timeout_s", 20.0)),
            ))
        log.info("Advisor roster: %s", ", ".join(registry.names()) or "(empty)")
        return registry

    def register(self, advisor: Advisor) -> None:
        if advisor.name in self._advisors:
            raise ValueError(f"advisor {advisor.name!r} already registered")
        self._advisors[advisor.name] = advisor

    def get(self, name: str) -> Advisor:
        return self._advisors[name]

    def names(self) -> List[str]:
        return list(self._advisors)

    def __len__(self) -> int:
        return len(self._advisors)

    def __iter__(self):
        return iter(self._advisors.values())

    def _maybe_reenable(self, advisor: Advisor, now: float) -> None:
        if advisor.disabled_until is not None and now >= advisor.disabled_until:
            log.info("Advisor %s re-enabled after cool-down (%s)", advisor.name, advisor.disable_reason)
            advisor.disabled_until = None
            advisor.disable_reason = None
            advisor.health = MAX_HEALTH

    def eligible(self, role: str = ROLE_CONSENSUS) -> List[Advisor]:
        """Advisors with the role that are neither disabled nor below the health floor."""
        now = self._clock()
        result = []
        for advisor in self._advisors.values():
            if not advisor.has_role(role):
                continue
            self._maybe_reenable(advisor, now)
            if advisor.disabled:
                continue
            if advisor.health < self.min_health:
                log.debug("Advisor %s excluded: health %.0f < %.0f", advisor.name, advisor.health, self.min_health)
                continue
            result.append(advisor)
        return result

    def record_success(self, advisor: Advisor) -> None:
        advisor.successes += 1
        advisor.health = min(MAX_HEALTH, advisor.health + self.success_recovery)

    def record_failure(self, advisor: Advisor, error: Exception) -> None:
        advisor.failures += 1
        advisor.last_error = str(error)
        if isinstance(error, ProviderExhausted):
            self.disable(advisor, reason=f"exhausted: {error}")
            return
        advisor.health = max(0.0, advisor.health - self.failure_penalty)
        log.warning("Advisor %s failed (health now %.0f): %s", advisor.name, advisor.health, error)

    def disable(self, advisor: Advisor, reason: str, seconds: Optional[float] = None) -> None:
        seconds = self.cooldown_seconds if seconds is None else seconds
        advisor.disabled_until = self._clock() + seconds
        advisor.disable_reason = reason
        log.warning("Advisor %s disabled for %.0fs: %s", advisor.name, seconds, reason)

    def heal(self, amount: float) -> int:
        """Raise health of enabled advisors stuck below the floor. Returns how many were healed."""
        healed = 0
        now = self._clock()
        for advisor in self._advisors.values():
            self._maybe_reenable(advisor, now)
            if not advisor.disabled and advisor.health < self.min_health:
                advisor.health = min(MAX_HEALTH, advisor.health + amount)
                healed += 1
        return healed

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {
            a.name: {
                "health": round(a.health, 1),
                "disabled": a.disabled,
                "disable_reason": a.disable_reason,
                "weight": a.weight,
                "successes": a.successes,
                "failures": a.failures,
            }
            for a in self._advisors.values()
        }
