"""
Configuration Validation Module

Validates app.yaml, policy.yaml, and advisors.yaml against Pydantic schemas.
Ensures config files are correct before the engine starts.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from ai.model_client import VENDOR_BASE_URLS

logger = logging.getLogger(__name__)

KNOWN_PROVIDERS = set(VENDOR_BASE_URLS) | {"anthropic", "mock"}
KNOWN_ROLES = {"consensus", "loss_screen"}
KNOWN_JOBS = {"quick_scan", "deep_scan", "position_monitor", "rebalance", "cache_janitor", "stale_janitor"}

Band = Union[float, List[float]]


# ===== App Schema =====
class AppSection(BaseModel):
    mode: Literal["DRY_RUN", "PAPER", "LIVE"] = "DRY_RUN"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = "logs/hivemind.log"
    audit_file: str = "logs/audit.jsonl"

    @field_validator("level")
    @classmethod
    def known_level(cls, v: str) -> str:
        if v.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {v}")
        return v


class StateConfig(BaseModel):
    file: Optional[str] = None
    retention_days: float = Field(default=30, gt=0, description="Days closed records are kept")


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, gt=0, lt=65536)
    health_enabled: bool = False
    health_port: int = Field(default=8080, gt=0, lt=65536)


class EventsConfig(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: str = "EVENT_WEBHOOK_URL"
    min_severity: Literal["info", "warning", "critical"] = "info"
    dry_run: bool = False
    timeout_seconds: float = Field(default=5, gt=0)
    dedupe_seconds: float = Field(default=60, ge=0)


class MarketDataConfig(BaseModel):
    base_url: str = "https://api.dexscreener.com"
    timeout_seconds: float = Field(default=10, gt=0)
    chain_id: str = "solana"
    search_queries: List[str] = Field(default_factory=lambda: ["pump", "raydium", "jupiter"], min_length=1)
    quote_symbols: List[str] = Field(default_factory=lambda: ["SOL", "WSOL"], min_length=1)
    max_concurrency: int = Field(default=4, gt=0)


class ExecutionEnvConfig(BaseModel):
    rpc_url_env: str = "SOLANA_RPC_URL"
    primary_url_env: str = "SWAP_SERVICE_URL"
    secondary_url_env: str = "SWAP_FALLBACK_URL"


class PaperConfig(BaseModel):
    simulated_slippage_bps: float = Field(default=50, ge=0, le=10000)
    balances: Dict[str, float] = Field(default_factory=dict)


class JobConfig(BaseModel):
    interval_seconds: Optional[float] = Field(default=None, gt=0)
    run_on_start: bool = False
    enabled: bool = True


class SchedulerConfig(BaseModel):
    jitter_pct: float = Field(default=0, ge=0, le=20, description="Interval jitter, clamped to 20%")
    max_concurrent_wallets: int = Field(default=4, gt=0)
    drain_timeout_seconds: float = Field(default=30, ge=0)
    jobs: Dict[str, JobConfig] = Field(default_factory=dict)

    @field_validator("jobs")
    @classmethod
    def known_jobs(cls, v: Dict[str, JobConfig]) -> Dict[str, JobConfig]:
        unknown = set(v) - KNOWN_JOBS
        if unknown:
            raise ValueError(f"unknown jobs: {sorted(unknown)}")
        return v


class WalletEntry(BaseModel):
    address: str = Field(min_length=1)
    enabled: bool = True
    total_budget: float = Field(default=0.0, ge=0, description="SOL, 0 = uncapped")
    max_trade_pct: float = Field(default=10.0, gt=0, le=100)
    fee_exempt: bool = False
    drawdown_bypass: bool = False


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    execution: ExecutionEnvConfig = Field(default_factory=ExecutionEnvConfig)
    paper: PaperConfig = Field(default_factory=PaperConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    wallets: List[WalletEntry] = Field(default_factory=list)


# ===== Policy Schema =====
class ConsensusConfig(BaseModel):
    """Advisor voting parameters"""
    quorum: int = Field(default=3, ge=1, description="Minimum valid votes")
    supermajority: float = Field(default=0.64, gt=0.5, le=1.0, description="Winning share of valid votes")
    top_reasons: int = Field(default=3, ge=1)
    min_health: float = Field(default=30, ge=0, le=100)
    failure_penalty: float = Field(default=15, ge=0, le=100)
    success_recovery: float = Field(default=5, ge=0, le=100)
    disable_cooldown_minutes: float = Field(default=30, ge=0)
    health_recovery_per_janitor: float = Field(default=10, ge=0, le=100)


class LossRulesConfig(BaseModel):
    low_liquidity_usd: float = Field(default=5000, ge=0)
    spike_1h_pct: float = Field(default=100, gt=0)
    young_token_hours: float = Field(default=1, ge=0)
    penalties: Dict[str, float] = Field(default_factory=dict)


class LossScreenConfig(BaseModel):
    extreme_threshold: float = Field(default=95, gt=0, le=100)
    high_threshold: float = Field(default=70, gt=0, le=100)
    majority_high_size_factor: float = Field(default=0.5, gt=0, le=1)
    all_high_size_factor: float = Field(default=0.25, gt=0, le=1)
    tightened_stop_factor: float = Field(default=0.5, gt=0, le=1)
    rules: LossRulesConfig = Field(default_factory=LossRulesConfig)


class DrawdownConfig(BaseModel):
    pause_pct: float = Field(default=20, gt=0, le=100, description="Drawdown that pauses new buys")
    resume_pct: float = Field(default=10, ge=0, le=100, description="Drawdown at which buys resume")


class ModeConfig(BaseModel):
    min_confidence: float = Field(ge=0, le=1)
    max_confidence: float = Field(gt=0, le=1)
    size_pct: Band
    profit_target_pct: Band
    stop_loss_pct: Band
    max_hold_minutes: Band
    min_profit_for_ai_sell_pct: float = Field(default=0, ge=0)

    @field_validator("size_pct", "profit_target_pct", "stop_loss_pct", "max_hold_minutes")
    @classmethod
    def positive_band(cls, v: Band) -> Band:
        values = v if isinstance(v, list) else [v]
        if not 1 <= len(values) <= 2:
            raise ValueError("band must be a number or [low, high]")
        if any(x <= 0 for x in values):
            raise ValueError("band values must be positive")
        return v


class ExitsConfig(BaseModel):
    trailing_arm_pct: float = Field(default=1.5, gt=0)
    trailing_distance_pct: float = Field(default=3.0, gt=0, lt=100)
    low_confidence_threshold: float = Field(default=0.40, ge=0, le=1)
    low_confidence_readings: int = Field(default=3, ge=1)
    hold_if_high_confidence: float = Field(default=0.70, ge=0, le=1)


class RebuyConfig(BaseModel):
    min_dip_pct: float = Field(default=10, gt=0, lt=100)
    max_rebuys: int = Field(default=2, ge=0, le=2, description="Hard cap of two rebuys per position")


class AccumulateConfig(BaseModel):
    min_confidence: float = Field(default=0.85, ge=0, le=1)
    max_position_multiple: float = Field(default=2.0, ge=1)
    max_drawdown_pct: float = Field(default=25, gt=0, le=100)


class ReserveConfig(BaseModel):
    base_sol: float = Field(default=0.01, ge=0)
    pct_of_portfolio: float = Field(default=1.0, ge=0, le=100)
    max_sol: float = Field(default=0.1, ge=0)


class PortfolioConfig(BaseModel):
    deployable_pct: float = Field(default=90, gt=0, le=100)
    concentration_cap_pct: float = Field(default=25, gt=0, le=100)
    reserve: ReserveConfig = Field(default_factory=ReserveConfig)


class RotationConfig(BaseModel):
    trigger_confidence: float = Field(default=0.78, ge=0, le=1)
    min_hold_minutes: float = Field(default=30, ge=0)
    min_confidence_margin: float = Field(default=10, ge=0, le=100)
    loss_threshold_pct: float = Field(default=5, ge=0)
    high_confidence: float = Field(default=0.80, ge=0, le=1)
    emergency_balance_sol: float = Field(default=0.02, ge=0)
    slippage_haircut_pct: float = Field(default=5, ge=0, lt=100)
    protect_profit_pct: float = Field(default=20, ge=0)
    small_profit_pct: float = Field(default=5, ge=0)
    profit_weight: float = Field(default=0.5, ge=0)


class TradeExecutionConfig(BaseModel):
    min_trade_sol: float = Field(default=0.01, gt=0)
    buy_slippage_bps: int = Field(default=300, ge=0, le=10000)
    sell_slippage_bps: int = Field(default=1000, ge=0, le=10000)


class LifecycleConfig(BaseModel):
    lost_track_misses: int = Field(default=3, ge=1)
    max_sell_failures: int = Field(default=3, ge=1)


class CacheConfig(BaseModel):
    discovery_ttl_seconds: float = Field(default=900, gt=0)
    analysis_max_age_seconds: float = Field(default=1800, gt=0)
    analysis_price_move_pct: float = Field(default=5, gt=0)
    analysis_profit_move_pct: float = Field(default=5, gt=0)
    fingerprint_price_move_pct: float = Field(default=2, gt=0)
    fingerprint_profit_move_pct: float = Field(default=2, gt=0)
    fingerprint_min_interval_seconds: float = Field(default=900, ge=0)
    fingerprint_max_age_seconds: float = Field(default=7200, gt=0)


class DiscoveryFilters(BaseModel):
    min_organic_score: float = Field(default=40, ge=0, le=100)
    min_quality_score: float = Field(default=30, ge=0, le=100)
    min_liquidity_usd: float = Field(default=5000, ge=0)
    min_transactions_24h: int = Field(default=20, ge=0)
    limit: int = Field(default=35, gt=0)


class DiscoveryConfig(BaseModel):
    quick_scan_top: int = Field(default=2, gt=0)
    max_candidates: int = Field(default=10, gt=0)
    filters: DiscoveryFilters = Field(default_factory=DiscoveryFilters)


class PresetConfig(BaseModel):
    risk_level: Literal["conservative", "moderate", "aggressive"]
    min_confidence: float = Field(ge=0, le=100)
    max_daily_trades: int = Field(ge=1)
    profit_target_multiplier: float = Field(gt=0)
    budget_per_trade: float = Field(gt=0)
    min_volume_usd: float = Field(ge=0)
    min_liquidity_usd: float = Field(ge=0)
    min_organic_score: float = Field(ge=0, le=100)
    min_quality_score: float = Field(ge=0, le=100)
    min_transactions_24h: int = Field(ge=0)
    min_potential_pct: float = Field(ge=0)


class StrategyConfig(BaseModel):
    validity_hours: float = Field(default=3, gt=0)
    lookback_hours: float = Field(default=24, gt=0)
    min_trades_for_learning: int = Field(default=3, ge=1)
    presets: Dict[str, PresetConfig] = Field(default_factory=dict)

    @field_validator("presets")
    @classmethod
    def known_sentiments(cls, v: Dict[str, PresetConfig]) -> Dict[str, PresetConfig]:
        unknown = set(v) - {"bullish", "bearish", "volatile", "neutral"}
        if unknown:
            raise ValueError(f"unknown sentiments: {sorted(unknown)}")
        return v


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    consensus: ConsensusConfig = Field(default_factory=ConsensusConfig)
    loss_screen: LossScreenConfig = Field(default_factory=LossScreenConfig)
    drawdown: DrawdownConfig = Field(default_factory=DrawdownConfig)
    modes: Optional[Dict[Literal["SCALP", "QUICK_2X", "SWING"], ModeConfig]] = None
    exits: ExitsConfig = Field(default_factory=ExitsConfig)
    rebuy: RebuyConfig = Field(default_factory=RebuyConfig)
    accumulate: AccumulateConfig = Field(default_factory=AccumulateConfig)
    portfolio: PortfolioConfig = Field(default_factory=PortfolioConfig)
    rotation: RotationConfig = Field(default_factory=RotationConfig)
    execution: TradeExecutionConfig = Field(default_factory=TradeExecutionConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)


# ===== Advisors Schema =====
class AdvisorDefaults(BaseModel):
    timeout_s: float = Field(default=20, gt=0)


class AdvisorEntry(BaseModel):
    name: str = Field(min_length=1)
    provider: str
    model: Optional[str] = None
    api_key_env: Optional[str] = None
    base_url: Optional[str] = None
    weight: float = Field(default=1.0, gt=0)
    roles: List[str] = Field(default_factory=lambda: ["consensus"], min_length=1)
    timeout_s: Optional[float] = Field(default=None, gt=0)
    enabled: bool = True
    fixed_response: Optional[Dict[str, Any]] = None

    @field_validator("provider")
    @classmethod
    def known_provider(cls, v: str) -> str:
        if v.lower() not in KNOWN_PROVIDERS:
            raise ValueError(f"unknown provider {v}; expected one of {sorted(KNOWN_PROVIDERS)}")
        return v

    @field_validator("roles")
    @classmethod
    def known_roles(cls, v: List[str]) -> List[str]:
        unknown = set(v) - KNOWN_ROLES
        if unknown:
            raise ValueError(f"unknown roles: {sorted(unknown)}")
        return v


class AdvisorsSchema(BaseModel):
    """Complete advisors configuration schema"""
    defaults: AdvisorDefaults = Field(default_factory=AdvisorDefaults)
    advisors: List[AdvisorEntry] = Field(min_length=1)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return (
            f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: "
            f"{getattr(error, 'problem', str(error))}"
        )

    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))
    snippet_lines: List[str] = []
    for idx in range(start, end):
        pointer = "▶" if idx == line else " "
        snippet_lines.append(f"{pointer} {idx + 1:04d} | {raw_lines[idx]}")

    snippet = "\n".join(snippet_lines)
    problem = getattr(error, "problem", str(error))
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: top level must be a mapping ({e})")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema. Returns error messages (empty if valid)."""
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_policy(config_dir: Path) -> List[str]:
    """Validate policy.yaml against schema. Returns error messages (empty if valid)."""
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_advisors(config_dir: Path) -> List[str]:
    """Validate advisors.yaml against schema. Returns error messages (empty if valid)."""
    return _validate_file(config_dir, "advisors.yaml", AdvisorsSchema)


def _mode_band_errors(modes: Dict[str, Dict[str, Any]]) -> List[str]:
    errors = []
    for name, mode in modes.items():
        if mode["min_confidence"] >= mode["max_confidence"]:
            errors.append(
                f"UNSAFE: modes.{name} min_confidence ({mode['min_confidence']}) "
                f">= max_confidence ({mode['max_confidence']})"
            )
    ordered = sorted(modes.items(), key=lambda item: item[1]["min_confidence"])
    for (lower_name, lower), (upper_name, upper) in zip(ordered, ordered[1:]):
        if lower["max_confidence"] > upper["min_confidence"]:
            errors.append(
                f"CONTRADICTION: modes.{lower_name} band ends at {lower['max_confidence']} "
                f"but modes.{upper_name} starts at {upper['min_confidence']} (bands overlap)"
            )
    return errors


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Perform logical consistency checks across configuration files.

    Detects:
    - Drawdown hysteresis inverted (resume at or above pause)
    - Overlapping or inverted mode confidence bands
    - Loss-screen thresholds out of order
    - Advisor rosters that can never reach quorum
    - Wallets listed twice
    """
    errors = []

    try:
        app = load_yaml_file(config_dir / "app.yaml")
        policy = load_yaml_file(config_dir / "policy.yaml")
        advisors = load_yaml_file(config_dir / "advisors.yaml")

        drawdown = policy.get("drawdown", {}) or {}
        pause = drawdown.get("pause_pct", 20)
        resume = drawdown.get("resume_pct", 10)
        if resume >= pause:
            errors.append(
                f"CONTRADICTION: drawdown.resume_pct ({resume}) must be below pause_pct ({pause}) "
                "or the pause flaps on every evaluation."
            )

        modes = policy.get("modes")
        if modes:
            errors.extend(_mode_band_errors(modes))

        loss = policy.get("loss_screen", {}) or {}
        high = loss.get("high_threshold", 70)
        extreme = loss.get("extreme_threshold", 95)
        if high >= extreme:
            errors.append(
                f"CONTRADICTION: loss_screen.high_threshold ({high}) must be below extreme_threshold ({extreme})"
            )
        if loss.get("all_high_size_factor", 0.25) > loss.get("majority_high_size_factor", 0.5):
            errors.append(
                "UNSAFE: loss_screen.all_high_size_factor exceeds majority_high_size_factor "
                "(unanimous risk would size larger than majority risk)"
            )

        consensus = policy.get("consensus", {}) or {}
        quorum = consensus.get("quorum", 3)
        voters = [
            a for a in advisors.get("advisors", []) or []
            if a.get("enabled", True) and "consensus" in a.get("roles", ["consensus"])
        ]
        if len(voters) < quorum:
            errors.append(
                f"UNSAFE: {len(voters)} consensus advisors configured but quorum is {quorum}; "
                "every consensus would fail closed."
            )

        names = [a.get("name") for a in advisors.get("advisors", []) or []]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            errors.append(f"CONTRADICTION: duplicate advisor names {duplicates}")

        addresses = [w.get("address") for w in app.get("wallets", []) or []]
        repeated = sorted({a for a in addresses if addresses.count(a) > 1})
        if repeated:
            errors.append(f"CONTRADICTION: wallets listed more than once: {repeated}")

        rotation = policy.get("rotation", {}) or {}
        exits = policy.get("exits", {}) or {}
        if rotation.get("high_confidence", 0.80) < exits.get("hold_if_high_confidence", 0.70):
            errors.append(
                "CONTRADICTION: rotation.high_confidence is below exits.hold_if_high_confidence; "
                "positions held for confidence would still rotate out."
            )

    except FileNotFoundError as e:
        errors.append(f"Sanity checks failed: {e}")
    except (yaml.YAMLError, KeyError, TypeError, AttributeError) as e:
        errors.append(f"Sanity checks failed: Unexpected error - {e}")

    if not errors:
        logger.info("✅ Configuration sanity checks passed")
    else:
        logger.warning(f"⚠️  {len(errors)} sanity check issue(s) found")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))
    all_errors.extend(validate_advisors(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
