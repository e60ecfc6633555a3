from __future__ import annotations

from dataclasses import dataclass, field, replace
import os


DEFAULT_STRATEGY = "nuoiem"


@dataclass(frozen=True)
class StrategyConfig:
    name: str = DEFAULT_STRATEGY

    # Entry / probe
    higher_leg_floor: float = 0.52
    probe_min_price: float = 0.52
    probe_max_price: float = 0.57
    probe_size_min: float = 10.0
    probe_size_max: float = 30.0
    probe_sizing: str = "inverse"  # "inverse" | "midpoint"
    probe_offsets: tuple[float, ...] = (-0.01, -0.03)
    probe_rungs: int = 2
    probe_max_projected_avg: float = 0.60

    # Average-down
    dip_threshold: float = 0.025
    avg_down_size_min: float = 50.0
    avg_down_size_max: float = 150.0
    avg_down_size_step: float = 20.0
    avg_down_step_cents: float = 0.01
    avg_down_max_steps: int = 4
    avg_down_offsets: tuple[float, ...] = (-0.01, -0.02)
    avg_down_lower: bool = False
    avg_down_min_balance: float = 0.0
    max_adds_per_leg: int = 0  # 0 = unbounded

    # Hedge lower
    hedge_price_ceiling: float = 0.51
    hedge_soft_ceiling: float = 0.52
    hedge_soft_ratio: float = 0.65
    hedge_dynamic_spread: float = 0.0  # >0: ceiling follows avg_higher - spread
    hedge_target_ratio: float = 0.70
    hedge_size_min: float = 70.0
    hedge_size_max: float = 140.0
    hedge_overshoot_tolerance: float = 10.0
    hedge_offsets: tuple[float, ...] = (-0.02, -0.05)

    # Repeat check (pair above target)
    repeat_interval_seconds: float = 5.0
    repeat_offsets_higher: tuple[float, ...] = (-0.01, -0.02)
    repeat_offsets_lower: tuple[float, ...] = (-0.02, -0.03)
    repeat_lower_sizing: str = "target"  # "target" | "dip"
    repeat_lower_size_min: float = 50.0
    repeat_lower_size_max: float = 150.0

    # Guard thresholds
    target_pair_cost: float = 0.95
    strict_pair_cap: bool = False
    pair_tolerance: float = 0.01
    min_improvement: float = 0.0
    min_balance_ratio: float = 0.70
    min_asym_ratio: float = 0.50
    max_asym_ratio: float = 0.75
    payoff_multiplier: float = 1.02
    max_pool_cost: float = 0.0  # 0 = no engine-side cap
    min_best_case_payoff_ratio: float = 0.0

    # Unsafe pause
    pause_threshold: float = 0.96
    resume_threshold: float = 0.95
    resume_on_dip: bool = False

    # Reversal trigger
    reversal_margin: float = 0.08
    reversal_balance_ceiling: float = 0.80
    reversal_ratio_min: float = 0.25
    reversal_ratio_max: float = 0.40
    reversal_ratio_step: float = 0.05
    reversal_max_orders: int = 3
    reversal_size_min: float = 10.0
    reversal_size_max: float = 50.0
    reversal_size_round: float = 10.0
    reversal_offsets: tuple[float, ...] = (-0.02, -0.03, -0.05)
    reversal_window: tuple[float, float] = (6.0, 13.0)
    reversal_check_seconds: float = 1.0

    # Lock / exit
    lock_window: tuple[float, float] = (9.0, 15.0)
    lock_target_pair_cost: float = 0.95
    lock_min_balance: float = 0.75
    lock_max_asym: float = 0.75

    # Phase windows in minutes remaining, low < m <= high; None = anytime
    probe_window: tuple[float, float] | None = None
    build_window: tuple[float, float] | None = None

    # Rolling pair-cost history; 0 = use the instantaneous pair cost
    history_window: int = 0

    # Entry price band used when a position grows without a known order price
    higher_estimate_band: tuple[float, float] = (0.52, 0.57)
    lower_estimate_band: tuple[float, float] = (0.40, 0.51)

    min_price: float = 0.01
    fill_wait_seconds: float = 10.0


NUOIEM = StrategyConfig()

RAISEM = replace(
    NUOIEM,
    name="raisem",
    probe_max_price=0.56,
    probe_offsets=(-0.02, -0.05),
    avg_down_offsets=(-0.02, -0.05),
    avg_down_lower=True,
    hedge_soft_ratio=0.0,
    repeat_offsets_higher=(-0.02, -0.05),
    repeat_offsets_lower=(-0.02, -0.05),
    repeat_lower_sizing="dip",
    strict_pair_cap=True,
    min_improvement=0.01,
    pause_threshold=0.0,
    reversal_margin=0.09,
    reversal_ratio_min=0.325,
    reversal_ratio_max=0.325,
    reversal_ratio_step=0.0,
    reversal_max_orders=1,
    reversal_offsets=(-0.02,),
    reversal_window=(0.0, 6.0),
    history_window=100,
)

RAISEM_V1 = replace(
    RAISEM,
    name="raisemV1",
    probe_max_price=0.57,
    probe_offsets=(-0.01, -0.03),
    avg_down_offsets=(-0.01, -0.03),
    repeat_offsets_higher=(-0.01, -0.03),
    repeat_offsets_lower=(-0.01, -0.03),
    max_adds_per_leg=5,
    min_improvement=0.0,
    pause_threshold=0.95,
    resume_on_dip=True,
    reversal_margin=0.08,
)

KARAS = replace(
    NUOIEM,
    name="karas",
    probe_max_price=0.59,
    probe_sizing="midpoint",
    probe_offsets=(),
    probe_rungs=1,
    avg_down_size_min=40.0,
    avg_down_size_max=120.0,
    avg_down_offsets=(),
    avg_down_min_balance=0.30,
    hedge_price_ceiling=0.52,
    hedge_soft_ratio=0.0,
    hedge_dynamic_spread=0.05,
    hedge_size_min=80.0,
    hedge_size_max=150.0,
    hedge_overshoot_tolerance=0.0,
    hedge_offsets=(),
    repeat_interval_seconds=0.0,
    target_pair_cost=0.965,
    pair_tolerance=0.0,
    min_balance_ratio=0.60,
    max_pool_cost=100.0,
    min_best_case_payoff_ratio=0.50,
    pause_threshold=0.0,
    reversal_max_orders=0,
    lock_window=(0.0, 6.0),
    lock_target_pair_cost=0.965,
    probe_window=(12.0, float("inf")),
    build_window=(6.0, 12.0),
)

PRESETS: dict[str, StrategyConfig] = {
    NUOIEM.name: NUOIEM,
    RAISEM.name: RAISEM,
    RAISEM_V1.name: RAISEM_V1,
    KARAS.name: KARAS,
}


def strategy_preset(name: str) -> StrategyConfig:
    preset = PRESETS.get(str(name or "").strip())
    if preset is None:
        raise ValueError(f"unknown strategy={name!r} (choices: {', '.join(sorted(PRESETS))})")
    return preset


@dataclass(frozen=True)
class SimulatorConfig:
    fill_delay_ms: float = 1000.0
    fill_probability: float = 0.80
    max_slippage: float = 0.01
    enable_slippage: bool = True
    invalid_price_probability: float = 0.05
    invalid_price_distance: float = 0.05
    rejection_probability: float = 0.10
    illiquid_size: float = 200.0
    illiquid_probability: float = 0.20
    position_delay_ms: float = 3000.0
    max_retries: int = 3
    retry_delay_ms: float = 2000.0
    budget_usd: float = 100.0
    drain_passes: int = 5
    seed: int | None = None
    orders_file: str = "logs/sim-orders-history.csv"
    summary_file: str = "logs/sim-summary-history.csv"


@dataclass(frozen=True)
class BotConfig:
    mode: str
    clob_url: str
    gamma_url: str
    data_api_url: str
    api_timeout_seconds: float
    poll_interval_seconds: float
    pool_minutes: int

    market_slug: str
    slug_pattern: str

    poly_private_key: str
    poly_proxy_address: str
    poly_chain_id: int
    poly_signature_type: int | None

    log_level: str

    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    simulator: SimulatorConfig = field(default_factory=SimulatorConfig)

    @property
    def live_mode(self) -> bool:
        return self.mode.lower() == "live"

    @property
    def paper_mode(self) -> bool:
        return not self.live_mode


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def load_simulator_config() -> SimulatorConfig:
    base = SimulatorConfig()
    raw_seed = os.getenv("SIM_SEED", "").strip()
    seed: int | None = None
    if raw_seed:
        try:
            seed = int(raw_seed)
        except ValueError:
            seed = None
    return SimulatorConfig(
        fill_delay_ms=_env_float("SIM_ORDER_FILL_DELAY_MS", base.fill_delay_ms),
        fill_probability=_env_float("SIM_FILL_PROBABILITY", base.fill_probability),
        max_slippage=_env_float("SIM_MAX_SLIPPAGE", base.max_slippage),
        enable_slippage=_env_bool("SIM_ENABLE_SLIPPAGE", base.enable_slippage),
        invalid_price_probability=_env_float("SIM_INVALID_PRICE_PROBABILITY", base.invalid_price_probability),
        invalid_price_distance=base.invalid_price_distance,
        rejection_probability=_env_float("SIM_REJECTION_PROBABILITY", base.rejection_probability),
        illiquid_size=base.illiquid_size,
        illiquid_probability=base.illiquid_probability,
        position_delay_ms=_env_float("SIM_POSITION_API_DELAY_MS", base.position_delay_ms),
        max_retries=_env_int("SIM_MAX_RETRIES", base.max_retries),
        retry_delay_ms=_env_float("SIM_RETRY_DELAY_MS", base.retry_delay_ms),
        budget_usd=_env_float("MAX_BUDGET_PER_POOL", base.budget_usd),
        drain_passes=base.drain_passes,
        seed=seed,
        orders_file=os.getenv("SIM_ORDERS_FILE", base.orders_file),
        summary_file=os.getenv("SIM_SUMMARY_FILE", base.summary_file),
    )


def load_config() -> BotConfig:
    raw_signature_type = os.getenv("POLY_SIGNATURE_TYPE", "").strip()
    parsed_signature_type: int | None = None
    if raw_signature_type:
        try:
            parsed_signature_type = int(raw_signature_type)
        except ValueError:
            parsed_signature_type = None

    strategy_name = os.getenv("TRADING_STRATEGY", DEFAULT_STRATEGY).strip() or DEFAULT_STRATEGY
    strategy = PRESETS.get(strategy_name, NUOIEM)

    return BotConfig(
        mode=os.getenv("BOT_MODE", "paper").strip().lower(),
        clob_url=os.getenv("CLOB_API_URL", "https://clob.polymarket.com"),
        gamma_url="https://gamma-api.polymarket.com",
        data_api_url="https://data-api.polymarket.com",
        api_timeout_seconds=3.0,
        poll_interval_seconds=_env_float("POLL_INTERVAL_MS", 1000.0) / 1000.0,
        pool_minutes=_env_int("POOL_MINUTES", 15),
        market_slug=os.getenv("TARGET_MARKET_SLUG", "").strip(),
        slug_pattern=os.getenv("MARKET_SLUG_PATTERN_BASE", "btc-updown-15m").strip(),
        poly_private_key=os.getenv("POLY_PRIVATE_KEY", os.getenv("PRIVATE_KEY", "")),
        poly_proxy_address=os.getenv("POLY_PROXY_ADDRESS", ""),
        poly_chain_id=_env_int("POLYGON_CHAIN_ID", 137),
        poly_signature_type=parsed_signature_type,
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        strategy=strategy,
        simulator=load_simulator_config(),
    )
