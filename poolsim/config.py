from dataclasses import dataclass, field
from decimal import Decimal

SCALE = 10**18
DAY = 86_400
YEAR = 365 * DAY


def _frac(value: float) -> int:
    return int(Decimal(str(value)) * SCALE)


@dataclass
class ProtocolConfig:
    # Allocation
    max_deviation: int = _frac(0.02)  # also the routing tolerance band
    max_deviation_upper_bound: int = _frac(0.5)
    depeg_threshold: int = _frac(0.03)
    min_depeg_threshold: int = _frac(0.01)
    max_depeg_threshold: int = _frac(0.10)
    weight_update_min_delay: int = 14 * DAY
    min_weight_update_delay: int = 1 * DAY
    max_weight_update_delay: int = 32 * DAY
    total_value_cache_expiry: int = 3 * DAY
    routing_dust: int = 100  # base units left idle instead of routed

    # Staking boost
    time_starting_factor: int = _frac(0.1)
    time_boost_ramp: int = 30 * DAY
    tvl_factor: int = 50 * SCALE
    min_boost: int = _frac(0.1)
    max_boost: int = 10 * SCALE

    # Vote locks
    min_lock_time: int = 120 * DAY
    max_lock_time: int = 240 * DAY
    min_boost_lock: int = SCALE
    max_boost_lock: int = _frac(1.5)
    kick_grace_period: int = 30 * DAY
    kick_penalty: int = _frac(0.1)

    # Inflation
    initial_inflation_rate: int = 1_500_000 * SCALE // YEAR  # tokens / second
    annual_inflation_decay: int = _frac(0.4)
    inflation_period: int = YEAR

    # Rebalancing incentive
    rebalancing_reward_share: int = _frac(0.2)
    tvl_reference_usd: int = 10_000_000 * SCALE
    min_tvl_multiplier: int = _frac(0.5)
    max_tvl_multiplier: int = 5 * SCALE

    # Reward fees skimmed from venue yield to vote lockers
    reward_fee_rate: int = _frac(0.1)

    gov_token: str = "GOV"
    yield_token: str = "YIELD"

    def __post_init__(self) -> None:
        if not 0 < self.max_deviation <= self.max_deviation_upper_bound:
            raise ValueError("max_deviation out of range")
        if not self.min_depeg_threshold <= self.depeg_threshold <= self.max_depeg_threshold:
            raise ValueError("depeg_threshold out of range")
        if not self.min_weight_update_delay <= self.weight_update_min_delay <= self.max_weight_update_delay:
            raise ValueError("weight_update_min_delay out of range")
        if not 0 < self.time_starting_factor <= SCALE:
            raise ValueError("time_starting_factor must be in (0, 1]")
        if self.time_boost_ramp <= 0:
            raise ValueError("time_boost_ramp must be positive")
        if not 0 < self.min_boost <= self.max_boost:
            raise ValueError("min_boost must be positive and not above max_boost")
        if not 0 < self.min_lock_time < self.max_lock_time:
            raise ValueError("lock times must satisfy 0 < min < max")
        if not 0 < self.min_boost_lock <= self.max_boost_lock:
            raise ValueError("lock boosts must satisfy 0 < min <= max")
        if not 0 <= self.kick_penalty <= SCALE:
            raise ValueError("kick_penalty must be a fraction")
        if not 0 <= self.annual_inflation_decay < SCALE:
            raise ValueError("annual_inflation_decay must be in [0, 1)")
        if self.inflation_period <= 0:
            raise ValueError("inflation_period must be positive")
        if not 0 < self.min_tvl_multiplier <= self.max_tvl_multiplier:
            raise ValueError("tvl multipliers must satisfy 0 < min <= max")
        if not 0 <= self.reward_fee_rate < SCALE:
            raise ValueError("reward_fee_rate must be in [0, 1)")
        if self.routing_dust < 0:
            raise ValueError("routing_dust cannot be negative")


@dataclass
class ScenarioConfig:
    # Network shape
    num_pools: int = 2
    venues_per_pool: int = 3
    underlying_symbols: list[str] = field(default_factory=lambda: ["USDC", "DAI"])
    num_agents: int = 20
    seed_liquidity_per_pool: float = 250_000.0

    # Time model
    tick_seconds: int = DAY

    # Agent activity (per agent, per tick)
    p_deposit: float = 0.15
    p_withdraw: float = 0.08
    p_claim: float = 0.05
    p_lock: float = 0.02
    deposit_mean: float = 5_000.0
    withdraw_frac_mean: float = 0.25
    stake_on_deposit: bool = True
    agent_initial_balance: float = 1_000_000.0

    # Venues
    venue_yield_per_lp_per_day: float = 0.0002
    venue_slippage: float = 0.0

    # Governance
    weight_update_every_ticks: int = 15
    weight_drift: float = 0.15

    # Depeg shock
    depeg_tick: int | None = None
    depeg_pool_index: int = 0
    depeg_venue_index: int = 0
    depeg_size: float = 0.05

    # Metrics
    metrics_stride: int = 1
    pool_metrics_stride: int = 1
    event_log_maxlen: int | None = 20_000

    # Debug
    debug_inventory: bool = False

    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)

    def __post_init__(self) -> None:
        if self.num_pools <= 0:
            raise ValueError("num_pools must be positive")
        if self.venues_per_pool <= 0:
            raise ValueError("venues_per_pool must be positive")
        if not self.underlying_symbols:
            self.underlying_symbols = ["USDC"]
        if self.tick_seconds <= 0:
            raise ValueError("tick_seconds must be positive")
