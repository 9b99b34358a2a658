from dataclasses import dataclass, field
from typing import Dict, List

from .core import MAX_BPS, WAD

SHOCK_KINDS = ("hack", "liquidity", "depeg", "shutdown", "exit")


@dataclass
class ScenarioConfig:
    # Asset and clock
    want_symbol: str = "USDT"
    want_decimals: int = 6
    start_time: int = 1_700_000_000
    tick_seconds: int = 86_400  # one tick = one day

    # Pool
    initial_deposit: float = 1_000_000.0
    initial_depositors: int = 10
    deposit_limit: float | None = None  # None = unlimited
    performance_fee_bps: int = 1_000
    management_fee_bps: int = 200

    # Strategy mix: kind -> debt ratio (bps of pool)
    strategy_ratios: Dict[str, int] = field(default_factory=lambda: {
        "lender": 5_000,
        "direct": 2_000,
        "staking": 2_000,
    })
    min_debt_per_harvest: float = 0.0
    max_debt_per_harvest: float | None = None  # None = unlimited

    # Lending markets (lender strategy)
    lender_aprs: List[float] = field(default_factory=lambda: [0.05, 0.10, 0.20])
    lender_apr_drift: float = 0.002  # stdev of per-tick APR change
    lender_apr_floor: float = 0.0
    lender_apr_cap: float = 0.50
    market_liquidity: float = 2_000_000.0  # borrower cash seeded per market
    lender_dust: float = 1.0
    withdrawal_threshold: float = 0.0

    # Farm (direct strategy)
    farm_reward_apr: float = 0.08
    farm_reserve: float = 500_000.0

    # Liquid staking (staking strategy)
    staking_rebase_bps_per_tick: int = 1
    swap_price: float = 1.0  # want per staked token
    swap_fee_bps: int = 4
    swap_liquidity: float = 1_000_000.0
    staking_peg_bps: int = 100
    slippage_protection_out_bps: int = 50

    # Depositors
    deposit_flow_mean: float = 5_000.0  # per tick, exponential
    p_deposit: float = 0.5
    p_withdraw: float = 0.2
    withdraw_frac_mean: float = 0.2
    max_loss_bps: int = 1

    # Keeper
    keeper_call_cost: float = 0.01  # native units per call
    want_per_native: float = 2_000.0
    profit_factor: int = 100
    min_report_delay_ticks: int = 0
    max_report_delay_ticks: int = 7
    debt_threshold: float = 0.0

    # Health check
    health_check_enabled: bool = True
    profit_limit_bps: int = 300
    loss_limit_bps: int = 100
    health_check_reenable: bool = True  # manager turns checks back on after the next clean harvest

    # Shocks
    shock_tick: int | None = None
    shock_kind: str = "hack"
    shock_size: float = 0.5  # share of the target hit (nav, cash, price)
    shock_duration_ticks: int = 5  # liquidity crunch length

    # Metrics / logs
    metrics_stride: int = 1
    lender_metrics_stride: int = 1
    event_log_maxlen: int | None = 5_000

    # Debug
    debug_balances: bool = False

    def __post_init__(self) -> None:
        if self.tick_seconds <= 0:
            raise ValueError("tick_seconds must be positive")
        total_ratio = sum(int(r) for r in self.strategy_ratios.values())
        if total_ratio > MAX_BPS:
            raise ValueError(f"strategy ratios sum to {total_ratio} > {MAX_BPS}")
        if "lender" in self.strategy_ratios and not self.lender_aprs:
            raise ValueError("lender strategy needs at least one lender apr")
        if self.shock_kind not in SHOCK_KINDS:
            raise ValueError(f"unknown shock kind {self.shock_kind!r}")
        if not 0 <= self.staking_peg_bps <= 1_000:
            raise ValueError("staking_peg_bps must be within [0, 1000]")

    def units(self, amount: float) -> int:
        """Whole-token float to base units."""
        return int(round(float(amount) * 10 ** self.want_decimals))

    def to_float(self, units: int) -> float:
        return units / 10 ** self.want_decimals

    @staticmethod
    def wad(rate: float) -> int:
        return int(round(float(rate) * WAD))
