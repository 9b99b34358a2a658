from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import ScenarioConfig
from .core import Environment, Token, UNLIMITED
from .pool import Pool
from .healthcheck import CommonHealthCheck
from .markets import LendingMarket, FarmPool, StakingPool, StableSwapPool, PriceOracle
from .lenders import LendingMarketLender
from .strategy import Strategy
from .strategies import deploy_strategy


@dataclass
class Actors:
    governance: str = "governance"
    management: str = "management"
    guardian: str = "guardian"
    rewards: str = "treasury"
    strategist: str = "strategist"
    keeper: str = "keeper"


@dataclass
class World:
    env: Environment
    want: Token
    pool: Pool
    actors: Actors
    health_check: CommonHealthCheck
    oracle: PriceOracle
    strategies: Dict[str, Strategy] = field(default_factory=dict)
    markets: List[LendingMarket] = field(default_factory=list)
    lenders: List[LendingMarketLender] = field(default_factory=list)
    farm: Optional[FarmPool] = None
    staking: Optional[StakingPool] = None
    swap: Optional[StableSwapPool] = None
    st_token: Optional[Token] = None


class WorldFactory:
    def __init__(self, cfg: ScenarioConfig, env: Environment) -> None:
        self.cfg = cfg
        self.env = env
        self.actors = Actors()
        self.depositor_counter = 0

    def new_depositor_id(self) -> str:
        self.depositor_counter += 1
        return f"depositor_{self.depositor_counter:04d}"

    def build(self) -> World:
        cfg = self.cfg
        a = self.actors
        want = Token(self.env, cfg.want_symbol, cfg.want_decimals)
        deposit_limit = UNLIMITED if cfg.deposit_limit is None else cfg.units(cfg.deposit_limit)
        pool = Pool(
            self.env, want, a.governance, a.rewards, guardian=a.guardian, management=a.management,
            performance_fee=cfg.performance_fee_bps, management_fee=cfg.management_fee_bps,
            deposit_limit=deposit_limit,
        )
        health_check = CommonHealthCheck(
            self.env, a.governance, a.management,
            profit_limit_ratio=cfg.profit_limit_bps, loss_limit_ratio=cfg.loss_limit_bps,
        )
        # native has 18 decimals, so WAD-scaled want per native is want units per whole native
        oracle = PriceOracle(want_per_native=cfg.units(cfg.want_per_native))
        world = World(self.env, want, pool, a, health_check, oracle)

        for kind, ratio in cfg.strategy_ratios.items():
            strategy = self.create_strategy(world, kind)
            max_debt = UNLIMITED if cfg.max_debt_per_harvest is None else cfg.units(cfg.max_debt_per_harvest)
            pool.add_strategy(strategy, int(ratio), cfg.units(cfg.min_debt_per_harvest), max_debt,
                              sender=a.governance)
            world.strategies[strategy.name] = strategy
        return world

    def _configure(self, world: World, strategy: Strategy) -> None:
        cfg = self.cfg
        a = self.actors
        strategy.set_keeper(a.keeper, sender=a.strategist)
        strategy.set_profit_factor(cfg.profit_factor, sender=a.strategist)
        strategy.set_min_report_delay(cfg.min_report_delay_ticks * cfg.tick_seconds, sender=a.strategist)
        strategy.set_max_report_delay(cfg.max_report_delay_ticks * cfg.tick_seconds, sender=a.strategist)
        strategy.set_debt_threshold(cfg.units(cfg.debt_threshold), sender=a.strategist)
        strategy.set_price_oracle(world.oracle, sender=a.strategist)
        if cfg.health_check_enabled:
            strategy.set_health_check(world.health_check, sender=a.management)
            strategy.set_do_health_check(True, sender=a.management)

    def create_strategy(self, world: World, kind: str) -> Strategy:
        cfg = self.cfg
        env = self.env
        a = self.actors
        want = world.want

        if kind == "lender":
            strategy = deploy_strategy(env, world.pool, "lender", a.strategist, rewards=a.strategist,
                                       name="StrategyLenderYieldOptimiser",
                                       withdrawal_threshold=cfg.units(cfg.withdrawal_threshold))
            for idx, apr in enumerate(cfg.lender_aprs):
                market = LendingMarket(env, want, f"market_{idx + 1}", cfg.wad(apr))
                market.seed_liquidity(cfg.units(cfg.market_liquidity))
                lender = LendingMarketLender(strategy, f"GenericLender_{idx + 1}", market,
                                             dust=cfg.units(cfg.lender_dust))
                strategy.variant.add_lender(lender, sender=a.governance)
                world.markets.append(market)
                world.lenders.append(lender)
        elif kind == "direct":
            farm = FarmPool(env, want, "farm", cfg.wad(cfg.farm_reward_apr))
            farm.fund(cfg.units(cfg.farm_reserve))
            world.farm = farm
            strategy = deploy_strategy(env, world.pool, "direct", a.strategist, name="StrategyToFarm",
                                       farm=farm, withdrawal_threshold=cfg.units(cfg.withdrawal_threshold))
        elif kind == "staking":
            st_token = Token(env, f"st{cfg.want_symbol}", cfg.want_decimals)
            staking = StakingPool(env, want, st_token)
            swap = StableSwapPool(env, want, st_token, price=cfg.wad(cfg.swap_price), fee_bps=cfg.swap_fee_bps)
            swap.seed(cfg.units(cfg.swap_liquidity), cfg.units(cfg.swap_liquidity))
            world.st_token, world.staking, world.swap = st_token, staking, swap
            strategy = deploy_strategy(env, world.pool, "staking", a.strategist, name="StrategyLiquidStaking",
                                       staking=staking, swap=swap, peg=cfg.staking_peg_bps,
                                       slippage_protection_out=cfg.slippage_protection_out_bps)
        else:
            strategy = deploy_strategy(env, world.pool, kind, a.strategist)

        self._configure(world, strategy)
        return strategy
