from __future__ import annotations
from typing import Dict, List, Optional, Tuple
import logging
import numpy as np
import random

from .config import ScenarioConfig
from .core import Environment, Event, LedgerError, MAX_BPS, WAD
from .factory import WorldFactory, World
from .metrics import MetricsStore
from .strategy import Strategy
from .allocator import Allocator
from .strategies import LiquidStaking

logger = logging.getLogger(__name__)

NATIVE_DECIMALS = 18


class SimulationEngine:
    def __init__(self, cfg: ScenarioConfig, seed: int = 1) -> None:
        self.cfg = cfg
        self.rng = random.Random(seed)
        np.random.seed(seed)

        self.tick: int = 0
        self.env = Environment(start_time=cfg.start_time, event_log_maxlen=cfg.event_log_maxlen)
        self.env.debug_balances = cfg.debug_balances
        self.log = self.env.events
        self.metrics = MetricsStore()

        self.factory = WorldFactory(cfg, self.env)
        self.world: World = self.factory.build()
        self.depositors: List[str] = []

        self.failures: Dict[str, int] = {}
        self.invariant_breaches: List[Tuple[int, str]] = []
        self._harvests_tick: int = 0
        self._tends_tick: int = 0
        self._harvests_total: int = 0
        self._deposited_tick: int = 0
        self._withdrawn_tick: int = 0
        self._crunch_until: Optional[int] = None
        self._bootstrap()

    # -----------------------------
    # Accessors
    # -----------------------------
    @property
    def pool(self):
        return self.world.pool

    @property
    def actors(self):
        return self.world.actors

    def strategies(self) -> List[Strategy]:
        return self.pool.strategy_list()

    def call_cost(self) -> int:
        return int(round(self.cfg.keeper_call_cost * 10 ** NATIVE_DECIMALS))

    def _bootstrap(self) -> None:
        cfg = self.cfg
        n = max(1, int(cfg.initial_depositors))
        per_depositor = cfg.units(cfg.initial_deposit) // n
        for _ in range(n):
            depositor = self.factory.new_depositor_id()
            self.depositors.append(depositor)
            if per_depositor > 0:
                self._deposit(depositor, per_depositor)
        self.snapshot_metrics(force=True)

    def _record_failure(self, op: str, exc: LedgerError, actor: Optional[str] = None) -> None:
        key = f"{op}:{exc.reason}"
        self.failures[key] = self.failures.get(key, 0) + 1
        self.log.add(Event(self.env.now, "CALL_FAILED", actor, self.pool.address, None,
                           {"op": op, "reason": exc.reason, "message": str(exc)}))
        logger.info("tick %d %s failed for %s: %s", self.tick, op, actor, exc)

    # -----------------------------
    # Depositors
    # -----------------------------
    def _deposit(self, depositor: str, amount: int) -> int:
        want = self.world.want
        want.mint(depositor, amount)
        try:
            self.pool.deposit(amount, sender=depositor)
        except LedgerError as exc:
            want.burn(depositor, amount)
            self._record_failure("deposit", exc, depositor)
            return 0
        self._deposited_tick += amount
        return amount

    def _withdraw(self, depositor: str, shares: int) -> int:
        try:
            value = self.pool.withdraw(shares, max_loss=self.cfg.max_loss_bps, sender=depositor)
        except LedgerError as exc:
            self._record_failure("withdraw", exc, depositor)
            return 0
        # cash leaves the system
        self.world.want.burn(depositor, value)
        self._withdrawn_tick += value
        return value

    def _depositor_flows(self) -> None:
        cfg = self.cfg
        if self.rng.random() < cfg.p_deposit and cfg.deposit_flow_mean > 0:
            amount = cfg.units(float(np.random.exponential(cfg.deposit_flow_mean)))
            if amount > 0:
                if self.rng.random() < 0.2 or not self.depositors:
                    self.depositors.append(self.factory.new_depositor_id())
                self._deposit(self.rng.choice(self.depositors), amount)

        if self.rng.random() < cfg.p_withdraw:
            holders = [d for d in self.depositors if self.pool.balance_of(d) > 0]
            if holders:
                depositor = self.rng.choice(holders)
                frac = min(1.0, float(np.random.exponential(cfg.withdraw_frac_mean)))
                shares = int(self.pool.balance_of(depositor) * frac)
                if shares > 0:
                    self._withdraw(depositor, shares)

    # -----------------------------
    # Venues
    # -----------------------------
    def _drift_rates(self) -> None:
        cfg = self.cfg
        if cfg.lender_apr_drift <= 0:
            return
        for market in self.world.markets:
            apr = market.apr / WAD + float(np.random.normal(0.0, cfg.lender_apr_drift))
            apr = min(max(apr, cfg.lender_apr_floor), cfg.lender_apr_cap)
            market.set_apr(cfg.wad(apr))

    def _grow_staking(self) -> None:
        if self.world.staking is not None and self.cfg.staking_rebase_bps_per_tick > 0:
            self.world.staking.rebase(self.cfg.staking_rebase_bps_per_tick)

    # -----------------------------
    # Shocks
    # -----------------------------
    def _apply_shock(self) -> None:
        cfg = self.cfg
        kind = cfg.shock_kind
        size = max(0.0, min(1.0, cfg.shock_size))
        a = self.actors
        hit = 0
        if kind == "hack":
            for lender in self.world.lenders:
                nav = lender.underlying_balance()
                hit += lender.market.slash(lender.address, int(nav * size))
            if not self.world.lenders:
                for s in self.strategies():
                    loose = self.world.want.balance_of(s.address)
                    take = int(loose * size)
                    if take > 0:
                        self.world.want.transfer("attacker", take, sender=s.address)
                        hit += take
        elif kind == "liquidity":
            for market in self.world.markets:
                hit += market.drain(int(market.liquidity() * size))
            self._crunch_until = self.tick + max(1, int(cfg.shock_duration_ticks))
        elif kind == "depeg" and self.world.swap is not None:
            old = self.world.swap.price
            self.world.swap.set_price(int(old * (1.0 - size)))
            hit = old - self.world.swap.price
        elif kind == "shutdown":
            self.pool.set_emergency_shutdown(True, sender=a.guardian)
        elif kind == "exit":
            for s in self.strategies():
                if self.pool.strategies(s).debt_ratio > 0:
                    s.set_emergency_exit(sender=a.strategist)
                    break
        self.log.add(Event(self.env.now, "SHOCK", None, self.pool.address, hit, {"kind": kind, "size": size}))
        logger.info("tick %d shock %s size=%.2f hit=%d", self.tick, kind, size, hit)

    def _end_crunch(self) -> None:
        for market in self.world.markets:
            market.repay()
        self._crunch_until = None

    # -----------------------------
    # Keeper
    # -----------------------------
    def _is_retired(self, s: Strategy) -> bool:
        params = self.pool.strategies(s)
        return params.debt_ratio == 0 and params.total_debt == 0 and s.estimated_total_assets() == 0

    def _run_keeper(self) -> None:
        a = self.actors
        cost = self.call_cost()
        for s in self.strategies():
            if self._is_retired(s):
                continue
            if s.harvest_trigger(cost):
                try:
                    s.harvest(sender=a.keeper)
                except LedgerError as exc:
                    self._record_failure("harvest", exc, s.address)
                    continue
                self._harvests_tick += 1
                self._harvests_total += 1
                if (self.cfg.health_check_enabled and self.cfg.health_check_reenable
                        and not s.state.do_health_check):
                    s.set_do_health_check(True, sender=a.management)
            elif s.tend_trigger(cost):
                try:
                    s.tend(sender=a.keeper)
                except LedgerError as exc:
                    self._record_failure("tend", exc, s.address)
                    continue
                self._tends_tick += 1

    # -----------------------------
    # Invariants
    # -----------------------------
    def check_invariants(self) -> List[str]:
        pool = self.pool
        problems: List[str] = []
        ratios = sum(pool.strategies(s).debt_ratio for s in self.strategies())
        if ratios > MAX_BPS or ratios != pool.debt_ratio:
            problems.append(f"debt ratios {ratios} vs pool {pool.debt_ratio}")
        debts = sum(pool.strategies(s).total_debt for s in self.strategies())
        if debts != pool.total_debt:
            problems.append(f"strategy debts {debts} != pool debt {pool.total_debt}")
        if pool.total_assets() != pool.total_idle + pool.total_debt:
            problems.append("total assets != idle + debt")
        if self.world.want.balance_of(pool.address) < pool.total_idle:
            problems.append("idle not backed by balance")
        for p in problems:
            logger.error("tick %d invariant breach: %s", self.tick, p)
            self.invariant_breaches.append((self.tick, p))
        return problems

    # -----------------------------
    # Loop
    # -----------------------------
    def step(self, n_ticks: int = 1) -> None:
        cfg = self.cfg
        for _ in range(n_ticks):
            self.tick += 1
            self._harvests_tick = 0
            self._tends_tick = 0
            self._deposited_tick = 0
            self._withdrawn_tick = 0
            self.env.advance(cfg.tick_seconds)

            self._drift_rates()
            self._grow_staking()

            if cfg.shock_tick is not None and self.tick == cfg.shock_tick:
                self._apply_shock()
            if self._crunch_until is not None and self.tick >= self._crunch_until:
                self._end_crunch()

            self._depositor_flows()
            self._run_keeper()
            self.check_invariants()
            self.snapshot_metrics()

    def snapshot_metrics(self, force: bool = False) -> None:
        cfg = self.cfg
        stride = int(cfg.metrics_stride or 0)
        lender_stride = int(cfg.lender_metrics_stride or 0)
        do_pool = force or (stride > 0 and self.tick % stride == 0)
        do_lenders = force or (lender_stride > 0 and self.tick % lender_stride == 0)
        if not do_pool and not do_lenders:
            return
        pool = self.pool
        f = cfg.to_float

        if do_pool:
            self.metrics.add_pool({
                "tick": self.tick,
                "timestamp": self.env.now,
                "total_assets": f(pool.total_assets()),
                "total_idle": f(pool.total_idle),
                "total_debt": f(pool.total_debt),
                "total_supply": f(pool.total_supply),
                "price_per_share": f(pool.price_per_share()),
                "locked_profit": f(pool.locked_profit_now()),
                "debt_ratio": pool.debt_ratio,
                "emergency_shutdown": pool.emergency_shutdown,
                "deposited_tick": f(self._deposited_tick),
                "withdrawn_tick": f(self._withdrawn_tick),
                "harvests_tick": self._harvests_tick,
                "tends_tick": self._tends_tick,
                "harvests_total": self._harvests_total,
                "failures_total": sum(self.failures.values()),
                "invariant_breaches": len(self.invariant_breaches),
            })
            rows = []
            for s in self.strategies():
                params = pool.strategies(s)
                apr = 0.0
                if isinstance(s.variant, Allocator):
                    apr = s.variant.estimated_apr() / WAD
                rows.append({
                    "tick": self.tick,
                    "strategy": s.name,
                    "kind": s.kind,
                    "debt_ratio": params.debt_ratio,
                    "total_debt": f(params.total_debt),
                    "total_gain": f(params.total_gain),
                    "total_loss": f(params.total_loss),
                    "estimated_assets": f(s.estimated_total_assets()),
                    "apr": apr,
                    "emergency_exit": s.emergency_exit,
                    "do_health_check": s.state.do_health_check,
                    "staked_balance": f(s.variant.st_balance()) if isinstance(s.variant, LiquidStaking) else 0.0,
                })
            self.metrics.add_strategy_rows(rows)

        if do_lenders:
            rows = []
            for s in self.strategies():
                if not isinstance(s.variant, Allocator):
                    continue
                for status in s.variant.lend_statuses():
                    rows.append({
                        "tick": self.tick,
                        "strategy": s.name,
                        "lender": status.name,
                        "nav": f(status.assets),
                        "apr": status.rate / WAD,
                    })
            self.metrics.add_lender_rows(rows)

    def kpis(self) -> Dict[str, float]:
        pool = self.pool
        f = self.cfg.to_float
        return {
            "total_assets": f(pool.total_assets()),
            "total_idle": f(pool.total_idle),
            "total_debt": f(pool.total_debt),
            "price_per_share": f(pool.price_per_share()),
            "depositors": float(sum(1 for d in self.depositors if pool.balance_of(d) > 0)),
            "harvests": float(self._harvests_total),
            "failures": float(sum(self.failures.values())),
        }
