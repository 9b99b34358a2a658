from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Optional, Tuple, Type, Union, TYPE_CHECKING
import logging

from .core import (
    Component, Environment, Token, transactional, ZERO_ADDRESS,
    InvariantViolation, StateError, HealthCheckFailed,
)
from .roles import Role, authorize
from .healthcheck import CommonHealthCheck
from .markets import PriceOracle

if TYPE_CHECKING:
    from .pool import Pool

logger = logging.getLogger(__name__)

API_VERSION = "0.4.3"
DAY = 86_400


class Liquidation(NamedTuple):
    freed: int
    loss: int


class HarvestReturn(NamedTuple):
    profit: int
    loss: int
    debt_payment: int


@dataclass
class StrategyState:
    """Persisted strategy storage, kept apart from the behaviour operating on it."""

    api_version: str = API_VERSION
    pool: Optional["Pool"] = None
    strategist: str = ZERO_ADDRESS
    keeper: str = ZERO_ADDRESS
    rewards: str = ZERO_ADDRESS
    emergency_exit: bool = False
    do_health_check: bool = False
    health_check: Optional[CommonHealthCheck] = None
    min_report_delay: int = 0
    max_report_delay: int = 30 * DAY
    profit_factor: int = 100
    debt_threshold: int = 0
    metadata_uri: str = ""
    price_oracle: Optional[PriceOracle] = None
    initialized: bool = False


class StrategyVariant(Component):
    """Position logic plugged into a ``Strategy``.

    The strategy owns the funds; the variant moves them on its behalf and
    answers the position hooks used by harvest, tend, withdraw and migrate.
    """

    kind = "base"
    address_prefix = "position"

    def __init__(self, strategy: "Strategy") -> None:
        super().__init__(strategy.env, address=f"{strategy.address}_{self.kind}")
        self.strategy = strategy

    @property
    def want(self) -> Token:
        return self.strategy.want

    @property
    def pool(self) -> "Pool":
        return self.strategy.pool

    def loose(self) -> int:
        return self.want.balance_of(self.strategy.address)

    def total_debt(self) -> int:
        return self.pool.strategies(self.strategy).total_debt

    # -- hooks ---------------------------------------------------------
    def invested_assets(self) -> int:
        return 0

    def estimated_total_assets(self) -> int:
        return self.loose() + self.invested_assets()

    def free(self, amount: int) -> int:
        """Pull up to ``amount`` out of the position into loose want."""
        return 0

    def prepare_return(self, debt_outstanding: int) -> HarvestReturn:
        return self._settle_returns(debt_outstanding)

    def adjust_position(self, debt_outstanding: int) -> None:
        return None

    def liquidate_position(self, amount: int) -> Liquidation:
        loose = self.loose()
        if loose < amount:
            self.free(amount - loose)
            loose = self.loose()
        freed = min(loose, amount)
        return Liquidation(freed, self._unrecoverable(amount - freed))

    def liquidate_all_positions(self) -> int:
        self.free(self.invested_assets())
        return self.loose()

    def prepare_migration(self, new_strategy: "Strategy") -> None:
        return None

    def protected_tokens(self) -> List[Token]:
        return []

    def tend_trigger(self, call_cost: int) -> bool:
        return False

    # -- shared accounting ---------------------------------------------
    def _unrecoverable(self, shortfall: int) -> int:
        if shortfall <= 0:
            return 0
        deficit = self.total_debt() - self.estimated_total_assets()
        return min(shortfall, max(0, deficit))

    def _settle_returns(self, debt_outstanding: int) -> HarvestReturn:
        """Profit first, then as much of ``debt_outstanding`` as can be freed."""
        profit = loss = debt_payment = 0
        invested = self.invested_assets()
        loose = self.loose()

        if invested == 0:
            return HarvestReturn(0, 0, min(debt_outstanding, loose))

        total = loose + invested
        debt = self.total_debt()
        if total > debt:
            profit = total - debt
            to_free = profit + debt_outstanding
        else:
            loss = debt - total
            to_free = debt_outstanding

        if to_free > 0 and loose < to_free:
            self.free(to_free - loose)
            new_loose = self.loose()
            if new_loose < to_free:
                if profit > new_loose:
                    profit = new_loose
                    debt_payment = 0
                else:
                    debt_payment = min(new_loose - profit, debt_outstanding)
            else:
                debt_payment = debt_outstanding
        else:
            debt_payment = debt_outstanding
        return HarvestReturn(profit, loss, debt_payment)


class Strategy(Component):
    """Borrows from one pool, deploys through its variant and reports back on harvest."""

    address_prefix = "strategy"

    def __init__(
        self,
        env: Environment,
        variant: Type[StrategyVariant],
        pool: Optional["Pool"],
        strategist: str,
        rewards: Optional[str] = None,
        keeper: Optional[str] = None,
        name: Optional[str] = None,
        **params,
    ) -> None:
        super().__init__(env)
        self.state = StrategyState()
        self.kind = variant.kind
        self.name = name or f"Strategy{variant.kind.title()}"
        self.initialize(pool, strategist, rewards or strategist, keeper or strategist)
        self.variant = variant(self, **params)

    def initialize(self, pool: Optional["Pool"], strategist: str, rewards: str, keeper: str) -> None:
        if self.state.initialized:
            raise StateError("already_initialized", f"{self.address} is already bound to a pool")
        if pool is None:
            raise InvariantViolation("zero_address", "strategy needs a pool")
        for who in (strategist, rewards, keeper):
            if not who:
                raise InvariantViolation("zero_address")
        self.state.pool = pool
        self.state.strategist = strategist
        self.state.rewards = rewards
        self.state.keeper = keeper
        self.state.initialized = True

    # -----------------------------
    # Accessors
    # -----------------------------
    @property
    def pool(self) -> "Pool":
        return self.state.pool

    @property
    def want(self) -> Token:
        return self.state.pool.token

    @property
    def api_version(self) -> str:
        return self.state.api_version

    @property
    def emergency_exit(self) -> bool:
        return self.state.emergency_exit

    @property
    def strategist(self) -> str:
        return self.state.strategist

    @property
    def keeper(self) -> str:
        return self.state.keeper

    @property
    def rewards(self) -> str:
        return self.state.rewards

    def role_holders(self) -> Dict[Role, Tuple[str, ...]]:
        pool = self.state.pool
        return {
            "governance": (pool.governance,),
            "management": (pool.management,),
            "guardian": (pool.guardian,),
            "strategist": (self.state.strategist,),
            "keeper": (self.state.keeper,),
            "pool": (pool.address,),
            "strategy": (self.address,),
        }

    # -----------------------------
    # Views
    # -----------------------------
    def estimated_total_assets(self) -> int:
        return self.variant.estimated_total_assets()

    def delegated_assets(self) -> int:
        return 0

    def is_active(self) -> bool:
        return self.pool.strategies(self).debt_ratio > 0 or self.estimated_total_assets() > 0

    def estimated_profit(self) -> int:
        debt = self.pool.strategies(self).total_debt
        return max(0, self.estimated_total_assets() - debt)

    def call_cost_in_want(self, call_cost: int) -> int:
        oracle = self.state.price_oracle
        if oracle is None:
            return int(call_cost)
        return oracle.convert(call_cost)

    def harvest_trigger(self, call_cost: int) -> bool:
        """Whether a keeper should harvest now given ``call_cost`` in native units."""
        params = self.pool.strategies(self)
        if params.activation == 0:
            return False
        if self.state.emergency_exit:
            return True

        elapsed = self.env.now - params.last_report
        if elapsed < self.state.min_report_delay:
            return False
        if elapsed >= self.state.max_report_delay:
            return True

        if self.pool.debt_outstanding(self) > self.state.debt_threshold:
            return True

        total = self.estimated_total_assets()
        if total + self.state.debt_threshold < params.total_debt:
            return True

        profit = total - params.total_debt if total > params.total_debt else 0
        credit = self.pool.credit_available(self)
        return self.state.profit_factor * self.call_cost_in_want(call_cost) < credit + profit

    def tend_trigger(self, call_cost: int) -> bool:
        return self.variant.tend_trigger(call_cost)

    def protected_tokens(self) -> List[Token]:
        return self.variant.protected_tokens()

    # -----------------------------
    # Keeper operations
    # -----------------------------
    def harvest(self, *, sender: str) -> HarvestReturn:
        """Settle with the pool and redeploy.

        A health check rejection aborts the harvest and leaves checks
        switched off until a manager turns them back on.
        """
        try:
            return self._harvest(sender=sender)
        except HealthCheckFailed:
            if not self.env.in_transaction:
                self.state.do_health_check = False
                logger.warning("strategy %s health check rejected harvest; checks disabled", self.address)
                self.env.emit("HEALTH_CHECK_DISABLED", self.address, self.pool.address)
            raise

    @transactional
    def _harvest(self, *, sender: str) -> HarvestReturn:
        authorize(self, "harvest", sender)
        pool = self.pool
        profit = loss = 0
        debt_outstanding = pool.debt_outstanding(self)

        if self.state.emergency_exit or pool.emergency_shutdown:
            amount_freed = self.variant.liquidate_all_positions()
            if amount_freed < debt_outstanding:
                loss = debt_outstanding - amount_freed
            elif amount_freed > debt_outstanding:
                profit = amount_freed - debt_outstanding
            debt_payment = debt_outstanding - loss
        else:
            profit, loss, debt_payment = self.variant.prepare_return(debt_outstanding)

        total_debt = pool.strategies(self).total_debt
        hc = self.state.health_check
        if self.state.do_health_check and hc is not None:
            if not hc.check(self, profit, loss, debt_payment, debt_outstanding, total_debt):
                raise HealthCheckFailed(
                    "health_check",
                    f"profit={profit} loss={loss} rejected against debt {total_debt}",
                )

        remaining = pool.report(profit, loss, debt_payment, sender=self.address)
        self.variant.adjust_position(remaining)

        self.env.emit("HARVESTED", self.address, pool.address, profit,
                      profit=profit, loss=loss, debt_payment=debt_payment, debt_outstanding=remaining)
        return HarvestReturn(profit, loss, debt_payment)

    @transactional
    def tend(self, *, sender: str) -> None:
        authorize(self, "tend", sender)
        self.variant.adjust_position(self.pool.debt_outstanding(self))

    # -----------------------------
    # Pool-only operations
    # -----------------------------
    @transactional
    def withdraw(self, amount: int, *, sender: str) -> Liquidation:
        authorize(self, "strategy_withdraw", sender)
        freed, loss = self.variant.liquidate_position(int(amount))
        if freed > 0:
            self.want.transfer(self.pool.address, freed, sender=self.address)
        self.env.emit("LIQUIDATE_POSITION", self.address, self.pool.address, freed, requested=amount, loss=loss)
        return Liquidation(freed, loss)

    @transactional
    def migrate(self, new_strategy: "Strategy", *, sender: str) -> None:
        authorize(self, "migrate", sender)
        if new_strategy.pool is not self.pool:
            raise StateError("pool_mismatch", f"{new_strategy.address} is bound to another pool")
        self.variant.prepare_migration(new_strategy)
        self.env.emit("PREPARE_MIGRATION", self.address, self.pool.address, None, new_strategy=new_strategy.address)
        balance = self.want.balance_of(self.address)
        if balance > 0:
            self.want.transfer(new_strategy.address, balance, sender=self.address)

    # -----------------------------
    # Emergency and administration
    # -----------------------------
    @transactional
    def set_emergency_exit(self, *, sender: str) -> None:
        authorize(self, "set_emergency_exit", sender)
        self.state.emergency_exit = True
        self.pool.revoke_strategy(self, sender=self.address)
        logger.info("strategy %s entered emergency exit", self.address)
        self.env.emit("EMERGENCY_EXIT", sender, self.pool.address, None, strategy=self.address)

    @transactional
    def set_strategist(self, strategist: str, *, sender: str) -> None:
        authorize(self, "set_strategist", sender)
        if not strategist:
            raise InvariantViolation("zero_address")
        self.state.strategist = strategist

    @transactional
    def set_keeper(self, keeper: str, *, sender: str) -> None:
        authorize(self, "set_keeper", sender)
        if not keeper:
            raise InvariantViolation("zero_address")
        self.state.keeper = keeper

    @transactional
    def set_rewards(self, rewards: str, *, sender: str) -> None:
        authorize(self, "set_rewards_address", sender)
        if not rewards:
            raise InvariantViolation("zero_address")
        self.state.rewards = rewards

    @transactional
    def set_min_report_delay(self, delay: int, *, sender: str) -> None:
        authorize(self, "set_min_report_delay", sender)
        self.state.min_report_delay = int(delay)

    @transactional
    def set_max_report_delay(self, delay: int, *, sender: str) -> None:
        authorize(self, "set_max_report_delay", sender)
        self.state.max_report_delay = int(delay)

    @transactional
    def set_profit_factor(self, factor: int, *, sender: str) -> None:
        authorize(self, "set_profit_factor", sender)
        self.state.profit_factor = int(factor)

    @transactional
    def set_debt_threshold(self, threshold: int, *, sender: str) -> None:
        authorize(self, "set_debt_threshold", sender)
        self.state.debt_threshold = int(threshold)

    @transactional
    def set_metadata_uri(self, uri: str, *, sender: str) -> None:
        authorize(self, "set_metadata_uri", sender)
        self.state.metadata_uri = uri

    @transactional
    def set_price_oracle(self, oracle: Optional[PriceOracle], *, sender: str) -> None:
        authorize(self, "set_price_oracle", sender)
        self.state.price_oracle = oracle

    @transactional
    def set_health_check(self, health_check: Optional[CommonHealthCheck], *, sender: str) -> None:
        authorize(self, "set_health_check", sender)
        self.state.health_check = health_check

    @transactional
    def set_do_health_check(self, enabled: bool, *, sender: str) -> None:
        authorize(self, "set_do_health_check", sender)
        self.state.do_health_check = bool(enabled)

    @transactional
    def sweep(self, token: Union[Token, "Pool"], *, sender: str) -> int:
        authorize(self, "strategy_sweep", sender)
        if token is self.want:
            raise InvariantViolation("protected_want")
        if token is self.pool:
            raise InvariantViolation("protected_pool")
        if any(token is t for t in self.protected_tokens()):
            raise InvariantViolation("protected_token")
        amount = token.balance_of(self.address)
        if amount > 0:
            token.transfer(self.pool.governance, amount, sender=self.address)
        self.env.emit("SWEEP", sender, self.pool.address, amount, token=token.symbol, strategy=self.address)
        return amount
