from __future__ import annotations
from typing import Dict, List, Optional, Type
import logging

from .core import Environment, Token, MAX_BPS, UNLIMITED, transactional, InvariantViolation
from .roles import authorize
from .markets import FarmPool, StakingPool, StableSwapPool
from .strategy import Strategy, StrategyVariant, HarvestReturn
from .allocator import Allocator
from .pool import Pool

logger = logging.getLogger(__name__)


class HoldPosition(StrategyVariant):
    """Keeps everything loose; anything above debt is profit."""

    kind = "hold"

    def prepare_return(self, debt_outstanding: int) -> HarvestReturn:
        loose = self.loose()
        debt = self.total_debt()
        profit = loss = 0
        if loose > debt:
            profit = loose - debt
        else:
            loss = debt - loose
        debt_payment = min(debt_outstanding, loose - profit)
        return HarvestReturn(profit, loss, debt_payment)


class DirectDeposit(StrategyVariant):
    """Stakes want in a single farm whose rewards are paid in want."""

    kind = "direct"

    def __init__(self, strategy: Strategy, farm: FarmPool, withdrawal_threshold: int = 0) -> None:
        if farm.want is not strategy.want:
            raise InvariantViolation("want_mismatch", f"{farm.name} does not stake {strategy.want.symbol}")
        super().__init__(strategy)
        self.farm = farm
        self.withdrawal_threshold = withdrawal_threshold

    def invested_assets(self) -> int:
        owner = self.strategy.address
        return self.farm.balance_of(owner) + self.farm.earned(owner)

    def free(self, amount: int) -> int:
        if amount < self.withdrawal_threshold:
            return 0
        owner = self.strategy.address
        claimed = self.farm.claim(sender=owner)
        rest = max(0, amount - claimed)
        withdrawn = self.farm.withdraw(rest, sender=owner) if rest > 0 else 0
        return claimed + withdrawn

    def adjust_position(self, debt_outstanding: int) -> None:
        if self.strategy.emergency_exit:
            return
        surplus = self.loose() - debt_outstanding
        if surplus > 0:
            self.farm.stake(surplus, sender=self.strategy.address)

    def liquidate_all_positions(self) -> int:
        owner = self.strategy.address
        self.farm.claim(sender=owner)
        self.farm.withdraw(self.farm.balance_of(owner), sender=owner)
        return self.loose()

    @transactional
    def set_farm_pool(self, farm: FarmPool, *, sender: str) -> None:
        """Move the whole position into ``farm``."""
        authorize(self.strategy, "set_farm_pool", sender)
        if farm.want is not self.want:
            raise InvariantViolation("want_mismatch")
        owner = self.strategy.address
        self.farm.claim(sender=owner)
        self.farm.withdraw(self.farm.balance_of(owner), sender=owner)
        self.farm = farm
        if not self.strategy.emergency_exit:
            self.farm.stake(self.loose(), sender=owner)
        logger.info("strategy %s moved to farm %s", owner, farm.name)

    @transactional
    def set_withdrawal_threshold(self, threshold: int, *, sender: str) -> None:
        authorize(self.strategy, "set_withdrawal_threshold", sender)
        self.withdrawal_threshold = int(threshold)


class LiquidStaking(StrategyVariant):
    """Accumulates a liquid staking token, valued at a discount to want.

    Want is staked 1:1 or bought on the swap pool when that yields more.
    Exits always go through the swap pool with a slippage floor.
    """

    kind = "staking"

    def __init__(
        self,
        strategy: Strategy,
        staking: StakingPool,
        swap: StableSwapPool,
        peg: int = 100,
        slippage_protection_out: int = 50,
        max_single_trade: int = UNLIMITED,
        report_loss: bool = False,
        dont_invest: bool = False,
    ) -> None:
        if staking.want is not strategy.want or swap.want is not strategy.want:
            raise InvariantViolation("want_mismatch")
        super().__init__(strategy)
        self.staking = staking
        self.swap = swap
        self.st_token: Token = staking.staked
        self.peg = peg
        self.slippage_protection_out = slippage_protection_out
        self.max_single_trade = max_single_trade
        self.report_loss = report_loss
        self.dont_invest = dont_invest

    def st_balance(self) -> int:
        return self.st_token.balance_of(self.strategy.address)

    def invested_assets(self) -> int:
        return self.st_balance() * (MAX_BPS - self.peg) // MAX_BPS

    def protected_tokens(self) -> List[Token]:
        return [self.st_token]

    # -- trading -------------------------------------------------------
    def _invest(self, amount: int) -> int:
        if amount <= 0:
            return 0
        owner = self.strategy.address
        if self.swap.get_dy(self.want, amount) > amount:
            return self.swap.exchange(self.want, amount, amount, sender=owner)
        return self.staking.submit(amount, sender=owner)

    def _divest(self, amount: int) -> int:
        amount = min(amount, self.st_balance())
        if amount <= 0:
            return 0
        min_out = amount * (MAX_BPS - self.slippage_protection_out) // MAX_BPS
        return self.swap.exchange(self.st_token, amount, min_out, sender=self.strategy.address)

    def free(self, amount: int) -> int:
        return self._divest(min(amount, self.max_single_trade))

    # -- hooks ---------------------------------------------------------
    def prepare_return(self, debt_outstanding: int) -> HarvestReturn:
        profit = loss = debt_payment = 0
        total = self.estimated_total_assets()
        debt = self.total_debt()
        want_balance = self.loose()

        if total >= debt:
            profit = total - debt
            to_withdraw = profit + debt_outstanding
            if to_withdraw > want_balance:
                will_withdraw = min(self.max_single_trade, to_withdraw - want_balance)
                withdrawn = self._divest(will_withdraw)
                if withdrawn < will_withdraw:
                    loss = will_withdraw - withdrawn

            want_balance = self.loose()
            # slippage eats into profit before it is booked as a loss
            if profit >= loss:
                profit -= loss
                loss = 0
            else:
                loss -= profit
                profit = 0

            if want_balance < profit:
                profit = want_balance
            elif want_balance < profit + debt_outstanding:
                debt_payment = want_balance - profit
            else:
                debt_payment = debt_outstanding
        else:
            if self.report_loss:
                loss = debt - total
            if debt_outstanding > want_balance:
                self._divest(min(self.max_single_trade, debt_outstanding - want_balance))
            debt_payment = min(debt_outstanding, self.loose())
        return HarvestReturn(profit, loss, debt_payment)

    def adjust_position(self, debt_outstanding: int) -> None:
        if self.dont_invest or self.strategy.emergency_exit:
            return
        self._invest(self.loose() - debt_outstanding)

    def liquidate_all_positions(self) -> int:
        self._divest(self.st_balance())
        return self.loose()

    def prepare_migration(self, new_strategy: Strategy) -> None:
        balance = self.st_balance()
        if balance > 0:
            self.st_token.transfer(new_strategy.address, balance, sender=self.strategy.address)

    # -- manual control ------------------------------------------------
    @transactional
    def invest(self, amount: int, *, sender: str) -> int:
        authorize(self.strategy, "invest", sender)
        if amount > self.loose():
            raise InvariantViolation("not_enough_want")
        return self._invest(amount)

    @transactional
    def divest(self, amount: int, *, sender: str) -> int:
        authorize(self.strategy, "divest", sender)
        return self._divest(amount)

    @transactional
    def set_peg(self, peg: int, *, sender: str) -> None:
        authorize(self.strategy, "set_staking_params", sender)
        if peg > 1_000:
            raise InvariantViolation("peg_too_high")
        self.peg = peg

    @transactional
    def set_slippage_protection_out(self, slippage: int, *, sender: str) -> None:
        authorize(self.strategy, "set_staking_params", sender)
        if slippage > MAX_BPS:
            raise InvariantViolation("slippage_too_high")
        self.slippage_protection_out = slippage

    @transactional
    def set_max_single_trade(self, amount: int, *, sender: str) -> None:
        authorize(self.strategy, "set_staking_params", sender)
        self.max_single_trade = int(amount)

    @transactional
    def set_report_loss(self, report_loss: bool, *, sender: str) -> None:
        authorize(self.strategy, "set_staking_params", sender)
        self.report_loss = bool(report_loss)

    @transactional
    def set_dont_invest(self, dont_invest: bool, *, sender: str) -> None:
        authorize(self.strategy, "set_staking_params", sender)
        self.dont_invest = bool(dont_invest)


STRATEGY_KINDS: Dict[str, Type[StrategyVariant]] = {
    HoldPosition.kind: HoldPosition,
    DirectDeposit.kind: DirectDeposit,
    LiquidStaking.kind: LiquidStaking,
    Allocator.kind: Allocator,
}


def deploy_strategy(
    env: Environment,
    pool: Pool,
    kind: str,
    strategist: str,
    rewards: Optional[str] = None,
    keeper: Optional[str] = None,
    name: Optional[str] = None,
    **params,
) -> Strategy:
    try:
        variant = STRATEGY_KINDS[kind]
    except KeyError:
        raise InvariantViolation("unknown_kind", f"no strategy kind {kind!r}") from None
    return Strategy(env, variant, pool, strategist, rewards=rewards, keeper=keeper, name=name, **params)
