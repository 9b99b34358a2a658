from __future__ import annotations
from typing import Dict, Tuple, TYPE_CHECKING
import logging

from .core import Component, Token, transactional, InvariantViolation, InsufficientLiquidity
from .roles import Role, authorize
from .markets import LendingMarket

if TYPE_CHECKING:
    from .strategy import Strategy

logger = logging.getLogger(__name__)


class GenericLender(Component):
    """One yield venue docked to a single lending strategy.

    Subclasses provide the venue side (``underlying_balance``, ``apr``,
    ``apr_after_deposit`` and the two venue transfers); funds always come
    from and go back to the owning strategy.
    """

    address_prefix = "lender"

    def __init__(self, strategy: "Strategy", name: str, dust: int = 0) -> None:
        super().__init__(strategy.env)
        self.strategy = strategy
        self.name = name
        self.want: Token = strategy.want
        self.dust = dust

    def role_holders(self) -> Dict[Role, Tuple[str, ...]]:
        holders = dict(self.strategy.role_holders())
        holders["strategy"] = (self.strategy.address,)
        return holders

    # -- venue side ----------------------------------------------------
    def underlying_balance(self) -> int:
        raise NotImplementedError

    def apr(self) -> int:
        raise NotImplementedError

    def apr_after_deposit(self, amount: int) -> int:
        raise NotImplementedError

    def _venue_deposit(self, amount: int) -> None:
        raise NotImplementedError

    def _venue_withdraw(self, amount: int) -> int:
        raise NotImplementedError

    def _venue_liquidity(self) -> int:
        raise NotImplementedError

    # -- views ---------------------------------------------------------
    def nav(self) -> int:
        return self.want.balance_of(self.address) + self.underlying_balance()

    def weighted_apr(self) -> int:
        return self.nav() * self.apr()

    def has_assets(self) -> bool:
        return self.nav() > self.dust

    # -- strategy operations -------------------------------------------
    @transactional
    def deposit(self, *, sender: str) -> int:
        authorize(self, "lender_deposit", sender)
        amount = self.want.balance_of(self.address)
        if amount > 0:
            self._venue_deposit(amount)
        return amount

    def _withdraw(self, amount: int) -> int:
        loose = self.want.balance_of(self.address)
        invested = self.underlying_balance()
        amount = min(amount, loose + invested)
        if amount > loose:
            take = min(amount - loose, invested, self._venue_liquidity())
            if take > 0:
                self._venue_withdraw(take)
        loose = self.want.balance_of(self.address)
        sent = min(amount, loose)
        if sent > 0:
            self.want.transfer(self.strategy.address, sent, sender=self.address)
        return sent

    @transactional
    def withdraw(self, amount: int, *, sender: str) -> int:
        """Send up to ``amount`` back to the strategy; less when the venue is short of cash."""
        authorize(self, "lender_withdraw", sender)
        return self._withdraw(int(amount))

    @transactional
    def withdraw_all(self, *, sender: str) -> bool:
        authorize(self, "lender_withdraw", sender)
        invested = self.nav()
        returned = self._withdraw(invested)
        return returned >= invested

    @transactional
    def emergency_withdraw(self, amount: int, *, sender: str) -> int:
        authorize(self, "lender_emergency_withdraw", sender)
        taken = self._venue_withdraw(int(amount))
        governance = self.strategy.pool.governance
        balance = self.want.balance_of(self.address)
        self.want.transfer(governance, balance, sender=self.address)
        logger.info("lender %s emergency withdrew %d to %s", self.name, balance, governance)
        return taken

    @transactional
    def set_dust(self, dust: int, *, sender: str) -> None:
        authorize(self, "lender_set_dust", sender)
        self.dust = int(dust)

    @transactional
    def sweep(self, token: Token, *, sender: str) -> int:
        authorize(self, "lender_sweep", sender)
        if token is self.want:
            raise InvariantViolation("protected_want")
        amount = token.balance_of(self.address)
        if amount > 0:
            token.transfer(self.strategy.pool.governance, amount, sender=self.address)
        return amount


class LendingMarketLender(GenericLender):
    """Supplies to a ``LendingMarket``."""

    def __init__(self, strategy: "Strategy", name: str, market: LendingMarket, dust: int = 0) -> None:
        if market.want is not strategy.want:
            raise InvariantViolation("want_mismatch", f"{market.name} does not trade {strategy.want.symbol}")
        super().__init__(strategy, name, dust)
        self.market = market

    def underlying_balance(self) -> int:
        return self.market.balance_of(self.address)

    def apr(self) -> int:
        return self.market.apr

    def apr_after_deposit(self, amount: int) -> int:
        return self.market.apr_after_deposit(amount)

    def _venue_deposit(self, amount: int) -> None:
        self.market.deposit(amount, sender=self.address)

    def _venue_withdraw(self, amount: int) -> int:
        if amount > self.market.liquidity():
            raise InsufficientLiquidity("market_illiquid", f"{self.market.name} cannot pay {amount}")
        return self.market.withdraw(amount, sender=self.address)

    def _venue_liquidity(self) -> int:
        return self.market.liquidity()
