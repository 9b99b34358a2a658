from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional
import logging

from .core import (
    Component, Environment, Token, WAD, MAX_BPS, SECONDS_PER_YEAR,
    InsufficientLiquidity, InvariantViolation,
)

logger = logging.getLogger(__name__)


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


# -----------------------------
# Lending market (Aave-like)
# -----------------------------
class LendingMarket(Component):
    """Supply side of a money market.

    Suppliers hold scaled shares; their claim is ``shares * index / WAD``.
    The index grows linearly between touches at ``apr`` (WAD, annual) so
    repeated touches compound. Withdrawals are limited to the cash the
    market holds; interest is paid out of cash seeded by borrowers.
    """

    address_prefix = "market"

    def __init__(self, env: Environment, want: Token, name: str, apr: int) -> None:
        super().__init__(env)
        self.want = want
        self.name = name
        self.apr = int(apr)
        self.apr_after_deposit_override: Optional[int] = None
        self.index = WAD
        self.last_update = env.now
        self.shares: Dict[str, int] = {}
        self.total_shares = 0
        self.borrower = f"{self.address}_borrowers"

    def _current_index(self) -> int:
        elapsed = self.env.now - self.last_update
        if elapsed <= 0 or self.apr == 0:
            return self.index
        return self.index + self.index * self.apr * elapsed // (WAD * SECONDS_PER_YEAR)

    def accrue(self) -> None:
        self.index = self._current_index()
        self.last_update = self.env.now

    def balance_of(self, account: str) -> int:
        return self.shares.get(account, 0) * self._current_index() // WAD

    def total_supplied(self) -> int:
        return self.total_shares * self._current_index() // WAD

    def liquidity(self) -> int:
        return self.want.balance_of(self.address)

    def apr_after_deposit(self, amount: int) -> int:
        if self.apr_after_deposit_override is not None:
            return self.apr_after_deposit_override
        return self.apr

    def set_apr(self, apr: int) -> None:
        self.accrue()
        self.apr = max(0, int(apr))

    def set_apr_after_deposit(self, apr: Optional[int]) -> None:
        self.apr_after_deposit_override = apr

    def seed_liquidity(self, amount: int) -> None:
        self.want.mint(self.address, amount)

    def deposit(self, amount: int, *, sender: str) -> int:
        if amount <= 0:
            return 0
        self.accrue()
        self.want.transfer(self.address, amount, sender=sender)
        minted = amount * WAD // self.index
        self.shares[sender] = self.shares.get(sender, 0) + minted
        self.total_shares += minted
        return minted

    def withdraw(self, amount: int, *, sender: str) -> int:
        self.accrue()
        owned = self.shares.get(sender, 0)
        claim = owned * self.index // WAD
        amount = min(int(amount), claim)
        if amount <= 0:
            return 0
        if amount > self.liquidity():
            raise InsufficientLiquidity("market_illiquid", f"{self.name} holds {self.liquidity()}, asked {amount}")
        burned = min(owned, _ceil_div(amount * WAD, self.index))
        if amount == claim:
            burned = owned
        self.shares[sender] = owned - burned
        self.total_shares -= burned
        self.want.transfer(sender, amount, sender=self.address)
        return amount

    # -- shocks --------------------------------------------------------
    def slash(self, account: str, amount: int) -> int:
        """Write down ``account``'s claim (exploit or bad debt)."""
        self.accrue()
        owned = self.shares.get(account, 0)
        burned = min(owned, _ceil_div(int(amount) * WAD, self.index))
        self.shares[account] = owned - burned
        self.total_shares -= burned
        logger.info("market %s slashed %s by %d", self.name, account, burned * self.index // WAD)
        return burned * self.index // WAD

    def drain(self, amount: int) -> int:
        """Lend cash out so suppliers cannot withdraw it."""
        take = min(int(amount), self.liquidity())
        if take > 0:
            self.want.transfer(self.borrower, take, sender=self.address)
        return take

    def repay(self, amount: Optional[int] = None) -> int:
        out = self.want.balance_of(self.borrower)
        take = out if amount is None else min(int(amount), out)
        if take > 0:
            self.want.transfer(self.address, take, sender=self.borrower)
        return take


# -----------------------------
# Farm pool
# -----------------------------
class FarmPool(Component):
    """Single-asset staking farm paying rewards in the staked asset.

    Rewards accrue per second at ``reward_apr`` (WAD, annual) on each
    account's stake and are paid from the farm's reward reserve.
    """

    address_prefix = "farm"

    def __init__(self, env: Environment, want: Token, name: str, reward_apr: int) -> None:
        super().__init__(env)
        self.want = want
        self.name = name
        self.reward_apr = int(reward_apr)
        self.staked: Dict[str, int] = {}
        self.total_staked = 0
        self.rewards: Dict[str, int] = {}
        self.last_update: Dict[str, int] = {}

    def _pending(self, account: str) -> int:
        stake = self.staked.get(account, 0)
        since = self.last_update.get(account, self.env.now)
        elapsed = max(0, self.env.now - since)
        return stake * self.reward_apr * elapsed // (WAD * SECONDS_PER_YEAR)

    def _checkpoint(self, account: str) -> None:
        self.rewards[account] = self.rewards.get(account, 0) + self._pending(account)
        self.last_update[account] = self.env.now

    def reserve(self) -> int:
        return self.want.balance_of(self.address) - self.total_staked

    def fund(self, amount: int) -> None:
        self.want.mint(self.address, amount)

    def set_reward_apr(self, reward_apr: int) -> None:
        for account in list(self.staked):
            self._checkpoint(account)
        self.reward_apr = max(0, int(reward_apr))

    def balance_of(self, account: str) -> int:
        return self.staked.get(account, 0)

    def earned(self, account: str) -> int:
        return min(self.rewards.get(account, 0) + self._pending(account), max(0, self.reserve()))

    def stake(self, amount: int, *, sender: str) -> None:
        if amount <= 0:
            return
        self._checkpoint(sender)
        self.want.transfer(self.address, amount, sender=sender)
        self.staked[sender] = self.staked.get(sender, 0) + amount
        self.total_staked += amount

    def withdraw(self, amount: int, *, sender: str) -> int:
        self._checkpoint(sender)
        amount = min(int(amount), self.staked.get(sender, 0))
        if amount <= 0:
            return 0
        self.staked[sender] -= amount
        self.total_staked -= amount
        self.want.transfer(sender, amount, sender=self.address)
        return amount

    def claim(self, *, sender: str) -> int:
        self._checkpoint(sender)
        paid = min(self.rewards.get(sender, 0), max(0, self.reserve()))
        if paid > 0:
            self.rewards[sender] -= paid
            self.want.transfer(sender, paid, sender=self.address)
        return paid


# -----------------------------
# Liquid staking + stable swap
# -----------------------------
class StakingPool(Component):
    """1:1 staking of ``want`` into a rebasing staked token."""

    address_prefix = "staking"

    def __init__(self, env: Environment, want: Token, staked: Token) -> None:
        super().__init__(env)
        self.want = want
        self.staked = staked
        self.paused = False

    def submit(self, amount: int, *, sender: str) -> int:
        if self.paused:
            raise InvariantViolation("staking_paused")
        self.want.transfer(self.address, amount, sender=sender)
        self.staked.mint(sender, amount)
        return amount

    def rebase(self, rate_bps: int) -> int:
        """Grow every staked balance by ``rate_bps``; returns the amount minted."""
        minted = 0
        for holder, balance in list(self.staked.balances.items()):
            gain = balance * rate_bps // MAX_BPS
            if gain > 0:
                self.staked.mint(holder, gain)
                minted += gain
        return minted


class StableSwapPool(Component):
    """Two-asset swap quoting staked tokens at ``price`` (want per staked, WAD)."""

    address_prefix = "swap"

    def __init__(self, env: Environment, want: Token, staked: Token, price: int = WAD, fee_bps: int = 4) -> None:
        super().__init__(env)
        self.want = want
        self.staked = staked
        self.price = int(price)
        self.fee_bps = int(fee_bps)

    def seed(self, want_amount: int, staked_amount: int) -> None:
        self.want.mint(self.address, want_amount)
        self.staked.mint(self.address, staked_amount)

    def set_price(self, price: int) -> None:
        self.price = max(0, int(price))

    def _token_out(self, token_in: Token) -> Token:
        if token_in is self.want:
            return self.staked
        if token_in is self.staked:
            return self.want
        raise InvariantViolation("unknown_token", f"{token_in.symbol} is not traded here")

    def get_dy(self, token_in: Token, dx: int) -> int:
        if dx <= 0 or self.price == 0:
            return 0
        if token_in is self.want:
            gross = dx * WAD // self.price
        else:
            self._token_out(token_in)
            gross = dx * self.price // WAD
        dy = gross - gross * self.fee_bps // MAX_BPS
        return min(dy, self._token_out(token_in).balance_of(self.address))

    def exchange(self, token_in: Token, dx: int, min_dy: int, *, sender: str) -> int:
        token_out = self._token_out(token_in)
        dy = self.get_dy(token_in, dx)
        if dy < min_dy:
            raise InvariantViolation("slippage", f"got {dy}, wanted at least {min_dy}")
        if dy > token_out.balance_of(self.address):
            raise InsufficientLiquidity("swap_illiquid")
        token_in.transfer(self.address, dx, sender=sender)
        token_out.transfer(sender, dy, sender=self.address)
        return dy


# -----------------------------
# Oracle
# -----------------------------
@dataclass
class PriceOracle:
    """Converts keeper call costs quoted in native units into ``want``."""

    want_per_native: int = WAD

    def convert(self, native_amount: int) -> int:
        return int(native_amount) * self.want_per_native // WAD
