from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple, Union, TYPE_CHECKING
import logging

from .core import (
    Component, Environment, Token, transactional,
    MAX_BPS, SECONDS_PER_YEAR, DEGRADATION_COEFFICIENT, MAX_STRATEGIES, UNLIMITED, ZERO_ADDRESS,
    InvariantViolation, StateError, InsufficientLiquidity,
)
from .roles import Role, authorize, has_role

if TYPE_CHECKING:
    from .strategy import Strategy

logger = logging.getLogger(__name__)

API_VERSION = "0.4.3"

StrategyRef = Union["Strategy", str]


@dataclass
class StrategyParams:
    performance_fee: int = 0
    activation: int = 0
    debt_ratio: int = 0
    min_debt_per_harvest: int = 0
    max_debt_per_harvest: int = 0
    last_report: int = 0
    total_debt: int = 0
    total_gain: int = 0
    total_loss: int = 0


def _key(strategy: StrategyRef) -> str:
    if strategy is None:
        return ZERO_ADDRESS
    return strategy if isinstance(strategy, str) else strategy.address


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


class Pool(Component):
    """Shared ledger for one asset.

    Depositors receive shares against ``total_assets``; strategies borrow
    idle funds as debt up to their ``debt_ratio`` and settle gains, losses
    and repayments through ``report``.
    """

    address_prefix = "pool"

    def __init__(
        self,
        env: Environment,
        token: Token,
        governance: str,
        rewards: str,
        guardian: Optional[str] = None,
        management: Optional[str] = None,
        name: Optional[str] = None,
        symbol: Optional[str] = None,
        *,
        performance_fee: int = 1_000,
        management_fee: int = 200,
        deposit_limit: int = UNLIMITED,
    ) -> None:
        super().__init__(env)
        if not governance or not rewards:
            raise InvariantViolation("zero_address", "pool needs governance and rewards")
        self.token = token
        self.name = name or f"{token.symbol} pool"
        self.symbol = symbol or f"pv{token.symbol}"
        self.decimals = token.decimals
        self.api_version = API_VERSION

        self.governance = governance
        self.pending_governance = ZERO_ADDRESS
        self.management = management or governance
        self.guardian = guardian or governance
        self.rewards = rewards

        # share token
        self.total_supply = 0
        self.balances: Dict[str, int] = {}

        # ledger
        self.total_idle = 0
        self.total_debt = 0
        self.debt_ratio = 0
        self.deposit_limit = deposit_limit
        self.performance_fee = performance_fee
        self.management_fee = management_fee
        self.locked_profit = 0
        self.locked_profit_degradation = DEGRADATION_COEFFICIENT * 46 // 10**6
        self.last_report = env.now
        self.activation = env.now
        self.emergency_shutdown = False
        self.withdrawal_queue: List[str] = []
        self._params: Dict[str, StrategyParams] = {}
        self._strategies: Dict[str, "Strategy"] = {}

    # -----------------------------
    # Roles
    # -----------------------------
    def role_holders(self) -> Dict[Role, Tuple[str, ...]]:
        return {
            "governance": (self.governance,),
            "management": (self.management,),
            "guardian": (self.guardian,),
            "strategy": tuple(a for a, p in self._params.items() if p.activation > 0),
        }

    # -----------------------------
    # Share token
    # -----------------------------
    def balance_of(self, account: str) -> int:
        return self.balances.get(account, 0)

    def _mint_shares(self, to: str, shares: int) -> None:
        self.total_supply += shares
        self.balances[to] = self.balance_of(to) + shares

    def _burn_shares(self, frm: str, shares: int) -> None:
        self.total_supply -= shares
        self.balances[frm] = self.balance_of(frm) - shares

    def _move_shares(self, frm: str, to: str, shares: int) -> None:
        if to in (ZERO_ADDRESS, self.address):
            raise InvariantViolation("bad_recipient")
        if self.balance_of(frm) < shares:
            raise InsufficientLiquidity("insufficient_shares")
        self.balances[frm] -= shares
        self.balances[to] = self.balance_of(to) + shares

    @transactional
    def transfer(self, to: str, shares: int, *, sender: str) -> bool:
        self._move_shares(sender, to, shares)
        return True

    # -----------------------------
    # Views
    # -----------------------------
    def total_assets(self) -> int:
        return self.total_idle + self.total_debt

    def strategies(self, strategy: StrategyRef) -> StrategyParams:
        return replace(self._params.get(_key(strategy), StrategyParams()))

    def strategy_list(self) -> List["Strategy"]:
        return list(self._strategies.values())

    def _calculate_locked_profit(self) -> int:
        locked_funds_ratio = (self.env.now - self.last_report) * self.locked_profit_degradation
        if locked_funds_ratio < DEGRADATION_COEFFICIENT:
            locked = self.locked_profit
            return locked - locked_funds_ratio * locked // DEGRADATION_COEFFICIENT
        return 0

    def locked_profit_now(self) -> int:
        return self._calculate_locked_profit()

    def _free_funds(self) -> int:
        return self.total_assets() - self._calculate_locked_profit()

    def _share_value(self, shares: int) -> int:
        if self.total_supply == 0:
            return shares
        return shares * self._free_funds() // self.total_supply

    def _shares_for_amount(self, amount: int, round_up: bool = False) -> int:
        free_funds = self._free_funds()
        if free_funds <= 0:
            return 0
        if round_up:
            return _ceil_div(amount * self.total_supply, free_funds)
        return amount * self.total_supply // free_funds

    def price_per_share(self) -> int:
        return self._share_value(10 ** self.decimals)

    def max_available_shares(self) -> int:
        shares = self._shares_for_amount(self.total_idle)
        for addr in self.withdrawal_queue:
            shares += self._shares_for_amount(self._params[addr].total_debt)
        return min(shares, self.total_supply)

    def available_deposit_limit(self) -> int:
        if self.deposit_limit > self.total_assets():
            return self.deposit_limit - self.total_assets()
        return 0

    def _credit_available(self, addr: str) -> int:
        if self.emergency_shutdown:
            return 0
        params = self._params[addr]
        pool_total_assets = self.total_assets()
        pool_debt_limit = self.debt_ratio * pool_total_assets // MAX_BPS
        strategy_debt_limit = params.debt_ratio * pool_total_assets // MAX_BPS

        if strategy_debt_limit <= params.total_debt or pool_debt_limit <= self.total_debt:
            return 0

        available = strategy_debt_limit - params.total_debt
        available = min(available, pool_debt_limit - self.total_debt)
        available = min(available, self.total_idle)
        if available < params.min_debt_per_harvest:
            return 0
        return min(available, params.max_debt_per_harvest)

    def credit_available(self, strategy: StrategyRef) -> int:
        addr = _key(strategy)
        if addr not in self._params:
            return 0
        return self._credit_available(addr)

    def _debt_outstanding(self, addr: str) -> int:
        params = self._params[addr]
        if self.debt_ratio == 0:
            return params.total_debt
        strategy_debt_limit = params.debt_ratio * self.total_assets() // MAX_BPS
        if self.emergency_shutdown:
            return params.total_debt
        if params.total_debt <= strategy_debt_limit:
            return 0
        return params.total_debt - strategy_debt_limit

    def debt_outstanding(self, strategy: StrategyRef) -> int:
        addr = _key(strategy)
        if addr not in self._params:
            return 0
        return self._debt_outstanding(addr)

    def expected_return(self, strategy: StrategyRef) -> int:
        addr = _key(strategy)
        params = self._params.get(addr)
        if params is None:
            return 0
        since_last = self.env.now - params.last_report
        harvest_span = params.last_report - params.activation
        if since_last > 0 and harvest_span > 0 and self._strategies[addr].is_active():
            return params.total_gain * since_last // harvest_span
        return 0

    # -----------------------------
    # Depositors
    # -----------------------------
    def _issue_shares_for_amount(self, to: str, amount: int) -> int:
        if self.total_supply > 0:
            free_funds = self._free_funds()
            shares = amount * self.total_supply // free_funds if free_funds > 0 else 0
        else:
            shares = amount
        if shares > 0:
            self._mint_shares(to, shares)
        return shares

    @transactional
    def deposit(self, amount: int, recipient: Optional[str] = None, *, sender: str) -> int:
        if self.emergency_shutdown:
            raise StateError("pool_shutdown", "deposits are closed during emergency shutdown")
        recipient = recipient or sender
        if recipient in (ZERO_ADDRESS, self.address):
            raise InvariantViolation("bad_recipient")
        amount = int(amount)
        if amount <= 0:
            raise InvariantViolation("zero_amount")
        if self.total_assets() + amount > self.deposit_limit:
            raise InvariantViolation("deposit_limit", "deposit would exceed the pool deposit limit")
        if self.total_supply > 0 and self._free_funds() <= 0:
            raise InvariantViolation("no_free_funds", "shares outstanding against an empty pool")

        shares = self._issue_shares_for_amount(recipient, amount)
        if shares == 0:
            raise InvariantViolation("zero_shares", f"{amount} is worth no shares")
        self.token.transfer(self.address, amount, sender=sender)
        self.total_idle += amount
        self.env.emit("DEPOSIT", sender, self.address, amount, recipient=recipient, shares=shares)
        return shares

    @transactional
    def withdraw(self, shares: Optional[int] = None, recipient: Optional[str] = None, max_loss: int = 1, *,
                 sender: str) -> int:
        """Redeem ``shares`` (all of the sender's when omitted) for the underlying asset.

        Idle funds are used first, then strategies are asked in withdrawal
        queue order. Losses they realise are booked and reduce the payout;
        the call fails if the loss exceeds ``max_loss`` bps of the value.
        """
        if max_loss > MAX_BPS:
            raise InvariantViolation("bad_max_loss")
        recipient = recipient or sender
        if shares is None:
            shares = self.balance_of(sender)
        if shares <= 0:
            raise InvariantViolation("zero_shares")
        if shares > self.balance_of(sender):
            raise InsufficientLiquidity("insufficient_shares")

        value = self._share_value(shares)
        pool_balance = self.total_idle

        if value > pool_balance:
            total_loss = 0
            for addr in list(self.withdrawal_queue):
                if value <= pool_balance:
                    break
                params = self._params[addr]
                amount_needed = min(value - pool_balance, params.total_debt)
                if amount_needed == 0:
                    continue

                pre_balance = self.token.balance_of(self.address)
                _freed, loss = self._strategies[addr].withdraw(amount_needed, sender=self.address)
                withdrawn = self.token.balance_of(self.address) - pre_balance
                pool_balance += withdrawn

                if loss > 0:
                    value -= loss
                    total_loss += loss
                    self._report_loss(addr, loss)

                params.total_debt -= withdrawn
                self.total_debt -= withdrawn
                self.env.emit("WITHDRAW_FROM_STRATEGY", addr, self.address, withdrawn,
                              total_debt=params.total_debt, loss=loss)

            self.total_idle = pool_balance
            if value > pool_balance:
                value = pool_balance
                shares = min(shares, self._shares_for_amount(value + total_loss, round_up=True))

            if total_loss > max_loss * (value + total_loss) // MAX_BPS:
                raise InvariantViolation("max_loss", f"loss {total_loss} exceeds {max_loss} bps")

        self._burn_shares(sender, shares)
        self.total_idle -= value
        self.token.transfer(recipient, value, sender=self.address)
        self.env.emit("WITHDRAW", sender, self.address, value, recipient=recipient, shares=shares)
        return value

    # -----------------------------
    # Strategy lifecycle
    # -----------------------------
    def _require_active(self, addr: str) -> StrategyParams:
        params = self._params.get(addr)
        if params is None or params.activation == 0:
            raise InvariantViolation("not_active", f"{addr or '<zero>'} is not an active strategy")
        return params

    @transactional
    def add_strategy(self, strategy: "Strategy", debt_ratio: int, min_debt_per_harvest: int = 0,
                     max_debt_per_harvest: int = UNLIMITED, performance_fee: int = 0, *, sender: str) -> None:
        authorize(self, "add_strategy", sender)
        if strategy is None:
            raise InvariantViolation("zero_address", "strategy required")
        if self.emergency_shutdown:
            raise StateError("pool_shutdown")
        if len(self.withdrawal_queue) >= MAX_STRATEGIES:
            raise InvariantViolation("queue_full")
        addr = strategy.address
        if self._params.get(addr, StrategyParams()).activation != 0:
            raise StateError("strategy_active", f"{addr} was already added")
        if strategy.pool is not self:
            raise InvariantViolation("pool_mismatch", f"{addr} is bound to another pool")
        if strategy.want is not self.token:
            raise InvariantViolation("want_mismatch")
        if self.debt_ratio + debt_ratio > MAX_BPS:
            raise InvariantViolation("debt_ratio_overflow", f"{self.debt_ratio} + {debt_ratio} > {MAX_BPS}")
        if min_debt_per_harvest > max_debt_per_harvest:
            raise InvariantViolation("bad_debt_bounds")
        if performance_fee > MAX_BPS // 2:
            raise InvariantViolation("fee_too_high")

        self._params[addr] = StrategyParams(
            performance_fee=performance_fee,
            activation=self.env.now,
            debt_ratio=debt_ratio,
            min_debt_per_harvest=min_debt_per_harvest,
            max_debt_per_harvest=max_debt_per_harvest,
            last_report=self.env.now,
        )
        self._strategies[addr] = strategy
        self.debt_ratio += debt_ratio
        self.withdrawal_queue.append(addr)
        logger.info("pool %s added strategy %s ratio=%d", self.address, addr, debt_ratio)
        self.env.emit("STRATEGY_ADDED", addr, self.address, None, debt_ratio=debt_ratio,
                      min_debt_per_harvest=min_debt_per_harvest, max_debt_per_harvest=max_debt_per_harvest,
                      performance_fee=performance_fee)

    @transactional
    def update_strategy_debt_ratio(self, strategy: StrategyRef, debt_ratio: int, *, sender: str) -> None:
        authorize(self, "update_strategy_debt_ratio", sender)
        if self.emergency_shutdown:
            raise StateError("pool_shutdown")
        addr = _key(strategy)
        params = self._require_active(addr)
        if self._strategies[addr].emergency_exit:
            raise StateError("in_emergency", f"{addr} is exiting")
        new_total = self.debt_ratio - params.debt_ratio + debt_ratio
        if debt_ratio < 0 or new_total > MAX_BPS:
            raise InvariantViolation("debt_ratio_overflow", f"aggregate ratio would be {new_total}")
        self.debt_ratio = new_total
        params.debt_ratio = debt_ratio
        self.env.emit("STRATEGY_UPDATED", addr, self.address, None, debt_ratio=debt_ratio)

    @transactional
    def update_strategy_min_debt_per_harvest(self, strategy: StrategyRef, value: int, *, sender: str) -> None:
        authorize(self, "update_strategy_min_debt_per_harvest", sender)
        params = self._require_active(_key(strategy))
        if value > params.max_debt_per_harvest:
            raise InvariantViolation("bad_debt_bounds")
        params.min_debt_per_harvest = value
        self.env.emit("STRATEGY_UPDATED", _key(strategy), self.address, None, min_debt_per_harvest=value)

    @transactional
    def update_strategy_max_debt_per_harvest(self, strategy: StrategyRef, value: int, *, sender: str) -> None:
        authorize(self, "update_strategy_max_debt_per_harvest", sender)
        params = self._require_active(_key(strategy))
        if params.min_debt_per_harvest > value:
            raise InvariantViolation("bad_debt_bounds")
        params.max_debt_per_harvest = value
        self.env.emit("STRATEGY_UPDATED", _key(strategy), self.address, None, max_debt_per_harvest=value)

    @transactional
    def update_strategy_performance_fee(self, strategy: StrategyRef, fee: int, *, sender: str) -> None:
        authorize(self, "update_strategy_performance_fee", sender)
        params = self._require_active(_key(strategy))
        if fee > MAX_BPS // 2:
            raise InvariantViolation("fee_too_high")
        params.performance_fee = fee
        self.env.emit("STRATEGY_UPDATED", _key(strategy), self.address, None, performance_fee=fee)

    def _revoke(self, addr: str) -> None:
        params = self._params[addr]
        self.debt_ratio -= params.debt_ratio
        params.debt_ratio = 0
        logger.info("pool %s revoked strategy %s", self.address, addr)
        self.env.emit("STRATEGY_REVOKED", addr, self.address)

    @transactional
    def revoke_strategy(self, strategy: Optional[StrategyRef] = None, *, sender: str) -> None:
        addr = _key(strategy) or sender
        if addr != sender:
            authorize(self, "revoke_strategy", sender)
        elif not has_role(self, "strategy", sender):
            raise InvariantViolation("not_active", f"{sender} is not an active strategy")
        if self._params.get(addr, StrategyParams()).debt_ratio != 0:
            self._revoke(addr)

    @transactional
    def migrate_strategy(self, old: StrategyRef, new: Optional["Strategy"], *, sender: str) -> None:
        authorize(self, "migrate_strategy", sender)
        if new is None:
            raise InvariantViolation("zero_address", "migration target required")
        old_addr = _key(old)
        params = self._require_active(old_addr)
        if self._params.get(new.address, StrategyParams()).activation != 0:
            raise StateError("active_new_strategy", f"{new.address} was already added")

        ratio = params.debt_ratio
        self._revoke(old_addr)
        # the ratio moves with the debt
        self.debt_ratio += ratio
        self._params[new.address] = StrategyParams(
            performance_fee=params.performance_fee,
            activation=params.last_report,
            debt_ratio=ratio,
            min_debt_per_harvest=params.min_debt_per_harvest,
            max_debt_per_harvest=params.max_debt_per_harvest,
            last_report=params.last_report,
            total_debt=params.total_debt,
        )
        moved = params.total_debt
        params.total_debt = 0
        params.debt_ratio = 0
        self._strategies[new.address] = new

        self._strategies[old_addr].migrate(new, sender=self.address)

        idx = self.withdrawal_queue.index(old_addr) if old_addr in self.withdrawal_queue else None
        if idx is None:
            self.withdrawal_queue.append(new.address)
        else:
            self.withdrawal_queue[idx] = new.address
        logger.info("pool %s migrated %s -> %s debt=%d", self.address, old_addr, new.address, moved)
        self.env.emit("STRATEGY_MIGRATED", old_addr, self.address, moved, new_strategy=new.address)

    @transactional
    def set_emergency_shutdown(self, active: bool, *, sender: str) -> None:
        if active:
            authorize(self, "enter_emergency_shutdown", sender)
        else:
            authorize(self, "exit_emergency_shutdown", sender)
        self.emergency_shutdown = bool(active)
        logger.info("pool %s emergency shutdown=%s by %s", self.address, self.emergency_shutdown, sender)
        self.env.emit("EMERGENCY_SHUTDOWN", sender, self.address, None, active=self.emergency_shutdown)

    # -----------------------------
    # Reporting
    # -----------------------------
    def _report_loss(self, addr: str, loss: int) -> None:
        params = self._params[addr]
        if loss > params.total_debt:
            raise InvariantViolation("loss_exceeds_debt", f"loss {loss} > debt {params.total_debt}")
        if self.debt_ratio != 0:
            ratio_change = min(loss * self.debt_ratio // self.total_debt, params.debt_ratio)
            params.debt_ratio -= ratio_change
            self.debt_ratio -= ratio_change
        params.total_loss += loss
        params.total_debt -= loss
        self.total_debt -= loss

    def _assess_fees(self, addr: str, gain: int) -> int:
        params = self._params[addr]
        if params.activation == self.env.now or gain == 0:
            return 0
        strategy = self._strategies[addr]
        duration = self.env.now - params.last_report
        management_fee = (
            (params.total_debt - strategy.delegated_assets()) * duration * self.management_fee
            // MAX_BPS // SECONDS_PER_YEAR
        )
        strategist_fee = gain * params.performance_fee // MAX_BPS
        performance_fee = gain * self.performance_fee // MAX_BPS
        total_fee = min(management_fee + strategist_fee + performance_fee, gain)

        if total_fee == 0:
            return 0
        reward = self._issue_shares_for_amount(self.address, total_fee)
        # fee worth less than a share stays with depositors
        if reward == 0:
            return 0
        if strategist_fee > 0:
            strategist_reward = strategist_fee * reward // total_fee
            if strategist_reward > 0:
                self._move_shares(self.address, strategy.rewards, strategist_reward)
        remainder = self.balance_of(self.address)
        if remainder > 0:
            self._move_shares(self.address, self.rewards, remainder)
        return total_fee

    @transactional
    def report(self, gain: int, loss: int, debt_payment: int, *, sender: str) -> int:
        """Settle a strategy's harvest; returns what it still owes the pool."""
        authorize(self, "report", sender)
        addr = sender
        params = self._params[addr]
        strategy = self._strategies[addr]
        if self.token.balance_of(addr) < gain + debt_payment:
            raise InsufficientLiquidity("report_underfunded", f"{addr} cannot cover gain + debt payment")

        if loss > 0:
            self._report_loss(addr, loss)

        total_fees = self._assess_fees(addr, gain)
        params.total_gain += gain

        credit = self._credit_available(addr)
        debt = self._debt_outstanding(addr)
        debt_paid = min(debt_payment, debt)
        if debt_paid > 0:
            params.total_debt -= debt_paid
            self.total_debt -= debt_paid
            debt -= debt_paid
        if credit > 0:
            params.total_debt += credit
            self.total_debt += credit

        total_avail = gain + debt_paid
        if total_avail < credit:
            self.total_idle -= credit - total_avail
            self.token.transfer(addr, credit - total_avail, sender=self.address)
        elif total_avail > credit:
            self.total_idle += total_avail - credit
            self.token.transfer(self.address, total_avail - credit, sender=addr)

        locked_before_loss = self._calculate_locked_profit() + gain - total_fees
        self.locked_profit = locked_before_loss - loss if locked_before_loss > loss else 0

        params.last_report = self.env.now
        self.last_report = self.env.now

        self.env.emit(
            "STRATEGY_REPORTED", addr, self.address, gain,
            gain=gain, loss=loss, debt_paid=debt_paid, debt_added=credit,
            debt_ratio=params.debt_ratio, total_debt=params.total_debt,
            total_gain=params.total_gain, total_loss=params.total_loss,
            credit_available=credit, fees=total_fees,
        )

        if params.debt_ratio == 0 and params.total_debt == 0 and (self.emergency_shutdown or strategy.emergency_exit):
            # fully divested while exiting
            if addr in self.withdrawal_queue:
                self.withdrawal_queue.remove(addr)

        if params.debt_ratio == 0 or self.emergency_shutdown:
            return strategy.estimated_total_assets()
        return debt

    # -----------------------------
    # Administration
    # -----------------------------
    @transactional
    def set_deposit_limit(self, limit: int, *, sender: str) -> None:
        authorize(self, "set_deposit_limit", sender)
        self.deposit_limit = int(limit)

    @transactional
    def set_performance_fee(self, fee: int, *, sender: str) -> None:
        authorize(self, "set_performance_fee", sender)
        if fee > MAX_BPS // 2:
            raise InvariantViolation("fee_too_high")
        self.performance_fee = fee

    @transactional
    def set_management_fee(self, fee: int, *, sender: str) -> None:
        authorize(self, "set_management_fee", sender)
        if fee > MAX_BPS:
            raise InvariantViolation("fee_too_high")
        self.management_fee = fee

    @transactional
    def set_locked_profit_degradation(self, degradation: int, *, sender: str) -> None:
        authorize(self, "set_locked_profit_degradation", sender)
        if degradation > DEGRADATION_COEFFICIENT:
            raise InvariantViolation("degradation_too_high")
        self.locked_profit_degradation = degradation

    @transactional
    def set_governance(self, governance: str, *, sender: str) -> None:
        authorize(self, "set_governance", sender)
        self.pending_governance = governance

    @transactional
    def accept_governance(self, *, sender: str) -> None:
        if not sender or sender != self.pending_governance:
            raise InvariantViolation("not_pending_governance")
        self.governance = sender
        self.pending_governance = ZERO_ADDRESS

    @transactional
    def set_management(self, management: str, *, sender: str) -> None:
        authorize(self, "set_management", sender)
        self.management = management

    @transactional
    def set_guardian(self, guardian: str, *, sender: str) -> None:
        authorize(self, "set_guardian", sender)
        self.guardian = guardian

    @transactional
    def set_rewards(self, rewards: str, *, sender: str) -> None:
        authorize(self, "set_rewards", sender)
        if rewards in (ZERO_ADDRESS, self.address):
            raise InvariantViolation("bad_recipient")
        self.rewards = rewards

    @transactional
    def set_withdrawal_queue(self, queue: Sequence[StrategyRef], *, sender: str) -> None:
        authorize(self, "set_withdrawal_queue", sender)
        addrs = [_key(s) for s in queue]
        if len(addrs) > MAX_STRATEGIES or len(set(addrs)) != len(addrs):
            raise InvariantViolation("bad_queue")
        for addr in addrs:
            self._require_active(addr)
        self.withdrawal_queue = addrs

    @transactional
    def add_strategy_to_queue(self, strategy: StrategyRef, *, sender: str) -> None:
        authorize(self, "add_strategy_to_queue", sender)
        addr = _key(strategy)
        self._require_active(addr)
        if addr in self.withdrawal_queue:
            raise InvariantViolation("already_queued")
        if len(self.withdrawal_queue) >= MAX_STRATEGIES:
            raise InvariantViolation("queue_full")
        self.withdrawal_queue.append(addr)

    @transactional
    def remove_strategy_from_queue(self, strategy: StrategyRef, *, sender: str) -> None:
        authorize(self, "remove_strategy_from_queue", sender)
        addr = _key(strategy)
        if addr not in self.withdrawal_queue:
            raise InvariantViolation("not_queued")
        self.withdrawal_queue.remove(addr)

    @transactional
    def sweep(self, token: Token, amount: Optional[int] = None, *, sender: str) -> int:
        """Send stray ``token`` balance to governance; deposited funds are never sweepable."""
        authorize(self, "pool_sweep", sender)
        value = token.balance_of(self.address)
        if token is self.token:
            value -= self.total_idle
        if amount is None:
            amount = value
        if amount > value:
            raise InvariantViolation("sweep_exceeds_surplus")
        if amount > 0:
            token.transfer(self.governance, amount, sender=self.address)
        self.env.emit("SWEEP", sender, self.address, amount, token=token.symbol)
        return amount
