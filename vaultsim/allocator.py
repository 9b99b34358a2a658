from __future__ import annotations
from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Sequence, Tuple
import logging

from .core import WAD, transactional, InvariantViolation, InsufficientLiquidity
from .roles import authorize
from .lenders import GenericLender
from .strategy import StrategyVariant, Strategy, HarvestReturn

logger = logging.getLogger(__name__)

SHARE_DENOMINATOR = 1000
MAX_WITHDRAW_PASSES = 6


@dataclass
class LendStatus:
    name: str
    address: str
    assets: int
    rate: int


class AdjustEstimate(NamedTuple):
    lowest: Optional[GenericLender]
    lowest_apr: Optional[int]
    highest: Optional[GenericLender]
    potential: int


class Allocator(StrategyVariant):
    """Spreads a strategy's debt across docked lenders, chasing the best APR.

    Rates are WAD-scaled annual APRs. Loose want sits in the strategy until
    ``adjust_position`` moves it into the highest-yielding lender.
    """

    kind = "lender"

    def __init__(self, strategy: Strategy, withdrawal_threshold: int = 0) -> None:
        super().__init__(strategy)
        self.lenders: List[GenericLender] = []
        self.withdrawal_threshold = withdrawal_threshold

    # -----------------------------
    # Views
    # -----------------------------
    def lent_total_assets(self) -> int:
        return sum(lender.nav() for lender in self.lenders)

    def invested_assets(self) -> int:
        return self.lent_total_assets()

    def lend_statuses(self) -> List[LendStatus]:
        return [LendStatus(l.name, l.address, l.nav(), l.apr()) for l in self.lenders]

    def estimated_apr(self) -> int:
        total = self.estimated_total_assets()
        if total == 0:
            return 0
        return sum(lender.weighted_apr() for lender in self.lenders) // total

    def estimated_future_apr(self, new_debt_limit: int) -> int:
        """Blended APR if the strategy's debt moved to ``new_debt_limit``."""
        old_debt_limit = self.total_debt()
        if new_debt_limit >= old_debt_limit:
            return self._estimate_debt_limit_increase(new_debt_limit - old_debt_limit)
        return self._estimate_debt_limit_decrease(old_debt_limit - new_debt_limit)

    def _estimate_debt_limit_increase(self, change: int) -> int:
        if not self.lenders:
            return 0
        best, best_apr = None, -1
        for lender in self.lenders:
            apr = lender.apr_after_deposit(change)
            if apr > best_apr:
                best, best_apr = lender, apr
        weighted = best_apr * (best.nav() + change)
        weighted += sum(l.weighted_apr() for l in self.lenders if l is not best)
        denominator = self.lent_total_assets() + change
        return weighted // denominator if denominator > 0 else 0

    def _estimate_debt_limit_decrease(self, change: int) -> int:
        remaining = change
        weighted = 0
        for lender in sorted(self.lenders, key=lambda l: l.apr()):
            nav = lender.nav()
            take = min(nav, remaining)
            remaining -= take
            weighted += lender.apr() * (nav - take)
        denominator = self.lent_total_assets() - (change - remaining)
        return weighted // denominator if denominator > 0 else 0

    def estimate_adjust_position(self) -> AdjustEstimate:
        loose = self.loose()
        lowest: Optional[GenericLender] = None
        lowest_apr: Optional[int] = None
        lowest_nav = 0
        for lender in self.lenders:
            if lender.has_assets():
                apr = lender.apr()
                if lowest_apr is None or apr < lowest_apr:
                    lowest, lowest_apr, lowest_nav = lender, apr, lender.nav()

        highest: Optional[GenericLender] = None
        highest_apr = -1
        for lender in self.lenders:
            apr = lender.apr_after_deposit(loose)
            if apr > highest_apr:
                highest, highest_apr = lender, apr

        potential = highest.apr_after_deposit(lowest_nav + loose) if highest is not None else 0
        return AdjustEstimate(lowest, lowest_apr, highest, potential)

    def tend_trigger(self, call_cost: int) -> bool:
        if self.strategy.harvest_trigger(call_cost):
            return False
        est = self.estimate_adjust_position()
        if est.lowest is None or est.potential <= est.lowest_apr:
            return False
        nav = est.lowest.nav()
        # one day of the extra yield
        profit_increase = (nav * est.potential - nav * est.lowest_apr) // WAD // 365
        return self.strategy.call_cost_in_want(call_cost) * self.strategy.state.profit_factor < profit_increase

    # -----------------------------
    # Position hooks
    # -----------------------------
    def _withdraw_some(self, amount: int) -> int:
        if not self.lenders or amount < self.withdrawal_threshold:
            return 0
        withdrawn = 0
        exhausted: List[GenericLender] = []
        passes = 0
        while withdrawn < amount and passes < MAX_WITHDRAW_PASSES:
            candidates = [l for l in self.lenders if l.has_assets() and l not in exhausted]
            if not candidates:
                break
            lowest = min(candidates, key=lambda l: l.apr())
            got = lowest.withdraw(amount - withdrawn, sender=self.strategy.address)
            if got == 0:
                exhausted.append(lowest)
            withdrawn += got
            passes += 1
        self.env.emit("WITHDRAW_SOME", self.strategy.address, self.pool.address, withdrawn, requested=amount)
        return withdrawn

    def free(self, amount: int) -> int:
        return self._withdraw_some(amount)

    def prepare_return(self, debt_outstanding: int) -> HarvestReturn:
        result = self._settle_returns(debt_outstanding)
        self.env.emit("PREPARE_RETURN", self.strategy.address, self.pool.address, result.profit,
                      loss=result.loss, debt_payment=result.debt_payment)
        return result

    def adjust_position(self, debt_outstanding: int) -> None:
        if self.strategy.emergency_exit or not self.lenders:
            return
        est = self.estimate_adjust_position()
        if est.lowest is not None and est.potential > est.lowest_apr:
            est.lowest.withdraw_all(sender=self.strategy.address)

        surplus = self.loose() - debt_outstanding
        if surplus > 0 and est.highest is not None:
            self.want.transfer(est.highest.address, surplus, sender=self.strategy.address)
            est.highest.deposit(sender=self.strategy.address)
            self.env.emit("ADJUST_POSITION", self.strategy.address, self.pool.address, surplus,
                          lender=est.highest.name)

    def liquidate_all_positions(self) -> int:
        for lender in self.lenders:
            lender.withdraw_all(sender=self.strategy.address)
        self.env.emit("WITHDRAW_ALL", self.strategy.address, self.pool.address, self.loose())
        return self.loose()

    def prepare_migration(self, new_strategy: Strategy) -> None:
        for lender in self.lenders:
            if not lender.withdraw_all(sender=self.strategy.address):
                raise InsufficientLiquidity("migration_illiquid", f"{lender.name} could not be emptied")

    # -----------------------------
    # Lender management
    # -----------------------------
    def _index_of(self, lender: GenericLender) -> int:
        for i, l in enumerate(self.lenders):
            if l is lender:
                return i
        raise InvariantViolation("not_lender", f"{getattr(lender, 'name', lender)} is not registered")

    @transactional
    def add_lender(self, lender: GenericLender, *, sender: str) -> None:
        authorize(self.strategy, "add_lender", sender)
        if lender.strategy is not self.strategy:
            raise InvariantViolation("undocked_lender", f"{lender.name} belongs to another strategy")
        if any(l is lender for l in self.lenders):
            raise InvariantViolation("already_added", f"{lender.name} is already registered")
        self.lenders.append(lender)
        logger.info("strategy %s added lender %s", self.strategy.address, lender.name)
        self.env.emit("LENDER_ADDED", self.strategy.address, self.pool.address, None, lender=lender.address)

    def _remove_lender(self, lender: GenericLender, force: bool) -> None:
        idx = self._index_of(lender)
        ok = lender.withdraw_all(sender=self.strategy.address)
        if not force and not ok:
            raise InsufficientLiquidity("withdraw_failed", f"{lender.name} still holds {lender.nav()}")
        del self.lenders[idx]
        logger.info("strategy %s removed lender %s force=%s", self.strategy.address, lender.name, force)
        self.env.emit("LENDER_REMOVED", self.strategy.address, self.pool.address, lender.nav(),
                      lender=lender.address, force=force)

    @transactional
    def safe_remove_lender(self, lender: GenericLender, *, sender: str) -> None:
        authorize(self.strategy, "safe_remove_lender", sender)
        self._remove_lender(lender, force=False)

    @transactional
    def force_remove_lender(self, lender: GenericLender, *, sender: str) -> None:
        authorize(self.strategy, "force_remove_lender", sender)
        self._remove_lender(lender, force=True)

    @transactional
    def manual_allocation(self, targets: Sequence[Tuple[GenericLender, int]], *, sender: str) -> None:
        """Rebalance to ``targets``: (lender, share out of 1000) pairs summing to 1000."""
        authorize(self.strategy, "manual_allocation", sender)
        seen = set()
        total_share = 0
        for lender, share in targets:
            self._index_of(lender)
            if share < 0:
                raise InvariantViolation("bad_share")
            if id(lender) in seen:
                raise InvariantViolation("duplicate_lender")
            seen.add(id(lender))
            total_share += share
        if total_share != SHARE_DENOMINATOR:
            raise InvariantViolation("share_not_1000", f"shares sum to {total_share}")

        total = self.loose() + self.lent_total_assets()
        shares = {id(l): s for l, s in targets}
        wanted = {id(l): total * shares.get(id(l), 0) // SHARE_DENOMINATOR for l in self.lenders}

        for lender in self.lenders:
            nav = lender.nav()
            if nav > wanted[id(lender)]:
                lender.withdraw(nav - wanted[id(lender)], sender=self.strategy.address)

        for lender in self.lenders:
            gap = wanted[id(lender)] - lender.nav()
            amount = min(gap, self.loose())
            if amount > 0:
                self.want.transfer(lender.address, amount, sender=self.strategy.address)
                lender.deposit(sender=self.strategy.address)

        self.env.emit("MANUAL_ALLOCATION", sender, self.pool.address, total,
                      targets={l.address: s for l, s in targets})

    @transactional
    def set_withdrawal_threshold(self, threshold: int, *, sender: str) -> None:
        authorize(self.strategy, "set_withdrawal_threshold", sender)
        self.withdrawal_threshold = int(threshold)
