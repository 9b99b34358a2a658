from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, TYPE_CHECKING
import logging

from .core import Component, Environment, MAX_BPS, InvariantViolation, transactional
from .roles import Role, authorize

if TYPE_CHECKING:
    from .strategy import Strategy

logger = logging.getLogger(__name__)


@dataclass
class Limits:
    profit_limit_ratio: int
    loss_limit_ratio: int


class CommonHealthCheck(Component):
    """Rejects harvests whose profit or loss is out of proportion to the debt.

    Ratios are bps of the strategy's total debt. Strategies may carry their
    own limits or be exempted entirely.
    """

    address_prefix = "healthcheck"

    def __init__(self, env: Environment, governance: str, management: Optional[str] = None,
                 profit_limit_ratio: int = 300, loss_limit_ratio: int = 100) -> None:
        super().__init__(env)
        self.governance = governance
        self.management = management or governance
        self.profit_limit_ratio = profit_limit_ratio
        self.loss_limit_ratio = loss_limit_ratio
        self.strategy_limits: Dict[str, Limits] = {}
        self.disabled: Dict[str, bool] = {}

    def role_holders(self) -> Dict[Role, Tuple[str, ...]]:
        return {"governance": (self.governance,), "management": (self.management,)}

    @staticmethod
    def _validate(profit_limit_ratio: int, loss_limit_ratio: int) -> None:
        if not 0 <= profit_limit_ratio <= MAX_BPS or not 0 <= loss_limit_ratio <= MAX_BPS:
            raise InvariantViolation("bad_limit_ratio")

    @transactional
    def set_limits(self, profit_limit_ratio: int, loss_limit_ratio: int, *, sender: str) -> None:
        authorize(self, "set_health_limits", sender)
        self._validate(profit_limit_ratio, loss_limit_ratio)
        self.profit_limit_ratio = profit_limit_ratio
        self.loss_limit_ratio = loss_limit_ratio

    @transactional
    def set_strategy_limits(self, strategy: "Strategy", profit_limit_ratio: int, loss_limit_ratio: int, *,
                            sender: str) -> None:
        authorize(self, "set_health_limits", sender)
        self._validate(profit_limit_ratio, loss_limit_ratio)
        self.strategy_limits[strategy.address] = Limits(profit_limit_ratio, loss_limit_ratio)

    @transactional
    def set_disabled(self, strategy: "Strategy", disabled: bool, *, sender: str) -> None:
        authorize(self, "set_health_limits", sender)
        self.disabled[strategy.address] = bool(disabled)

    def check(self, strategy: "Strategy", profit: int, loss: int, debt_payment: int,
              debt_outstanding: int, total_debt: int) -> bool:
        if self.disabled.get(strategy.address, False):
            return True
        limits = self.strategy_limits.get(strategy.address)
        profit_ratio = limits.profit_limit_ratio if limits else self.profit_limit_ratio
        loss_ratio = limits.loss_limit_ratio if limits else self.loss_limit_ratio

        if profit > total_debt * profit_ratio // MAX_BPS:
            logger.debug("health check: profit %d over %d bps of %d", profit, profit_ratio, total_debt)
            return False
        if loss > total_debt * loss_ratio // MAX_BPS:
            logger.debug("health check: loss %d over %d bps of %d", loss, loss_ratio, total_debt)
            return False
        return True
