from __future__ import annotations
from typing import Dict, Literal, Tuple, Protocol

from .core import Unauthorized

Role = Literal["governance", "management", "guardian", "strategist", "keeper", "pool", "strategy"]

_VAULT_MANAGERS: Tuple[Role, ...] = ("governance", "management")
_AUTHORIZED: Tuple[Role, ...] = ("governance", "strategist")
_KEEPERS: Tuple[Role, ...] = ("keeper", "strategist", "governance", "management", "guardian")
_EMERGENCY: Tuple[Role, ...] = ("strategist", "governance", "guardian", "management")
_MANAGEMENT_TIER: Tuple[Role, ...] = ("governance", "management", "strategist")

# operation -> roles allowed to call it
POLICY: Dict[str, Tuple[Role, ...]] = {
    # pool
    "add_strategy": ("governance",),
    "update_strategy_debt_ratio": _VAULT_MANAGERS,
    "update_strategy_min_debt_per_harvest": _VAULT_MANAGERS,
    "update_strategy_max_debt_per_harvest": _VAULT_MANAGERS,
    "update_strategy_performance_fee": ("governance",),
    "migrate_strategy": ("governance",),
    "revoke_strategy": ("governance", "guardian", "strategy"),
    "enter_emergency_shutdown": ("governance", "guardian"),
    "exit_emergency_shutdown": ("governance",),
    "report": ("strategy",),
    "set_deposit_limit": ("governance",),
    "set_performance_fee": ("governance",),
    "set_management_fee": ("governance",),
    "set_locked_profit_degradation": ("governance",),
    "set_governance": ("governance",),
    "set_management": ("governance",),
    "set_guardian": ("governance", "guardian"),
    "set_rewards": ("governance",),
    "set_withdrawal_queue": _VAULT_MANAGERS,
    "add_strategy_to_queue": _VAULT_MANAGERS,
    "remove_strategy_from_queue": _VAULT_MANAGERS,
    "pool_sweep": ("governance",),
    # strategy
    "harvest": _KEEPERS,
    "tend": _KEEPERS,
    "strategy_withdraw": ("pool",),
    "migrate": ("pool",),
    "set_emergency_exit": _EMERGENCY,
    "set_strategist": _AUTHORIZED,
    "set_keeper": _AUTHORIZED,
    "set_rewards_address": ("strategist",),
    "set_min_report_delay": _AUTHORIZED,
    "set_max_report_delay": _AUTHORIZED,
    "set_profit_factor": _AUTHORIZED,
    "set_debt_threshold": _AUTHORIZED,
    "set_metadata_uri": _AUTHORIZED,
    "set_price_oracle": _AUTHORIZED,
    "set_health_check": _VAULT_MANAGERS,
    "set_do_health_check": _VAULT_MANAGERS,
    "strategy_sweep": ("governance",),
    # variants
    "add_lender": ("governance",),
    "safe_remove_lender": _MANAGEMENT_TIER,
    "force_remove_lender": _MANAGEMENT_TIER,
    "manual_allocation": _MANAGEMENT_TIER,
    "set_withdrawal_threshold": _AUTHORIZED,
    "set_farm_pool": _AUTHORIZED,
    "set_staking_params": _AUTHORIZED,
    "invest": _EMERGENCY,
    "divest": _EMERGENCY,
    # lender
    "lender_deposit": ("strategy",),
    "lender_withdraw": ("strategy",),
    "lender_emergency_withdraw": _MANAGEMENT_TIER,
    "lender_set_dust": _MANAGEMENT_TIER,
    "lender_sweep": ("governance",),
    # health check
    "set_health_limits": _VAULT_MANAGERS,
}


class RoleHolder(Protocol):
    def role_holders(self) -> Dict[Role, Tuple[str, ...]]:
        ...


def has_role(component: RoleHolder, role: Role, sender: str) -> bool:
    if not sender:
        return False
    return sender in component.role_holders().get(role, ())


def authorize(component: RoleHolder, operation: str, sender: str) -> Role:
    """Return the first role ``sender`` holds for ``operation`` or raise ``Unauthorized``."""
    allowed = POLICY[operation]
    holders = component.role_holders()
    if sender:
        for role in allowed:
            if sender in holders.get(role, ()):
                return role
    raise Unauthorized("unauthorized", f"{sender or '<zero>'} may not call {operation} (needs {'/'.join(allowed)})")
