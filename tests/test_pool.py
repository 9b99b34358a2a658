import pytest

from vaultsim.core import (
    Token, Unauthorized, InvariantViolation, InsufficientLiquidity, StateError,
)
from vaultsim.pool import Pool
from vaultsim.strategy import Strategy, Liquidation
from vaultsim.strategies import deploy_strategy, HoldPosition

from conftest import UNIT, PRINCIPAL, GOV, MGMT, GUARDIAN, TREASURY, STRATEGIST, KEEPER, ALICE

DAY = 86_400


# -----------------------------
# Deposits and withdrawals
# -----------------------------
def test_first_deposit_is_one_to_one(pool, fund):
    shares = fund("bob", 1_000 * UNIT)
    assert shares == 1_000 * UNIT
    assert pool.total_idle == 1_000 * UNIT
    assert pool.price_per_share() == UNIT


def test_deposit_rejections(pool, want, fund):
    fund(ALICE, 100 * UNIT)
    with pytest.raises(InvariantViolation) as exc:
        pool.deposit(0, sender=ALICE)
    assert exc.value.reason == "zero_amount"

    pool.set_deposit_limit(150 * UNIT, sender=GOV)
    want.mint(ALICE, 100 * UNIT)
    with pytest.raises(InvariantViolation) as exc:
        pool.deposit(100 * UNIT, sender=ALICE)
    assert exc.value.reason == "deposit_limit"
    assert pool.available_deposit_limit() == 50 * UNIT

    pool.set_emergency_shutdown(True, sender=GUARDIAN)
    with pytest.raises(StateError) as exc:
        pool.deposit(10 * UNIT, sender=ALICE)
    assert exc.value.reason == "pool_shutdown"


def test_withdraw_from_idle(pool, want, fund):
    fund(ALICE, 500 * UNIT)
    value = pool.withdraw(200 * UNIT, sender=ALICE)
    assert value == 200 * UNIT
    assert want.balance_of(ALICE) == 200 * UNIT
    assert pool.balance_of(ALICE) == 300 * UNIT

    with pytest.raises(InsufficientLiquidity) as exc:
        pool.withdraw(301 * UNIT, sender=ALICE)
    assert exc.value.reason == "insufficient_shares"

    assert pool.withdraw(sender=ALICE) == 300 * UNIT
    assert pool.total_supply == 0


def test_withdraw_pulls_from_strategy(pool, want, hold):
    hold.harvest(sender=KEEPER)
    assert pool.total_idle == 0
    value = pool.withdraw(PRINCIPAL // 4, sender=ALICE)
    assert value == PRINCIPAL // 4
    assert pool.strategies(hold).total_debt == PRINCIPAL * 3 // 4
    assert pool.total_debt == PRINCIPAL * 3 // 4


def test_withdraw_loss_guard(pool, want, hold):
    hold.harvest(sender=KEEPER)
    want.transfer("thief", PRINCIPAL // 10, sender=hold.address)

    with pytest.raises(InvariantViolation) as exc:
        pool.withdraw(sender=ALICE, max_loss=1)
    assert exc.value.reason == "max_loss"
    assert pool.total_debt == PRINCIPAL
    assert want.balance_of(hold.address) == PRINCIPAL * 9 // 10

    value = pool.withdraw(sender=ALICE, max_loss=10_000)
    assert value == PRINCIPAL * 9 // 10
    assert pool.strategies(hold).total_loss == PRINCIPAL // 10
    assert pool.total_supply == 0


def test_share_transfer(pool, fund):
    fund(ALICE, 10 * UNIT)
    pool.transfer("bob", 4 * UNIT, sender=ALICE)
    assert pool.balance_of("bob") == 4 * UNIT
    with pytest.raises(InvariantViolation) as exc:
        pool.transfer(pool.address, UNIT, sender=ALICE)
    assert exc.value.reason == "bad_recipient"


# -----------------------------
# Strategy registry
# -----------------------------
def test_add_strategy_checks(env, want, pool, funded):
    strategy = deploy_strategy(env, pool, "hold", STRATEGIST)
    with pytest.raises(Unauthorized):
        pool.add_strategy(strategy, 1_000, sender=MGMT)
    with pytest.raises(InvariantViolation) as exc:
        pool.add_strategy(strategy, 10_001, sender=GOV)
    assert exc.value.reason == "debt_ratio_overflow"
    with pytest.raises(InvariantViolation) as exc:
        pool.add_strategy(strategy, 1_000, 10, 5, sender=GOV)
    assert exc.value.reason == "bad_debt_bounds"
    with pytest.raises(InvariantViolation) as exc:
        pool.add_strategy(strategy, 1_000, performance_fee=5_001, sender=GOV)
    assert exc.value.reason == "fee_too_high"

    pool.add_strategy(strategy, 6_000, sender=GOV)
    assert pool.debt_ratio == 6_000
    assert pool.withdrawal_queue == [strategy.address]
    with pytest.raises(StateError) as exc:
        pool.add_strategy(strategy, 1_000, sender=GOV)
    assert exc.value.reason == "strategy_active"

    other_pool = Pool(env, Token(env, "DAI", 18), GOV, TREASURY)
    foreign = deploy_strategy(env, other_pool, "hold", STRATEGIST)
    with pytest.raises(InvariantViolation) as exc:
        pool.add_strategy(foreign, 1_000, sender=GOV)
    assert exc.value.reason == "pool_mismatch"


def test_credit_and_outstanding(env, pool, funded):
    strategy = deploy_strategy(env, pool, "hold", STRATEGIST, keeper=KEEPER)
    pool.add_strategy(strategy, 5_000, sender=GOV)
    assert pool.credit_available(strategy) == PRINCIPAL // 2
    assert pool.debt_outstanding(strategy) == 0

    strategy.harvest(sender=KEEPER)
    assert pool.credit_available(strategy) == 0
    pool.update_strategy_debt_ratio(strategy, 2_000, sender=MGMT)
    assert pool.debt_outstanding(strategy) == PRINCIPAL * 3 // 10

    pool.set_emergency_shutdown(True, sender=GUARDIAN)
    assert pool.credit_available(strategy) == 0
    assert pool.debt_outstanding(strategy) == PRINCIPAL // 2


def test_max_debt_per_harvest_caps_credit(env, pool, funded):
    strategy = deploy_strategy(env, pool, "hold", STRATEGIST)
    pool.add_strategy(strategy, 10_000, 0, 100 * UNIT, sender=GOV)
    assert pool.credit_available(strategy) == 100 * UNIT
    pool.update_strategy_min_debt_per_harvest(strategy, 100 * UNIT, sender=GOV)
    with pytest.raises(InvariantViolation) as exc:
        pool.update_strategy_max_debt_per_harvest(strategy, 99 * UNIT, sender=GOV)
    assert exc.value.reason == "bad_debt_bounds"


def test_debt_ratio_update_blocked_when_exiting(pool, hold):
    hold.set_emergency_exit(sender=STRATEGIST)
    assert pool.strategies(hold).debt_ratio == 0
    with pytest.raises(StateError) as exc:
        pool.update_strategy_debt_ratio(hold, 1_000, sender=GOV)
    assert exc.value.reason == "in_emergency"


def test_revoke_by_guardian(pool, hold):
    pool.revoke_strategy(hold, sender=GUARDIAN)
    assert pool.debt_ratio == 0
    assert pool.debt_outstanding(hold) == 0
    with pytest.raises(Unauthorized):
        pool.revoke_strategy(hold, sender=ALICE)


def test_withdrawal_queue_management(env, pool, hold):
    second = deploy_strategy(env, pool, "hold", STRATEGIST, name="Second")
    pool.add_strategy(second, 0, sender=GOV)
    pool.set_withdrawal_queue([second, hold], sender=MGMT)
    assert pool.withdrawal_queue == [second.address, hold.address]
    pool.remove_strategy_from_queue(second, sender=MGMT)
    with pytest.raises(InvariantViolation) as exc:
        pool.remove_strategy_from_queue(second, sender=MGMT)
    assert exc.value.reason == "not_queued"
    pool.add_strategy_to_queue(second, sender=GOV)
    assert pool.withdrawal_queue[-1] == second.address
    with pytest.raises(InvariantViolation) as exc:
        pool.set_withdrawal_queue([hold, hold], sender=GOV)
    assert exc.value.reason == "bad_queue"


# -----------------------------
# Reporting
# -----------------------------
def test_report_gain_locks_profit(env, want, pool, hold):
    pool.set_management_fee(0, sender=GOV)
    pool.set_performance_fee(0, sender=GOV)
    hold.harvest(sender=KEEPER)
    env.advance(DAY)
    want.mint(hold.address, PRINCIPAL // 100)

    profit, loss, payment = hold.harvest(sender=KEEPER)
    assert (profit, loss, payment) == (PRINCIPAL // 100, 0, 0)
    assert pool.total_assets() == PRINCIPAL * 101 // 100
    # gain is released gradually
    assert pool.price_per_share() == UNIT
    env.advance(DAY)
    assert pool.locked_profit_now() == 0
    assert pool.price_per_share() == UNIT * 101 // 100


def test_report_fees_go_to_treasury_and_strategist(env, want, pool, hold):
    pool.update_strategy_performance_fee(hold, 1_000, sender=GOV)
    hold.harvest(sender=KEEPER)
    env.advance(DAY)
    want.mint(hold.address, PRINCIPAL // 100)
    hold.harvest(sender=KEEPER)
    assert pool.balance_of(TREASURY) > 0
    assert pool.balance_of(hold.rewards) > 0
    assert pool.balance_of(pool.address) == 0
    event = env.events.last("STRATEGY_REPORTED")
    assert event.meta["fees"] > 0


def test_report_only_from_active_strategy(pool, hold):
    with pytest.raises(Unauthorized):
        pool.report(0, 0, 0, sender=ALICE)


def test_migration_moves_debt(env, want, pool, hold):
    hold.harvest(sender=KEEPER)
    successor = deploy_strategy(env, pool, "hold", STRATEGIST, name="Successor")
    pool.migrate_strategy(hold, successor, sender=GOV)

    assert pool.total_debt == PRINCIPAL
    assert pool.strategies(successor).total_debt == PRINCIPAL
    assert pool.strategies(successor).debt_ratio == 10_000
    assert pool.strategies(hold).total_debt == 0
    assert want.balance_of(successor.address) == PRINCIPAL
    assert want.balance_of(hold.address) == 0
    assert pool.withdrawal_queue == [successor.address]

    with pytest.raises(StateError) as exc:
        pool.migrate_strategy(successor, successor, sender=GOV)
    assert exc.value.reason == "active_new_strategy"

    env.advance(DAY)
    want.mint(successor.address, PRINCIPAL // 100)
    assert successor.harvest(sender=STRATEGIST) == (PRINCIPAL // 100, 0, 0)
    assert pool.strategies(successor).total_gain == PRINCIPAL // 100
    assert pool.total_debt == PRINCIPAL
    assert pool.total_idle == PRINCIPAL // 100
    assert pool.total_assets() == PRINCIPAL * 101 // 100


def test_migration_to_foreign_strategy_rolls_back(env, want, pool, hold):
    hold.harvest(sender=KEEPER)
    other_pool = Pool(env, want, GOV, TREASURY)
    foreign = deploy_strategy(env, other_pool, "hold", STRATEGIST)
    with pytest.raises(StateError) as exc:
        pool.migrate_strategy(hold, foreign, sender=GOV)
    assert exc.value.reason == "pool_mismatch"
    assert pool.strategies(hold).total_debt == PRINCIPAL
    assert pool.withdrawal_queue == [hold.address]


# -----------------------------
# Rounding above a share price of one
# -----------------------------
class Gated(HoldPosition):
    """Hold position that releases at most ``gate`` want per withdrawal."""

    kind = "gated"

    def __init__(self, strategy, gate=0):
        super().__init__(strategy)
        self.gate = gate

    def liquidate_position(self, amount):
        freed = min(self.loose(), amount, self.gate)
        return Liquidation(freed, self._unrecoverable(amount - freed))


def appreciate(env, want, pool, strategy):
    """Fee-free 1% gain, fully unlocked: price per share ends at 1.01."""
    pool.set_management_fee(0, sender=GOV)
    pool.set_performance_fee(0, sender=GOV)
    strategy.harvest(sender=KEEPER)
    env.advance(DAY)
    want.mint(strategy.address, PRINCIPAL // 100)
    strategy.harvest(sender=KEEPER)
    env.advance(DAY)
    assert pool.price_per_share() == UNIT * 101 // 100


def test_deposit_shares_round_down(env, want, pool, hold, fund):
    appreciate(env, want, pool, hold)
    shares = fund("bob", 100 * UNIT)
    assert shares == 99_009_900
    assert pool.price_per_share() == UNIT * 101 // 100

    want.mint("bob", 1)
    with pytest.raises(InvariantViolation) as exc:
        pool.deposit(1, sender="bob")
    assert exc.value.reason == "zero_shares"
    assert pool.balance_of("bob") == shares

    # the odd unit stays in the pool
    assert pool.withdraw(sender="bob") == 100 * UNIT - 1


def test_withdraw_burns_rounded_up_shares_after_loss(env, want, pool, funded):
    strategy = Strategy(env, Gated, pool, STRATEGIST, keeper=KEEPER, gate=PRINCIPAL * 4 // 10)
    pool.add_strategy(strategy, 10_000, sender=GOV)
    appreciate(env, want, pool, strategy)
    want.transfer("thief", PRINCIPAL * 3 // 1000, sender=strategy.address)

    value = pool.withdraw(PRINCIPAL // 2, sender=ALICE, max_loss=10_000)
    assert value == PRINCIPAL * 41 // 100
    assert pool.strategies(strategy).total_loss == PRINCIPAL * 3 // 1000
    # 413e9 * 1000 / 1007 = 410_129_096_325.72...
    assert pool.balance_of(ALICE) == PRINCIPAL - 410_129_096_326
    assert pool.total_supply == PRINCIPAL - 410_129_096_326
    assert pool.total_idle == 0
    assert pool.total_debt == PRINCIPAL * 597 // 1000


def test_fee_worth_no_shares_does_not_block_harvest(env, want, pool, hold):
    appreciate(env, want, pool, hold)
    pool.set_performance_fee(1_000, sender=GOV)

    want.mint(hold.address, 10)
    assert hold.harvest(sender=KEEPER) == (10, 0, 0)
    assert pool.total_supply == PRINCIPAL
    assert pool.balance_of(TREASURY) == 0
    assert env.events.last("STRATEGY_REPORTED").meta["fees"] == 0
    assert pool.total_assets() == PRINCIPAL * 101 // 100 + 10

    want.mint(hold.address, PRINCIPAL // 100)
    hold.harvest(sender=KEEPER)
    assert pool.balance_of(TREASURY) == 990_099_009


# -----------------------------
# Administration
# -----------------------------
def test_shutdown_permissions(pool):
    pool.set_emergency_shutdown(True, sender=GUARDIAN)
    with pytest.raises(Unauthorized):
        pool.set_emergency_shutdown(False, sender=GUARDIAN)
    pool.set_emergency_shutdown(False, sender=GOV)
    assert pool.emergency_shutdown is False


def test_governance_handover(pool):
    pool.set_governance("new_gov", sender=GOV)
    assert pool.governance == GOV
    with pytest.raises(InvariantViolation):
        pool.accept_governance(sender=ALICE)
    pool.accept_governance(sender="new_gov")
    assert pool.governance == "new_gov"


def test_sweep_leaves_deposits(env, want, pool, fund):
    fund(ALICE, 100 * UNIT)
    want.mint(pool.address, 5 * UNIT)
    with pytest.raises(InvariantViolation) as exc:
        pool.sweep(want, 6 * UNIT, sender=GOV)
    assert exc.value.reason == "sweep_exceeds_surplus"
    assert pool.sweep(want, sender=GOV) == 5 * UNIT
    assert want.balance_of(GOV) == 5 * UNIT

    stray = Token(env, "AIR", 18)
    stray.mint(pool.address, 7)
    assert pool.sweep(stray, sender=GOV) == 7
    assert stray.balance_of(GOV) == 7
