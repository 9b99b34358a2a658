import pytest

from vaultsim.core import Unauthorized, InvariantViolation, InsufficientLiquidity, WAD
from vaultsim.lenders import LendingMarketLender
from vaultsim.strategies import deploy_strategy

from conftest import PRINCIPAL, GOV, MGMT, STRATEGIST, KEEPER, ALICE


def navs(strategy):
    return [lender.nav() for lender in strategy.variant.lenders]


def test_first_harvest_goes_to_best_lender(lender_strategy):
    lender_strategy.harvest(sender=KEEPER)
    assert navs(lender_strategy) == [0, 0, PRINCIPAL]
    event = lender_strategy.env.events.last("ADJUST_POSITION")
    assert event.meta["lender"] == "GenericLender_3"


def test_manual_allocation_split(allocated):
    assert navs(allocated) == [PRINCIPAL * 4 // 10, PRINCIPAL * 3 // 10, PRINCIPAL * 3 // 10]
    assert allocated.estimated_total_assets() == PRINCIPAL
    statuses = allocated.variant.lend_statuses()
    assert [s.name for s in statuses] == ["GenericLender_1", "GenericLender_2", "GenericLender_3"]
    assert statuses[0].rate == WAD // 20


def test_manual_allocation_validation(allocated):
    l1, l2, l3 = allocated.variant.lenders
    with pytest.raises(InvariantViolation) as exc:
        allocated.variant.manual_allocation([(l1, 500), (l2, 400)], sender=GOV)
    assert exc.value.reason == "share_not_1000"
    with pytest.raises(InvariantViolation) as exc:
        allocated.variant.manual_allocation([(l1, 500), (l1, 500)], sender=GOV)
    assert exc.value.reason == "duplicate_lender"
    with pytest.raises(Unauthorized):
        allocated.variant.manual_allocation([(l1, 1000)], sender=KEEPER)
    # rejected calls leave the split untouched
    assert navs(allocated) == [PRINCIPAL * 4 // 10, PRINCIPAL * 3 // 10, PRINCIPAL * 3 // 10]


def test_estimated_apr(allocated):
    # 0.4 * 5% + 0.3 * 10% + 0.3 * 20%
    assert allocated.variant.estimated_apr() == 11 * WAD // 100


def test_estimate_adjust_position(allocated):
    l1, _, l3 = allocated.variant.lenders
    est = allocated.variant.estimate_adjust_position()
    assert est.lowest is l1
    assert est.lowest_apr == WAD // 20
    assert est.highest is l3
    assert est.potential == WAD // 5


def test_estimated_future_apr(allocated):
    assert allocated.variant.estimated_future_apr(2 * PRINCIPAL) == 155 * WAD // 1000
    assert allocated.variant.estimated_future_apr(PRINCIPAL * 6 // 10) == 15 * WAD // 100


def test_tend_trigger_and_tend(allocated):
    # moving 400k from 5% to 20% earns ~164 want a day
    assert allocated.tend_trigger(10**6)
    assert not allocated.tend_trigger(10**7)

    allocated.tend(sender=KEEPER)
    assert navs(allocated) == [0, PRINCIPAL * 3 // 10, PRINCIPAL * 7 // 10]


def test_apr_after_deposit_override_blocks_move(allocated, markets):
    markets[1].set_apr_after_deposit(WAD // 25)
    markets[2].set_apr_after_deposit(WAD // 25)
    l1 = allocated.variant.lenders[0]
    est = allocated.variant.estimate_adjust_position()
    assert est.highest is l1
    assert est.potential == WAD // 20
    assert not allocated.tend_trigger(1)


def test_withdraw_skips_illiquid_lender(want, pool, allocated, markets):
    markets[0].drain(markets[0].liquidity())
    value = pool.withdraw(PRINCIPAL // 2, sender=ALICE)
    assert value == PRINCIPAL // 2
    assert want.balance_of(ALICE) == PRINCIPAL // 2
    l1, l2, l3 = allocated.variant.lenders
    assert l1.nav() == PRINCIPAL * 4 // 10
    assert l2.nav() == 0
    assert l3.nav() == PRINCIPAL // 10


def test_withdrawal_threshold(allocated):
    allocated.variant.set_withdrawal_threshold(PRINCIPAL, sender=STRATEGIST)
    assert allocated.variant.free(PRINCIPAL // 10) == 0


def test_add_and_safe_remove_lender(env, allocated, markets):
    extra = LendingMarketLender(allocated, "GenericLender_4", markets[1])
    allocated.variant.add_lender(extra, sender=GOV)
    assert len(allocated.variant.lenders) == 4
    with pytest.raises(InvariantViolation) as exc:
        allocated.variant.add_lender(extra, sender=GOV)
    assert exc.value.reason == "already_added"

    allocated.variant.safe_remove_lender(extra, sender=MGMT)
    assert len(allocated.variant.lenders) == 3
    with pytest.raises(InvariantViolation) as exc:
        allocated.variant.safe_remove_lender(extra, sender=MGMT)
    assert exc.value.reason == "not_lender"


def test_add_lender_checks(env, pool, allocated, markets):
    other = deploy_strategy(env, pool, "lender", STRATEGIST, name="Other")
    undocked = LendingMarketLender(other, "Stray", markets[0])
    with pytest.raises(InvariantViolation) as exc:
        allocated.variant.add_lender(undocked, sender=GOV)
    assert exc.value.reason == "undocked_lender"
    docked = LendingMarketLender(allocated, "GenericLender_5", markets[0])
    with pytest.raises(Unauthorized):
        allocated.variant.add_lender(docked, sender=STRATEGIST)


def test_safe_remove_moves_funds_back(want, allocated):
    l1 = allocated.variant.lenders[0]
    allocated.variant.safe_remove_lender(l1, sender=GOV)
    assert want.balance_of(allocated.address) == PRINCIPAL * 4 // 10
    assert allocated.estimated_total_assets() == PRINCIPAL


def test_remove_illiquid_lender(allocated, markets):
    markets[0].drain(markets[0].liquidity())
    l1 = allocated.variant.lenders[0]
    with pytest.raises(InsufficientLiquidity) as exc:
        allocated.variant.safe_remove_lender(l1, sender=GOV)
    assert exc.value.reason == "withdraw_failed"
    assert l1 in allocated.variant.lenders

    allocated.variant.force_remove_lender(l1, sender=STRATEGIST)
    assert l1 not in allocated.variant.lenders
    assert l1.nav() == PRINCIPAL * 4 // 10
    assert allocated.estimated_total_assets() == PRINCIPAL * 6 // 10


def test_lender_only_takes_orders_from_its_strategy(allocated):
    l1 = allocated.variant.lenders[0]
    with pytest.raises(Unauthorized):
        l1.withdraw(1, sender=KEEPER)
    with pytest.raises(Unauthorized):
        l1.deposit(sender=ALICE)


def test_lender_emergency_withdraw_sends_to_governance(want, allocated):
    l1 = allocated.variant.lenders[0]
    taken = l1.emergency_withdraw(PRINCIPAL // 10, sender=MGMT)
    assert taken == PRINCIPAL // 10
    assert want.balance_of(GOV) == PRINCIPAL // 10
    assert l1.nav() == PRINCIPAL * 3 // 10


def test_harvest_after_exit_collects_all_lenders(want, pool, allocated):
    allocated.set_emergency_exit(sender=GOV)
    allocated.harvest(sender=KEEPER)
    assert navs(allocated) == [0, 0, 0]
    assert pool.total_idle == PRINCIPAL
    assert pool.total_debt == 0


def test_migration_empties_lenders(env, pool, allocated):
    successor = deploy_strategy(env, pool, "hold", STRATEGIST, name="Successor")
    pool.migrate_strategy(allocated, successor, sender=GOV)
    assert navs(allocated) == [0, 0, 0]
    assert successor.estimated_total_assets() == PRINCIPAL
    assert pool.strategies(successor).total_debt == PRINCIPAL


def test_migration_blocked_by_illiquid_lender(pool, allocated, markets):
    markets[2].drain(markets[2].liquidity())
    successor = deploy_strategy(allocated.env, pool, "hold", STRATEGIST, name="Successor")
    with pytest.raises(InsufficientLiquidity) as exc:
        pool.migrate_strategy(allocated, successor, sender=GOV)
    assert exc.value.reason == "migration_illiquid"
    assert pool.strategies(allocated).total_debt == PRINCIPAL
