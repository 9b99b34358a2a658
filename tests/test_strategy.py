import pytest

from vaultsim.core import (
    Token, Unauthorized, InvariantViolation, HealthCheckFailed, StateError, SECONDS_PER_YEAR, WAD,
)
from vaultsim.healthcheck import CommonHealthCheck
from vaultsim.markets import LendingMarket, PriceOracle
from vaultsim.lenders import LendingMarketLender
from vaultsim.strategies import deploy_strategy

from conftest import UNIT, PRINCIPAL, GOV, MGMT, STRATEGIST, KEEPER, ALICE

DAY = 86_400


@pytest.fixture
def single_lender(env, want, pool, funded):
    market = LendingMarket(env, want, "market", WAD // 10)
    market.seed_liquidity(PRINCIPAL)
    strategy = deploy_strategy(env, pool, "lender", STRATEGIST, keeper=KEEPER)
    strategy.variant.add_lender(LendingMarketLender(strategy, "GenericLender", market), sender=GOV)
    pool.add_strategy(strategy, 10_000, sender=GOV)
    return strategy


@pytest.fixture
def checked(env, hold):
    hc = CommonHealthCheck(env, GOV, MGMT)
    hold.set_health_check(hc, sender=MGMT)
    hold.set_do_health_check(True, sender=MGMT)
    return hold


def test_full_lifecycle_books_interest(env, pool, single_lender):
    single_lender.harvest(sender=KEEPER)
    lender = single_lender.variant.lenders[0]
    assert pool.total_debt == PRINCIPAL
    assert lender.nav() == PRINCIPAL

    env.advance(SECONDS_PER_YEAR)
    profit, loss, payment = single_lender.harvest(sender=KEEPER)
    assert (profit, loss, payment) == (PRINCIPAL // 10, 0, 0)
    assert pool.total_assets() == PRINCIPAL * 11 // 10
    assert pool.strategies(single_lender).total_gain == PRINCIPAL // 10
    # credit is sized before the gain lands, so the profit waits in the pool
    assert pool.total_idle == PRINCIPAL // 10
    assert pool.credit_available(single_lender) == PRINCIPAL // 10
    assert single_lender.want.balance_of(single_lender.address) == 0


def test_second_harvest_is_a_no_op(pool, single_lender):
    single_lender.harvest(sender=KEEPER)
    assert single_lender.harvest(sender=KEEPER) == (0, 0, 0)
    assert pool.total_debt == PRINCIPAL


def test_lowered_ratio_repays_half(pool, hold):
    hold.harvest(sender=KEEPER)
    pool.update_strategy_debt_ratio(hold, 5_000, sender=GOV)
    assert hold.harvest(sender=KEEPER) == (0, 0, PRINCIPAL // 2)
    assert pool.strategies(hold).total_debt == PRINCIPAL // 2
    assert pool.total_idle == PRINCIPAL // 2


def test_emergency_exit_with_stolen_funds(env, want, pool, hold):
    hold.harvest(sender=KEEPER)
    want.transfer("thief", PRINCIPAL // 10, sender=hold.address)
    hold.set_emergency_exit(sender=STRATEGIST)
    assert hold.emergency_exit
    assert env.events.last("EMERGENCY_EXIT") is not None

    profit, loss, payment = hold.harvest(sender=KEEPER)
    assert (profit, loss, payment) == (0, PRINCIPAL // 10, PRINCIPAL * 9 // 10)
    assert want.balance_of(hold.address) == 0
    assert pool.strategies(hold).total_debt == 0
    assert pool.total_idle == PRINCIPAL * 9 // 10
    assert hold.address not in pool.withdrawal_queue


def test_pool_shutdown_drains_strategy(pool, hold):
    hold.harvest(sender=KEEPER)
    pool.set_emergency_shutdown(True, sender=GOV)
    assert hold.harvest(sender=KEEPER) == (0, 0, PRINCIPAL)
    assert pool.total_debt == 0
    assert pool.total_idle == PRINCIPAL


def test_health_check_rejection_disables_checks(env, want, pool, checked):
    checked.harvest(sender=KEEPER)
    env.advance(DAY)
    want.mint(checked.address, PRINCIPAL // 10)

    with pytest.raises(HealthCheckFailed) as exc:
        checked.harvest(sender=KEEPER)
    assert exc.value.reason == "health_check"
    assert pool.strategies(checked).total_gain == 0
    assert checked.state.do_health_check is False
    assert env.events.last("HEALTH_CHECK_DISABLED") is not None

    profit, _, _ = checked.harvest(sender=KEEPER)
    assert profit == PRINCIPAL // 10
    checked.set_do_health_check(True, sender=MGMT)
    assert checked.state.do_health_check is True


def test_health_check_strategy_limits(env, want, checked):
    hc = checked.state.health_check
    hc.set_strategy_limits(checked, 2_000, 100, sender=GOV)
    checked.harvest(sender=KEEPER)
    env.advance(DAY)
    want.mint(checked.address, PRINCIPAL // 10)
    assert checked.harvest(sender=KEEPER).profit == PRINCIPAL // 10
    with pytest.raises(InvariantViolation) as exc:
        hc.set_limits(10_001, 0, sender=GOV)
    assert exc.value.reason == "bad_limit_ratio"


def test_harvest_trigger(env, pool, hold):
    # credit available dwarfs a small call cost
    assert hold.harvest_trigger(1)
    assert not hold.harvest_trigger(PRINCIPAL)
    hold.harvest(sender=KEEPER)
    assert not hold.harvest_trigger(1)
    env.advance(hold.state.max_report_delay)
    assert hold.harvest_trigger(1)


def test_harvest_trigger_uses_price_oracle(hold):
    hold.set_price_oracle(PriceOracle(want_per_native=2_000 * UNIT), sender=STRATEGIST)
    # 0.01 native at 2000 want each is 20 want
    assert hold.call_cost_in_want(10**16) == 20 * UNIT
    assert hold.harvest_trigger(10**16)
    assert not hold.harvest_trigger(10**22)


def test_min_report_delay_blocks_trigger(env, hold):
    hold.set_min_report_delay(DAY, sender=STRATEGIST)
    hold.harvest(sender=KEEPER)
    env.advance(DAY - 1)
    hold.set_debt_threshold(0, sender=GOV)
    assert not hold.harvest_trigger(1)


def test_keeper_permissions(hold):
    with pytest.raises(Unauthorized):
        hold.harvest(sender=ALICE)
    with pytest.raises(Unauthorized):
        hold.set_keeper(ALICE, sender=KEEPER)
    hold.set_keeper(ALICE, sender=STRATEGIST)
    assert hold.keeper == ALICE
    with pytest.raises(Unauthorized):
        hold.set_rewards("elsewhere", sender=GOV)
    hold.set_rewards("elsewhere", sender=STRATEGIST)
    assert hold.rewards == "elsewhere"


def test_initialize_only_once(pool, hold):
    with pytest.raises(StateError) as exc:
        hold.initialize(pool, STRATEGIST, STRATEGIST, KEEPER)
    assert exc.value.reason == "already_initialized"


def test_sweep_protections(env, want, pool, hold):
    with pytest.raises(InvariantViolation) as exc:
        hold.sweep(want, sender=GOV)
    assert exc.value.reason == "protected_want"
    with pytest.raises(InvariantViolation) as exc:
        hold.sweep(pool, sender=GOV)
    assert exc.value.reason == "protected_pool"

    stray = Token(env, "AIR", 18)
    stray.mint(hold.address, 3)
    with pytest.raises(Unauthorized):
        hold.sweep(stray, sender=STRATEGIST)
    assert hold.sweep(stray, sender=GOV) == 3
    assert stray.balance_of(GOV) == 3


def test_withdraw_only_from_pool(hold):
    with pytest.raises(Unauthorized):
        hold.withdraw(1, sender=ALICE)


def test_unknown_kind(env, pool):
    with pytest.raises(InvariantViolation) as exc:
        deploy_strategy(env, pool, "martingale", STRATEGIST)
    assert exc.value.reason == "unknown_kind"
