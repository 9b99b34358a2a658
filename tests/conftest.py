import pytest

from vaultsim.core import Environment, Token, WAD
from vaultsim.pool import Pool
from vaultsim.markets import LendingMarket
from vaultsim.lenders import LendingMarketLender
from vaultsim.strategies import deploy_strategy

UNIT = 10**6
PRINCIPAL = 1_000_000 * UNIT

GOV = "governance"
MGMT = "management"
GUARDIAN = "guardian"
TREASURY = "treasury"
STRATEGIST = "strategist"
KEEPER = "keeper"
ALICE = "alice"


@pytest.fixture
def env():
    return Environment(start_time=1_700_000_000)


@pytest.fixture
def want(env):
    return Token(env, "USDT", 6)


@pytest.fixture
def pool(env, want):
    return Pool(env, want, GOV, TREASURY, guardian=GUARDIAN, management=MGMT)


@pytest.fixture
def fund(want, pool):
    """Mint ``amount`` to ``who`` and deposit it; returns the shares issued."""

    def _fund(who: str, amount: int) -> int:
        want.mint(who, amount)
        return pool.deposit(amount, sender=who)

    return _fund


@pytest.fixture
def funded(fund):
    fund(ALICE, PRINCIPAL)
    return ALICE


@pytest.fixture
def hold(env, pool, funded):
    strategy = deploy_strategy(env, pool, "hold", STRATEGIST, keeper=KEEPER)
    pool.add_strategy(strategy, 10_000, sender=GOV)
    return strategy


@pytest.fixture
def markets(env, want):
    out = []
    for idx, apr in enumerate((0.05, 0.10, 0.20)):
        market = LendingMarket(env, want, f"market_{idx + 1}", int(apr * WAD))
        market.seed_liquidity(PRINCIPAL)
        out.append(market)
    return out


@pytest.fixture
def lender_strategy(env, pool, funded, markets):
    strategy = deploy_strategy(env, pool, "lender", STRATEGIST, keeper=KEEPER, name="StrategyLenderYieldOptimiser")
    for idx, market in enumerate(markets):
        lender = LendingMarketLender(strategy, f"GenericLender_{idx + 1}", market)
        strategy.variant.add_lender(lender, sender=GOV)
    pool.add_strategy(strategy, 10_000, sender=GOV)
    return strategy


@pytest.fixture
def allocated(lender_strategy):
    """Lender strategy fully funded and split 400/300/300 across the 5%/10%/20% lenders."""
    lender_strategy.harvest(sender=KEEPER)
    l1, l2, l3 = lender_strategy.variant.lenders
    lender_strategy.variant.manual_allocation([(l1, 400), (l2, 300), (l3, 300)], sender=GOV)
    return lender_strategy
