from typing import Dict, Tuple

import pytest

from poolsim.config import SCALE, ProtocolConfig
from poolsim.controller import Controller
from poolsim.core import Vault, to_units
from poolsim.pool import Pool
from poolsim.venues import InMemoryVenue, VenueInfo


class ManualSource:
    """Reward source whose cumulative earnings are set by the test."""

    def __init__(self) -> None:
        self.total: Dict[str, int] = {}
        self.minted: Dict[str, int] = {}

    def add(self, kind: str, amount: int) -> None:
        self.total[kind] = self.total.get(kind, 0) + amount

    def earned(self, kind: str) -> int:
        return self.total.get(kind, 0)

    def harvest(self, kind: str, vault: Vault) -> int:
        amount = self.earned(kind) - self.minted.get(kind, 0)
        if amount <= 0:
            return 0
        vault.add(kind, amount)
        self.minted[kind] = self.minted.get(kind, 0) + amount
        return amount


def register_venue(controller: Controller, venue_id: str, underlying: str, **kwargs) -> InMemoryVenue:
    venue = InMemoryVenue(
        venue_id=venue_id,
        lp_token=f"LP:{venue_id}",
        coins=(underlying,),
        yield_token=controller.cfg.yield_token,
        clock=controller.clock,
        **kwargs,
    )
    controller.adapter.add(venue)
    controller.registry.register(VenueInfo(venue_id=venue_id, lp_token=venue.lp_token, coins=venue.coins))
    controller.oracle.set_lp_pricing(venue.lp_token, venue, underlying)
    return venue


@pytest.fixture
def units():
    return to_units


@pytest.fixture
def controller():
    c = Controller(ProtocolConfig())
    c.oracle.set_price("USDC", SCALE)
    c.oracle.set_price("DAI", SCALE)
    return c


@pytest.fixture
def make_pool(controller):
    """Build a pool over fresh venues; ``weights`` maps venue ids to float weights."""

    def _make(pool_id: str, underlying: str, weights: Dict[str, float],
              **venue_kwargs) -> Tuple[Pool, Dict[str, InMemoryVenue]]:
        pool = controller.create_pool(pool_id, underlying)
        venues = {}
        for venue_id in weights:
            venues[venue_id] = register_venue(controller, venue_id, underlying, **venue_kwargs)
            ok, reason = pool.add_venue(venue_id)
            assert ok, reason
        fixed = {v: to_units(w) for v, w in weights.items()}
        largest = max(fixed, key=fixed.get)
        fixed[largest] += SCALE - sum(fixed.values())
        ok, reason = controller.update_weights(pool_id, fixed)
        assert ok, reason
        return pool, venues

    return _make


@pytest.fixture
def pool_and_venues(make_pool):
    return make_pool("usdc", "USDC", {"a": 0.6, "b": 0.4})


@pytest.fixture
def pool(pool_and_venues):
    return pool_and_venues[0]


@pytest.fixture
def venues(pool_and_venues):
    return pool_and_venues[1]


@pytest.fixture
def funded(controller):
    def _fund(account: str, asset: str, amount: float) -> str:
        controller.fund(account, asset, to_units(amount))
        return account

    return _fund


@pytest.fixture
def source():
    return ManualSource()


@pytest.fixture
def new_venue(controller):
    def _new(venue_id: str, underlying: str = "USDC", **kwargs) -> InMemoryVenue:
        return register_venue(controller, venue_id, underlying, **kwargs)

    return _new
