from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List
import numpy as np

from .config import DAY, SCALE, ScenarioConfig
from .controller import Controller
from .core import to_units
from .pool import Pool
from .venues import InMemoryVenue, VenueInfo


@dataclass
class Agent:
    agent_id: str
    home_pool: str
    lock_preference: float  # 0 = shortest lock, 1 = longest
    pools: List[str] = field(default_factory=list)


class ProtocolFactory:
    """Wires a controller, its venues and a population of agents from a scenario."""

    def __init__(self, cfg: ScenarioConfig, rng: np.random.Generator) -> None:
        self.cfg = cfg
        self.rng = rng
        self.controller = Controller(cfg.protocol, event_log_maxlen=cfg.event_log_maxlen)
        self.venues: Dict[str, InMemoryVenue] = {}
        self.pool_counter = 0
        self.agent_counter = 0

    def _new_pool_id(self) -> str:
        self.pool_counter += 1
        return f"pool_{self.pool_counter:04d}"

    def _new_agent_id(self) -> str:
        self.agent_counter += 1
        return f"agent_{self.agent_counter:04d}"

    def create_venue(self, venue_id: str, underlying: str) -> InMemoryVenue:
        c = self.controller
        venue = InMemoryVenue(
            venue_id=venue_id,
            lp_token=f"LP:{venue_id}",
            coins=(underlying,),
            yield_token=c.cfg.yield_token,
            clock=c.clock,
            slippage=to_units(self.cfg.venue_slippage),
            yield_rate=to_units(self.cfg.venue_yield_per_lp_per_day) // DAY,
        )
        c.adapter.add(venue)
        c.registry.register(VenueInfo(venue_id=venue_id, lp_token=venue.lp_token, coins=venue.coins))
        c.oracle.set_lp_pricing(venue.lp_token, venue, underlying)
        self.venues[venue_id] = venue
        return venue

    def create_pool(self, underlying: str) -> Pool:
        c = self.controller
        if not c.oracle.is_supported(underlying):
            c.oracle.set_price(underlying, SCALE)
        pool_id = self._new_pool_id()
        pool = c.create_pool(pool_id, underlying)
        pool.debug_inventory = self.cfg.debug_inventory

        n = self.cfg.venues_per_pool
        for j in range(n):
            venue = self.create_venue(f"{pool_id}:v{j + 1}", underlying)
            ok, reason = pool.add_venue(venue.venue_id)
            if not ok:
                raise RuntimeError(f"could not add {venue.venue_id} to {pool_id}: {reason}")

        # uneven starting weights so governance has something to move
        raw = self.rng.dirichlet(np.ones(n) * 4.0)
        weights = [int(w * SCALE) for w in raw]
        weights[int(np.argmax(weights))] += SCALE - sum(weights)
        ok, reason = c.update_weights(pool_id, dict(zip(pool.venue_ids, weights)))
        if not ok:
            raise RuntimeError(f"could not set weights on {pool_id}: {reason}")
        return pool

    def create_agent(self, pool_ids: List[str]) -> Agent:
        agent_id = self._new_agent_id()
        home = pool_ids[int(self.rng.integers(len(pool_ids)))]
        agent = Agent(
            agent_id=agent_id,
            home_pool=home,
            lock_preference=float(self.rng.uniform()),
            pools=list(pool_ids),
        )
        balance = to_units(self.cfg.agent_initial_balance)
        for symbol in sorted({self.controller.pools[pid].underlying for pid in pool_ids}):
            self.controller.fund(agent_id, symbol, balance)
        return agent

    def seed_liquidity(self, pool: Pool) -> None:
        amount = to_units(self.cfg.seed_liquidity_per_pool)
        if amount <= 0:
            return
        seeder = f"seed:{pool.pool_id}"
        self.controller.fund(seeder, pool.underlying, amount)
        receipt = pool.deposit(seeder, amount, stake=True)
        if not receipt.ok:
            raise RuntimeError(f"seed deposit into {pool.pool_id} failed: {receipt.fail_reason}")
