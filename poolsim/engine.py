from __future__ import annotations
from collections import Counter
from typing import Dict, List, Optional
import logging
import numpy as np
import random

from .config import DAY, SCALE, ScenarioConfig
from .core import Event, Receipt, from_units, mul_down, to_units
from .factory import Agent, ProtocolFactory
from .metrics import MetricsStore
from .pool import Pool

logger = logging.getLogger(__name__)

KEEPER = "keeper"


class SimulationEngine:
    """Drives agents, governance and a keeper against one controller, tick by tick."""

    def __init__(self, cfg: ScenarioConfig, seed: int = 1) -> None:
        self.cfg = cfg
        self.rng = random.Random(seed)
        self.np_rng = np.random.default_rng(seed)

        self.tick: int = 0
        self.metrics = MetricsStore()
        self.factory = ProtocolFactory(cfg, self.np_rng)
        self.controller = self.factory.controller
        self.log = self.controller.log

        self.agents: Dict[str, Agent] = {}
        self._ops_tick: Counter = Counter()
        self._depegged_venue: Optional[str] = None

        self._bootstrap()

    def _bootstrap(self) -> None:
        symbols = self.cfg.underlying_symbols
        for i in range(self.cfg.num_pools):
            pool = self.factory.create_pool(symbols[i % len(symbols)])
            self.factory.seed_liquidity(pool)
        pool_ids = list(self.controller.pools)
        for _ in range(self.cfg.num_agents):
            agent = self.factory.create_agent(pool_ids)
            self.agents[agent.agent_id] = agent
        logger.info("bootstrapped %d pools and %d agents", len(pool_ids), len(self.agents))
        self.snapshot_metrics()

    @property
    def pools(self) -> Dict[str, Pool]:
        return self.controller.pools

    def _record(self, receipt: Receipt) -> Receipt:
        self._ops_tick[(receipt.action, receipt.status)] += 1
        return receipt

    # -----------------------------
    # Agent behaviour
    # -----------------------------
    def _pick_pool(self, agent: Agent) -> Pool:
        if self.rng.random() < 0.7:
            return self.pools[agent.home_pool]
        return self.pools[self.rng.choice(agent.pools)]

    def _agent_deposit(self, agent: Agent) -> None:
        pool = self._pick_pool(agent)
        if pool.is_shutdown:
            return
        wallet = self.controller.wallet(agent.agent_id)
        amount = min(to_units(float(self.np_rng.exponential(self.cfg.deposit_mean))), wallet.get(pool.underlying))
        if amount <= 0:
            return
        self._record(pool.deposit(agent.agent_id, amount, stake=self.cfg.stake_on_deposit))

    def _agent_withdraw(self, agent: Agent) -> None:
        staker = self.controller.staker
        held = [(p, staker.staked_of(agent.agent_id, p.pool_id), p.share_balance(agent.agent_id))
                for p in self.pools.values()]
        held = [h for h in held if h[1] > 0 or h[2] > 0]
        if not held:
            return
        pool, staked, free = self.rng.choice(held)
        frac = min(1.0, float(self.np_rng.exponential(self.cfg.withdraw_frac_mean)))
        if staked > 0:
            shares = min(staked, max(1, int(staked * frac)))
            self._record(pool.unstake_and_withdraw(agent.agent_id, shares))
        else:
            shares = min(free, max(1, int(free * frac)))
            self._record(pool.withdraw(agent.agent_id, shares))

    def _agent_claim(self, agent: Agent) -> None:
        staker = self.controller.staker
        for pool in self.pools.values():
            if staker.staked_of(agent.agent_id, pool.pool_id) > 0:
                self._record(staker.claim_rewards(agent.agent_id, pool.pool_id))
        locker = self.controller.locker
        if locker.locked_balance(agent.agent_id) > 0:
            self._record(locker.claim_fees(agent.agent_id))

    def _agent_lock(self, agent: Agent) -> None:
        c = self.controller
        gov = c.wallet(agent.agent_id).get(c.cfg.gov_token)
        if gov <= 0:
            return
        span = c.cfg.max_lock_time - c.cfg.min_lock_time
        lock_time = c.cfg.min_lock_time + int(span * agent.lock_preference)
        relock = bool(c.locker.locks_of(agent.agent_id)) and agent.lock_preference > 0.5
        self._record(c.locker.lock(agent.agent_id, gov, lock_time, relock=relock))

    def _agent_unlocks(self, agent: Agent) -> None:
        if self.controller.locker.unlockable_balance(agent.agent_id) > 0:
            self._record(self.controller.locker.execute_available_unlocks(agent.agent_id))

    # -----------------------------
    # Governance and keeper
    # -----------------------------
    def _drift_weights(self) -> None:
        drift = self.cfg.weight_drift
        for pool in self.pools.values():
            if pool.is_shutdown:
                continue
            current = np.array([from_units(w) for w in pool.weight_list()])
            live = current > 0
            if live.sum() < 2:
                continue
            shocked = current * np.exp(self.np_rng.normal(0.0, drift, size=len(current)))
            shocked[~live] = 0.0
            shocked = shocked / shocked.sum()
            weights = [int(w * SCALE) for w in shocked]
            weights[int(np.argmax(weights))] += SCALE - sum(weights)
            ok, reason = self.controller.update_weights(pool.pool_id, dict(zip(pool.venue_ids, weights)))
            if not ok:
                logger.info("weight update on %s skipped: %s", pool.pool_id, reason)

    def _apply_depeg(self) -> None:
        pools = list(self.pools.values())
        pool = pools[self.cfg.depeg_pool_index % len(pools)]
        venue_id = pool.venue_ids[self.cfg.depeg_venue_index % len(pool.venue_ids)]
        venue = self.factory.venues[venue_id]
        venue.virtual_price = mul_down(venue.virtual_price, SCALE - to_units(self.cfg.depeg_size))
        self._depegged_venue = venue_id
        self.log.add(Event(self.controller.clock.now, "VENUE_DEPEG_SHOCK", pool_id=pool.pool_id,
                           meta={"venue": venue_id, "virtual_price": venue.virtual_price}))
        logger.warning("depeg shock on %s: virtual price now %.4f", venue_id, from_units(venue.virtual_price))

    def _keeper(self) -> None:
        for pool in self.pools.values():
            for venue_id in list(pool.venue_ids):
                if pool.weights.get(venue_id, 0) == 0:
                    continue
                ok, _ = pool.handle_depegged_venue(venue_id, caller=KEEPER)
                if not ok and self.controller.registry.is_shutdown(venue_id):
                    pool.handle_shutdown_venue(venue_id, caller=KEEPER)

    # -----------------------------
    # Main loop
    # -----------------------------
    def step(self, n_ticks: int = 1) -> None:
        for _ in range(n_ticks):
            self.tick += 1
            self._ops_tick = Counter()
            self.controller.advance(self.cfg.tick_seconds)

            if self.cfg.depeg_tick is not None and self.tick == self.cfg.depeg_tick:
                self._apply_depeg()
            self._keeper()

            every = int(self.cfg.weight_update_every_ticks or 0)
            if every > 0 and self.tick % every == 0:
                self._drift_weights()

            agents: List[Agent] = list(self.agents.values())
            self.rng.shuffle(agents)
            for agent in agents:
                if self.rng.random() < self.cfg.p_deposit:
                    self._agent_deposit(agent)
                if self.rng.random() < self.cfg.p_withdraw:
                    self._agent_withdraw(agent)
                if self.rng.random() < self.cfg.p_claim:
                    self._agent_claim(agent)
                if self.rng.random() < self.cfg.p_lock:
                    self._agent_lock(agent)
                self._agent_unlocks(agent)

            self.snapshot_metrics()

    # -----------------------------
    # Metrics
    # -----------------------------
    def snapshot_metrics(self) -> None:
        cfg = self.cfg
        metrics_stride = int(cfg.metrics_stride or 0)
        pool_stride = int(cfg.pool_metrics_stride or 0)
        do_protocol = metrics_stride > 0 and self.tick % metrics_stride == 0
        do_pool = pool_stride > 0 and self.tick % pool_stride == 0
        if not do_protocol and not do_pool:
            return
        c = self.controller
        gov, yld = c.cfg.gov_token, c.cfg.yield_token

        if do_pool:
            pool_rows, venue_rows = [], []
            for pid, p in self.pools.items():
                snap = p.snapshot()
                pool_rows.append({
                    "tick": self.tick,
                    "pool_id": pid,
                    "underlying": p.underlying,
                    "total_value": from_units(snap.total),
                    "allocated": from_units(snap.allocated_total),
                    "idle": from_units(p.idle()),
                    "deviation_ratio": from_units(p.deviation_ratio(snap)),
                    "rebalancing_active": p.rebalancing_active,
                    "exchange_rate": from_units(p.exchange_rate(snap.total)),
                    "total_shares": from_units(p.total_shares),
                    "staked": from_units(c.staker.totals.get(pid, 0)),
                    "inflation_weight": from_units(c.inflation.pool_weight(pid)),
                    "gov_reserves": from_units(p.rewards.reserves(gov)),
                    "yield_reserves": from_units(p.rewards.reserves(yld)),
                    "is_shutdown": p.is_shutdown,
                })
                for venue_id, alloc in zip(p.venue_ids, snap.per_venue):
                    venue = self.factory.venues.get(venue_id)
                    venue_rows.append({
                        "tick": self.tick,
                        "pool_id": pid,
                        "venue_id": venue_id,
                        "target_weight": from_units(p.weights[venue_id]),
                        "allocated": from_units(alloc),
                        "virtual_price": from_units(venue.virtual_price) if venue else None,
                    })
            self.metrics.add_pool_rows(pool_rows)
            self.metrics.add_venue_rows(venue_rows)

        if do_protocol:
            ok_ops = sum(n for (_, status), n in self._ops_tick.items() if status == "executed")
            failed_ops = sum(n for (_, status), n in self._ops_tick.items() if status == "failed")
            self.metrics.add_protocol({
                "tick": self.tick,
                "time_days": c.clock.now / DAY,
                "inflation_rate_per_day": from_units(c.inflation.current_inflation_rate() * DAY),
                "gov_minted": from_units(c.inflation.total_minted()),
                "rebalancing_minted": from_units(c.inflation.rebalancing_minted),
                "total_usd": from_units(c.inflation.total_usd()),
                "gov_locked": from_units(c.locker.total_locked),
                "locker_fee_reserves": from_units(c.locker.ledger.reserves(yld)),
                "ops_executed": ok_ops,
                "ops_failed": failed_ops,
                "deposits": self._ops_tick.get(("DEPOSIT", "executed"), 0),
                "withdrawals": self._ops_tick.get(("WITHDRAW", "executed"), 0),
                "events": len(self.log.events),
            })
