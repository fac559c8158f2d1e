from __future__ import annotations
from typing import TYPE_CHECKING, Dict, List, Tuple
import logging

from .core import Event, OperationFailed, Receipt, Vault, mul_down
from .ledger import FeeStream, StreamingRewardLedger

if TYPE_CHECKING:
    from .controller import Controller
    from .pool import Pool

logger = logging.getLogger(__name__)

STAKER_ACCOUNT = "lp_staker"


class PoolRewardSource:
    """What a pool has earned: its inflation share plus yield from its venues."""

    def __init__(self, pool: "Pool") -> None:
        self.pool = pool
        self.gov = pool.cfg.gov_token
        self.yield_token = pool.cfg.yield_token
        self.yield_claimed = 0

    @property
    def _distributor(self) -> StreamingRewardLedger:
        return self.pool.controller.inflation.distributor

    def earned(self, kind: str) -> int:
        pool_id = self.pool.pool_id
        if kind == self.gov:
            return self._distributor.claimed_by(pool_id, kind) + self._distributor.claimable(pool_id)[kind]
        if kind == self.yield_token:
            adapter = self.pool.controller.adapter
            pending = sum(adapter.pending_yield(pool_id, v) for v in sorted(self.pool.venues_seen))
            return self.yield_claimed + pending
        return 0

    def harvest(self, kind: str, vault: Vault) -> int:
        pool_id = self.pool.pool_id
        if kind == self.gov:
            return self._distributor.claim(pool_id, vault).get(kind, 0)
        if kind == self.yield_token:
            adapter = self.pool.controller.adapter
            amount = sum(adapter.claim_yield(pool_id, vault, v) for v in sorted(self.pool.venues_seen))
            self.yield_claimed += amount
            return amount
        return 0


class LpStaker:
    """Holds staked pool shares and keeps each pool's reward ledger on boosted stake."""

    def __init__(self, controller: "Controller") -> None:
        self.controller = controller
        self.cfg = controller.cfg
        self.stakes: Dict[Tuple[str, str], int] = {}
        self.totals: Dict[str, int] = {}

    def register_pool(self, pool: "Pool") -> StreamingRewardLedger:
        ledger = StreamingRewardLedger(
            f"pool:{pool.pool_id}",
            [self.cfg.gov_token, self.cfg.yield_token],
            PoolRewardSource(pool),
            fee_rates={self.cfg.yield_token: self.cfg.reward_fee_rate},
        )
        pool.rewards = ledger
        self.controller.locker.add_fee_source(FeeStream(ledger))
        self.totals.setdefault(pool.pool_id, 0)
        return ledger

    def _scope(self, account: str, pool_id: str) -> List[object]:
        return self.controller.pool_scope(self.controller.pools.get(pool_id), account)

    def staked_of(self, account: str, pool_id: str) -> int:
        return self.stakes.get((pool_id, account), 0)

    def boost_of(self, account: str, pool_id: str) -> int:
        return self.controller.boost.total_boost(pool_id, account, self.staked_of(account, pool_id),
                                                 self.totals.get(pool_id, 0))

    def _refresh(self, account: str, pool: "Pool") -> int:
        stake = self.staked_of(account, pool.pool_id)
        boosted = mul_down(stake, self.boost_of(account, pool.pool_id)) if stake else 0
        pool.rewards.set_balance(account, boosted)
        return boosted

    # -- internal, run inside an enclosing operation --------------------------
    def _stake(self, account: str, pool_id: str, shares: int) -> int:
        pool = self.controller.pool(pool_id)
        if shares <= 0:
            raise OperationFailed("zero_amount")
        pool.rewards.account_checkpoint(account)
        if not pool.transfer_shares(account, STAKER_ACCOUNT, shares):
            raise OperationFailed("insufficient_shares")
        old = self.staked_of(account, pool_id)
        self.controller.boost.on_stake_added(pool_id, account, old, shares)
        self.stakes[(pool_id, account)] = old + shares
        self.totals[pool_id] = self.totals.get(pool_id, 0) + shares
        boosted = self._refresh(account, pool)
        self.controller.log.add(Event(self.controller.clock.now, "STAKE", actor_id=account, pool_id=pool_id,
                                      amount=shares, meta={"boosted": boosted}))
        return boosted

    def _unstake(self, account: str, pool_id: str, shares: int) -> int:
        pool = self.controller.pool(pool_id)
        if shares <= 0:
            raise OperationFailed("zero_amount")
        old = self.staked_of(account, pool_id)
        if old < shares:
            raise OperationFailed("insufficient_stake")
        pool.rewards.account_checkpoint(account)
        remaining = old - shares
        if remaining:
            self.stakes[(pool_id, account)] = remaining
        else:
            self.stakes.pop((pool_id, account), None)
        self.totals[pool_id] -= shares
        self.controller.boost.on_stake_removed(pool_id, account, remaining)
        pool.transfer_shares(STAKER_ACCOUNT, account, shares)
        boosted = self._refresh(account, pool)
        self.controller.log.add(Event(self.controller.clock.now, "UNSTAKE", actor_id=account, pool_id=pool_id,
                                      amount=shares, meta={"boosted": boosted}))
        return boosted

    # -- operations ------------------------------------------------------------
    def stake(self, account: str, pool_id: str, shares: int) -> Receipt:
        def run() -> Receipt:
            boosted = self._stake(account, pool_id, shares)
            return Receipt(tick=self.controller.clock.now, action="STAKE", actor=account, pool_id=pool_id,
                           amount_in=shares, meta={"boosted": boosted})
        return self.controller.execute("STAKE", account, pool_id, run, amount_in=shares,
                                       scope=self._scope(account, pool_id))

    def unstake(self, account: str, pool_id: str, shares: int) -> Receipt:
        def run() -> Receipt:
            boosted = self._unstake(account, pool_id, shares)
            return Receipt(tick=self.controller.clock.now, action="UNSTAKE", actor=account, pool_id=pool_id,
                           amount_out=shares, meta={"boosted": boosted})
        return self.controller.execute("UNSTAKE", account, pool_id, run, amount_in=shares,
                                       scope=self._scope(account, pool_id))

    def update_boost(self, account: str, pool_id: str) -> Receipt:
        def run() -> Receipt:
            if self.staked_of(account, pool_id) == 0:
                raise OperationFailed("nothing_staked")
            boosted = self._refresh(account, self.controller.pool(pool_id))
            return Receipt(tick=self.controller.clock.now, action="UPDATE_BOOST", actor=account,
                           pool_id=pool_id, meta={"boosted": boosted})
        return self.controller.execute("UPDATE_BOOST", account, pool_id, run, scope=self._scope(account, pool_id))

    def claim_rewards(self, account: str, pool_id: str) -> Receipt:
        def run() -> Receipt:
            pool = self.controller.pool(pool_id)
            amounts = pool.rewards.claim(account, self.controller.wallet(account))
            if self.staked_of(account, pool_id):
                self._refresh(account, pool)
            total = sum(amounts.values())
            self.controller.log.add(Event(self.controller.clock.now, "CLAIM", actor_id=account, pool_id=pool_id,
                                          amount=total, meta=dict(amounts)))
            return Receipt(tick=self.controller.clock.now, action="CLAIM", actor=account, pool_id=pool_id,
                           amount_out=total, meta=dict(amounts))
        return self.controller.execute("CLAIM", account, pool_id, run, scope=self._scope(account, pool_id))
