from __future__ import annotations
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Set, Tuple
import logging

from .boost import lock_boost
from .config import SCALE
from .core import Event, OperationFailed, Receipt, Vault, mul_down, transfer
from .ledger import CompositeSource, EarnedSource, StreamingRewardLedger
from .venues import ProofVerifier

if TYPE_CHECKING:
    from .controller import Controller

logger = logging.getLogger(__name__)


@dataclass
class VoteLock:
    amount: int
    unlock_time: int
    boost: int

    @property
    def boosted(self) -> int:
        return mul_down(self.amount, self.boost)


class VoteLocker:
    """Time-locked governance tokens earning a share of venue-yield fees."""

    def __init__(self, controller: "Controller", verifier: Optional[ProofVerifier] = None) -> None:
        self.controller = controller
        self.cfg = controller.cfg
        self.token = self.cfg.gov_token
        self.verifier = verifier
        self.fee_source = CompositeSource()
        self.ledger = StreamingRewardLedger("locker", [self.cfg.yield_token], self.fee_source)
        self.vault = Vault()
        self.locks: Dict[str, List[VoteLock]] = {}
        self.total_locked = 0
        self.airdrop_boost: Dict[str, int] = {}
        self.airdrop_claimed: Set[str] = set()

    @property
    def now(self) -> int:
        return self.controller.clock.now

    def add_fee_source(self, source: EarnedSource) -> None:
        self.fee_source.add(source)

    # -- views -----------------------------------------------------------------
    def locks_of(self, account: str) -> List[VoteLock]:
        return list(self.locks.get(account, []))

    def locked_balance(self, account: str) -> int:
        return sum(lock.amount for lock in self.locks.get(account, []))

    def boosted_balance(self, account: str) -> int:
        return sum(lock.boosted for lock in self.locks.get(account, []))

    def unlockable_balance(self, account: str) -> int:
        return sum(lock.amount for lock in self.locks.get(account, []) if lock.unlock_time <= self.now)

    def _sync(self, account: str) -> None:
        self.ledger.set_balance(account, self.boosted_balance(account))

    # -- airdrop boost ---------------------------------------------------------
    def grant_airdrop_boost(self, account: str, multiplier: int, proof: object) -> Tuple[bool, str]:
        if self.verifier is None:
            return False, "no_verifier"
        if account in self.airdrop_claimed:
            return False, "already_claimed"
        if multiplier < SCALE:
            return False, "out_of_range"
        if not self.verifier(proof, (account, multiplier)):
            return False, "invalid_proof"
        self.airdrop_boost[account] = multiplier
        self.airdrop_claimed.add(account)
        return True, "ok"

    # -- operations ------------------------------------------------------------
    def lock(self, account: str, amount: int, lock_time: int, relock: bool = False) -> Receipt:
        def run() -> Receipt:
            if amount <= 0:
                raise OperationFailed("zero_amount")
            if not self.cfg.min_lock_time <= lock_time <= self.cfg.max_lock_time:
                raise OperationFailed("out_of_range")
            self.ledger.account_checkpoint(account)
            if not transfer(self.controller.wallet(account), self.vault, self.token, amount):
                raise OperationFailed("insufficient_balance")

            boost = lock_boost(self.cfg, lock_time)
            airdrop = self.airdrop_boost.pop(account, None)
            if airdrop:
                boost = mul_down(boost, airdrop)
            unlock_time = self.now + lock_time

            existing = self.locks.get(account, [])
            if relock and existing:
                if any(lock.unlock_time > unlock_time for lock in existing):
                    raise OperationFailed("unlock_time_earlier")
                merged_amount = sum(lock.amount for lock in existing) + amount
                weighted = sum(lock.amount * lock.boost for lock in existing) + amount * boost
                boost = weighted // merged_amount
                self.locks[account] = [VoteLock(merged_amount, unlock_time, boost)]
            else:
                self.locks.setdefault(account, []).append(VoteLock(amount, unlock_time, boost))
            self.total_locked += amount
            self._sync(account)

            self.controller.log.add(Event(self.now, "LOCK", actor_id=account, asset_id=self.token, amount=amount,
                                          meta={"unlock_time": unlock_time, "boost": boost, "relock": relock}))
            return Receipt(tick=self.now, action="LOCK", actor=account, amount_in=amount,
                           meta={"unlock_time": unlock_time, "boost": boost})
        return self.controller.execute("LOCK", account, None, run, amount_in=amount,
                                       scope=self.controller.locker_scope(account))

    def execute_available_unlocks(self, account: str) -> Receipt:
        def run() -> Receipt:
            self.ledger.account_checkpoint(account)
            kept, released = [], 0
            for lock in self.locks.get(account, []):
                if lock.unlock_time <= self.now:
                    released += lock.amount
                else:
                    kept.append(lock)
            if released == 0:
                raise OperationFailed("nothing_to_unlock")
            if kept:
                self.locks[account] = kept
            else:
                self.locks.pop(account, None)
            self.total_locked -= released
            transfer(self.vault, self.controller.wallet(account), self.token, released)
            self._sync(account)
            self.controller.log.add(Event(self.now, "UNLOCK", actor_id=account, asset_id=self.token,
                                          amount=released))
            return Receipt(tick=self.now, action="UNLOCK", actor=account, amount_out=released)
        return self.controller.execute("UNLOCK", account, None, run, scope=self.controller.locker_scope(account))

    def kick(self, kicker: str, account: str, index: int) -> Receipt:
        def run() -> Receipt:
            locks = self.locks.get(account, [])
            if not 0 <= index < len(locks):
                raise OperationFailed("unknown_lock")
            lock = locks[index]
            if lock.unlock_time + self.cfg.kick_grace_period > self.now:
                raise OperationFailed("lock_not_expired")
            self.ledger.account_checkpoint(account)
            locks.pop(index)
            if not locks:
                self.locks.pop(account, None)
            self.total_locked -= lock.amount
            penalty = mul_down(lock.amount, self.cfg.kick_penalty)
            transfer(self.vault, self.controller.wallet(kicker), self.token, penalty)
            transfer(self.vault, self.controller.wallet(account), self.token, lock.amount - penalty)
            self._sync(account)
            self.controller.log.add(Event(self.now, "KICK", actor_id=kicker, asset_id=self.token,
                                          amount=lock.amount, meta={"account": account, "penalty": penalty}))
            return Receipt(tick=self.now, action="KICK", actor=kicker, amount_out=penalty,
                           meta={"account": account, "returned": lock.amount - penalty})
        return self.controller.execute("KICK", kicker, None, run, scope=self.controller.locker_scope(kicker, account))

    def claim_fees(self, account: str) -> Receipt:
        def run() -> Receipt:
            amounts = self.ledger.claim(account, self.controller.wallet(account))
            total = sum(amounts.values())
            self.controller.log.add(Event(self.now, "CLAIM", actor_id=account, amount=total,
                                          meta={"source": "locker", **amounts}))
            return Receipt(tick=self.now, action="CLAIM_FEES", actor=account, amount_out=total, meta=dict(amounts))
        return self.controller.execute("CLAIM_FEES", account, None, run,
                                       scope=self.controller.locker_scope(account, with_fee_sources=True))
