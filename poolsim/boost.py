"""Boost multipliers applied to an account's stake for reward accrual.

Two flavours live here. Staking boost combines a time component, which ramps
from a starting factor to 1.0 and is diluted when stake is added, with a
stake-share component that favours relatively large participants. Vote-lock
boost is fixed when the lock is created and depends only on its duration.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Tuple

from .config import ProtocolConfig, SCALE
from .core import Clock, mul_down, div_down, clamp


@dataclass
class TimeBoostRecord:
    factor: int
    last_update: int


class BoostCalculator:
    def __init__(self, cfg: ProtocolConfig, clock: Clock) -> None:
        self.cfg = cfg
        self.clock = clock
        self.records: Dict[Tuple[str, str], TimeBoostRecord] = {}

    def _grown(self, record: TimeBoostRecord) -> int:
        elapsed = max(0, self.clock.now - record.last_update)
        growth = (SCALE - self.cfg.time_starting_factor) * elapsed // self.cfg.time_boost_ramp
        return min(SCALE, record.factor + growth)

    def time_boost(self, pool_id: str, account: str) -> int:
        record = self.records.get((pool_id, account))
        if record is None:
            return self.cfg.time_starting_factor
        return self._grown(record)

    def on_stake_added(self, pool_id: str, account: str, old_stake: int, added: int) -> int:
        """Blend the current time boost with the starting factor, weighted by stake."""
        key = (pool_id, account)
        current = self.time_boost(pool_id, account)
        new_total = old_stake + added
        if new_total <= 0:
            blended = current
        else:
            blended = (current * old_stake + self.cfg.time_starting_factor * added) // new_total
        self.records[key] = TimeBoostRecord(factor=blended, last_update=self.clock.now)
        return blended

    def on_stake_removed(self, pool_id: str, account: str, remaining: int) -> None:
        key = (pool_id, account)
        if remaining <= 0:
            self.records.pop(key, None)
            return
        self.records[key] = TimeBoostRecord(factor=self.time_boost(pool_id, account), last_update=self.clock.now)

    def stake_boost(self, account_stake: int, total_stake: int) -> int:
        if total_stake <= 0:
            return SCALE
        return SCALE + mul_down(div_down(account_stake, total_stake), self.cfg.tvl_factor)

    def total_boost(self, pool_id: str, account: str, account_stake: int, total_stake: int) -> int:
        boost = mul_down(self.stake_boost(account_stake, total_stake), self.time_boost(pool_id, account))
        return clamp(boost, self.cfg.min_boost, self.cfg.max_boost)


def lock_boost(cfg: ProtocolConfig, lock_time: int) -> int:
    """Linear in lock duration between the configured min and max lock boosts."""
    lock_time = clamp(lock_time, cfg.min_lock_time, cfg.max_lock_time)
    span = cfg.max_lock_time - cfg.min_lock_time
    progress = div_down(lock_time - cfg.min_lock_time, span)
    return cfg.min_boost_lock + mul_down(cfg.max_boost_lock - cfg.min_boost_lock, progress)
