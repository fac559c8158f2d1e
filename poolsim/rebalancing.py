from __future__ import annotations
from typing import TYPE_CHECKING

from .core import clamp, div_down, mul_down

if TYPE_CHECKING:
    from .controller import Controller
    from .pool import Pool


def compute_rebalancing_reward(deviation_before: int, deviation_after: int,
                               deviation_after_update: int, elapsed: int, rate: int) -> int:
    """Reward for moving a pool back toward its target weights.

    Making the deviation worse or leaving it unchanged earns nothing and costs
    nothing. Otherwise the payout is the emission since the last weight change
    at ``rate`` scaled by the share of the post-update deviation removed.
    """
    if deviation_after >= deviation_before:
        return 0
    if deviation_after_update <= 0 or elapsed <= 0 or rate <= 0:
        return 0
    improvement = div_down(deviation_before - deviation_after, deviation_after_update)
    return mul_down(elapsed * rate, improvement)


class RebalancingIncentive:
    def __init__(self, controller: "Controller") -> None:
        self.controller = controller
        self.cfg = controller.cfg

    def tvl_multiplier(self, pool_usd: int) -> int:
        return clamp(div_down(pool_usd, self.cfg.tvl_reference_usd),
                     self.cfg.min_tvl_multiplier, self.cfg.max_tvl_multiplier)

    def reward_rate(self, pool: "Pool") -> int:
        inflation = self.controller.inflation
        base = mul_down(inflation.current_inflation_rate(), self.cfg.rebalancing_reward_share)
        weighted = mul_down(base, inflation.pool_weight(pool.pool_id))
        return mul_down(weighted, self.tvl_multiplier(inflation.pool_usd.get(pool.pool_id, 0)))

    def reward_for(self, pool: "Pool", deviation_before: int, deviation_after: int) -> int:
        if pool.last_weight_update is None:
            return 0
        elapsed = self.controller.clock.now - pool.last_weight_update
        return compute_rebalancing_reward(
            deviation_before,
            deviation_after,
            pool.total_deviation_after_last_weight_update,
            elapsed,
            self.reward_rate(pool),
        )
