from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

from .core import mul_down


@dataclass
class Hop:
    venue_id: str
    amount: int


@dataclass
class RoutePlan:
    ok: bool
    reason: str
    hops: List[Hop] = field(default_factory=list)
    leftover: int = 0
    rounds: int = 0

    @property
    def total(self) -> int:
        return sum(h.amount for h in self.hops)


class Router:
    """
    Greedy band-edge routing. Each round picks the venue with the most room
    before the edge of its target band and fills it up to that edge (or
    places whatever is left). A venue that has been filled sits above its
    target and is never picked again, so a plan needs at most one round per
    venue.
    """
    def __init__(self, max_deviation: int, dust: int = 0) -> None:
        self.max_deviation = max_deviation
        self.dust = dust

    @staticmethod
    def deposit_venue(total: int, weights: Sequence[int], allocated: Sequence[int],
                      max_deviation: int) -> Tuple[int, int]:
        best, best_room = -1, 0
        for i, (weight, alloc) in enumerate(zip(weights, allocated)):
            target = mul_down(total, weight)
            if alloc >= target:
                continue
            room = target + mul_down(target, max_deviation) - alloc
            if room <= best_room:
                continue
            best, best_room = i, room
        return best, best_room

    @staticmethod
    def withdraw_venue(total: int, weights: Sequence[int], allocated: Sequence[int],
                       max_deviation: int) -> Tuple[int, int]:
        best, best_excess = -1, 0
        for i, (weight, alloc) in enumerate(zip(weights, allocated)):
            target = mul_down(total, weight)
            if alloc <= target:
                continue
            floor = target - mul_down(target, max_deviation)
            excess = alloc - floor
            if excess <= best_excess:
                continue
            best, best_excess = i, excess
        return best, best_excess

    def plan_deposit(self, total_after: int, venue_ids: Sequence[str], weights: Sequence[int],
                     allocated: Sequence[int], amount: int) -> RoutePlan:
        return self._plan(total_after, venue_ids, weights, allocated, amount,
                          self.deposit_venue, 1, "no_deposit_venue")

    def plan_withdrawal(self, total_after: int, venue_ids: Sequence[str], weights: Sequence[int],
                        allocated: Sequence[int], amount: int) -> RoutePlan:
        return self._plan(total_after, venue_ids, weights, allocated, amount,
                          self.withdraw_venue, -1, "no_withdraw_venue")

    def _plan(self, total: int, venue_ids, weights, allocated, amount: int,
              pick, sign: int, fail_reason: str) -> RoutePlan:
        alloc = list(allocated)
        remaining = int(amount)
        hops: List[Hop] = []
        rounds = 0
        # each round either places everything or fills one venue past its target
        for _ in range(len(venue_ids)):
            if remaining <= self.dust:
                break
            idx, room = pick(total, weights, alloc, self.max_deviation)
            if idx < 0:
                return RoutePlan(ok=False, reason=fail_reason, hops=hops, leftover=remaining, rounds=rounds)
            step = min(room, remaining)
            hops.append(Hop(venue_id=venue_ids[idx], amount=step))
            alloc[idx] += sign * step
            remaining -= step
            rounds += 1
        if remaining > self.dust:
            return RoutePlan(ok=False, reason=fail_reason, hops=hops, leftover=remaining, rounds=rounds)
        return RoutePlan(ok=True, reason="ok", hops=hops, leftover=remaining, rounds=rounds)
