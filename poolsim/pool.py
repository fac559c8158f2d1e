from __future__ import annotations
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union
import logging

from .config import SCALE
from .core import (
    Event, Receipt, ReceiptStore, Vault, OperationFailed, abs_sub, div_down, failed,
    format_inventory, mul_down, transfer,
)
from .router import Router, RoutePlan
from .venues import PriceError

if TYPE_CHECKING:
    from .controller import Controller
    from .ledger import StreamingRewardLedger

logger = logging.getLogger(__name__)

WeightsInput = Union[Mapping[str, int], Iterable[Tuple[str, int]]]


@dataclass
class AllocationSnapshot:
    total: int  # idle + allocated
    allocated_total: int
    per_venue: List[int]


class Pool:
    def __init__(self, pool_id: str, underlying: str, controller: "Controller") -> None:
        self.pool_id = pool_id
        self.underlying = underlying
        self.controller = controller
        self.cfg = controller.cfg
        self.debug_inventory: bool = False

        self.max_deviation = self.cfg.max_deviation
        self.depeg_threshold = self.cfg.depeg_threshold
        self.router = Router(max_deviation=self.max_deviation, dust=self.cfg.routing_dust)

        self.venue_ids: List[str] = []
        self.weights: Dict[str, int] = {}
        self.venues_seen: Set[str] = set()
        self.vault = Vault()  # idle underlying

        self.shares: Dict[str, int] = {}
        self.total_shares: int = 0

        self.rebalancing_active: bool = False
        self.total_deviation_after_last_weight_update: int = 0
        self.last_weight_update: Optional[int] = None
        self.is_shutdown: bool = False

        self._cached_total_value: int = 0
        self._cache_updated_at: Optional[int] = None
        self.cached_prices: Dict[str, int] = {}

        self.rewards: Optional["StreamingRewardLedger"] = None
        self.receipts = ReceiptStore()
        self._entered: bool = False

    # -----------------------------
    # Valuation
    # -----------------------------
    @property
    def now(self) -> int:
        return self.controller.clock.now

    def weight_list(self) -> List[int]:
        return [self.weights[v] for v in self.venue_ids]

    def lp_token(self, venue_id: str) -> str:
        return self.controller.registry.lp_token(venue_id)

    def allocated_value(self, venue_id: str) -> int:
        lp = self.controller.adapter.lp_balance(self.pool_id, venue_id)
        if lp == 0:
            return 0
        oracle = self.controller.oracle
        lp_price = oracle.get_usd_price(self.lp_token(venue_id))
        underlying_price = oracle.get_usd_price(self.underlying)
        return lp * lp_price // underlying_price

    def allocations(self) -> Dict[str, int]:
        return {v: self.allocated_value(v) for v in self.venue_ids}

    def idle(self) -> int:
        return self.vault.get(self.underlying)

    def snapshot(self) -> AllocationSnapshot:
        per_venue = [self.allocated_value(v) for v in self.venue_ids]
        allocated = sum(per_venue)
        return AllocationSnapshot(total=allocated + self.idle(), allocated_total=allocated, per_venue=per_venue)

    def total_value(self) -> int:
        return self.snapshot().total

    def target_allocations(self, total: Optional[int] = None) -> Dict[str, int]:
        if total is None:
            total = self.snapshot().allocated_total
        return {v: mul_down(total, self.weights[v]) for v in self.venue_ids}

    def compute_deviation(self, snap: AllocationSnapshot, weights: Optional[List[int]] = None) -> int:
        weights = self.weight_list() if weights is None else weights
        total = snap.allocated_total
        return sum(abs_sub(mul_down(total, w), alloc) for w, alloc in zip(weights, snap.per_venue))

    def deviation_ratio(self, snap: Optional[AllocationSnapshot] = None,
                        weights: Optional[List[int]] = None) -> int:
        snap = self.snapshot() if snap is None else snap
        if snap.allocated_total == 0:
            return 0
        return div_down(self.compute_deviation(snap, weights), snap.allocated_total)

    def total_deviation(self) -> int:
        return self.compute_deviation(self.snapshot())

    def is_balanced(self) -> bool:
        return self.deviation_ratio() <= self.max_deviation

    def exchange_rate(self, total: Optional[int] = None) -> int:
        total = self.total_value() if total is None else total
        if total == 0 or self.total_shares == 0:
            return SCALE
        return div_down(total, self.total_shares)

    def usd_exchange_rate(self) -> int:
        return mul_down(self.exchange_rate(), self.controller.oracle.get_usd_price(self.underlying))

    def cached_total_value(self) -> int:
        if self._cache_updated_at is not None and \
                self.now - self._cache_updated_at <= self.cfg.total_value_cache_expiry:
            return self._cached_total_value
        return self.total_value()

    def usd_value(self) -> int:
        return mul_down(self.cached_total_value(), self.controller.oracle.get_usd_price(self.underlying))

    def _update_cache(self, total: int) -> None:
        self._cached_total_value = total
        self._cache_updated_at = self.now

    # -----------------------------
    # Shares
    # -----------------------------
    def share_balance(self, account: str) -> int:
        return self.shares.get(account, 0)

    def _mint(self, account: str, amount: int) -> None:
        self.shares[account] = self.share_balance(account) + amount
        self.total_shares += amount

    def _burn(self, account: str, amount: int) -> None:
        balance = self.share_balance(account)
        if balance < amount:
            raise OperationFailed("insufficient_shares")
        if balance == amount:
            self.shares.pop(account, None)
        else:
            self.shares[account] = balance - amount
        self.total_shares -= amount

    def transfer_shares(self, src: str, dst: str, amount: int) -> bool:
        if amount <= 0 or self.share_balance(src) < amount:
            return False
        self._burn(src, amount)
        self._mint(dst, amount)
        return True

    # -----------------------------
    # Deposits / withdrawals
    # -----------------------------
    def _guarded(self, action: str, account: str, amount: int, fn: Callable[[], Receipt]) -> Receipt:
        if self._entered:
            self.controller.record_failure(action, account, self.pool_id, "reentrant_call", amount_in=amount)
            return self.receipts.add(failed(self.now, action, account, "reentrant_call", self.pool_id, amount))
        self._entered = True
        try:
            receipt = self.controller.execute(action, account, self.pool_id, fn, amount_in=amount,
                                              scope=self.controller.pool_scope(self, account))
        finally:
            self._entered = False
        return self.receipts.add(receipt)

    def deposit(self, account: str, amount: int, min_received: int = 0, stake: bool = False) -> Receipt:
        return self._guarded("DEPOSIT", account, amount,
                             lambda: self._deposit(account, amount, min_received, stake))

    def withdraw(self, account: str, shares: int, min_received: int = 0) -> Receipt:
        return self._guarded("WITHDRAW", account, shares,
                             lambda: self._withdraw(account, shares, min_received))

    def unstake_and_withdraw(self, account: str, shares: int, min_received: int = 0) -> Receipt:
        def run() -> Receipt:
            self.controller.staker._unstake(account, self.pool_id, shares)
            return self._withdraw(account, shares, min_received)
        return self._guarded("WITHDRAW", account, shares, run)

    def _deposit(self, account: str, amount: int, min_received: int, stake: bool) -> Receipt:
        if self.is_shutdown:
            raise OperationFailed("pool_shutdown")
        if amount <= 0:
            raise OperationFailed("zero_amount")
        if not self.venue_ids:
            raise OperationFailed("no_venues")
        wallet = self.controller.wallet(account)
        if wallet.get(self.underlying) < amount:
            raise OperationFailed("insufficient_balance")

        self.rewards.checkpoint()
        before = self.snapshot()
        rate = self.exchange_rate(before.total)
        plan = self.router.plan_deposit(before.total + amount, self.venue_ids, self.weight_list(),
                                        before.per_venue, self.idle() + amount)
        if not plan.ok:
            raise OperationFailed(plan.reason, f"{plan.leftover} left unplaced")

        transfer(wallet, self.vault, self.underlying, amount)
        self._execute_plan(plan, account, deposit=True)
        after = self.snapshot()

        value_in = min(amount, after.total - before.total)
        minted = div_down(value_in, rate) if value_in > 0 else 0
        if minted == 0 or minted < min_received:
            raise OperationFailed("too_much_slippage", f"minted {minted} < {min_received}")
        self._mint(account, minted)

        reward = self._handle_rebalancing(account, before, after)
        self._update_cache(after.total)
        if stake:
            self.controller.staker._stake(account, self.pool_id, minted)
        self.controller.inflation.update_pool_weights()

        self.controller.log.add(Event(self.now, "DEPOSIT", actor_id=account, pool_id=self.pool_id,
                                      asset_id=self.underlying, amount=amount,
                                      meta={"minted": minted, "rounds": plan.rounds, "reward": reward}))
        return Receipt(tick=self.now, action="DEPOSIT", actor=account, pool_id=self.pool_id,
                       amount_in=amount, amount_out=minted,
                       meta={"rebalancing_reward": reward, "rounds": plan.rounds, "staked": stake})

    def _withdraw(self, account: str, shares: int, min_received: int) -> Receipt:
        if shares <= 0:
            raise OperationFailed("zero_amount")
        if self.share_balance(account) < shares:
            raise OperationFailed("insufficient_shares")

        self.rewards.checkpoint()
        before = self.snapshot()
        owed = mul_down(shares, self.exchange_rate(before.total))
        plan = RoutePlan(ok=True, reason="ok")
        if self.idle() < owed:
            plan = self.router.plan_withdrawal(before.total - owed, self.venue_ids, self.weight_list(),
                                               before.per_venue, owed - self.idle())
            if not plan.ok:
                raise OperationFailed(plan.reason, f"{plan.leftover} left unfreed")
            self._execute_plan(plan, account, deposit=False)

        out = min(self.idle(), owed)
        if out < min_received:
            raise OperationFailed("too_much_slippage", f"received {out} < {min_received}")
        self._burn(account, shares)
        transfer(self.vault, self.controller.wallet(account), self.underlying, out)
        after = self.snapshot()

        reward = self._handle_rebalancing(account, before, after)
        self._update_cache(after.total)
        self.controller.inflation.update_pool_weights()

        self.controller.log.add(Event(self.now, "WITHDRAW", actor_id=account, pool_id=self.pool_id,
                                      asset_id=self.underlying, amount=out,
                                      meta={"burned": shares, "rounds": plan.rounds, "reward": reward}))
        return Receipt(tick=self.now, action="WITHDRAW", actor=account, pool_id=self.pool_id,
                       amount_in=shares, amount_out=out,
                       meta={"rebalancing_reward": reward, "rounds": plan.rounds})

    def _execute_plan(self, plan: RoutePlan, counterparty: str, deposit: bool) -> None:
        adapter = self.controller.adapter
        debug = self.debug_inventory and logger.isEnabledFor(logging.DEBUG)
        for hop in plan.hops:
            if debug:
                before = self.allocations()
            if deposit:
                adapter.deposit(self.pool_id, self.vault, hop.venue_id, self.underlying, hop.amount)
                self.venues_seen.add(hop.venue_id)
            else:
                adapter.withdraw(self.pool_id, self.vault, hop.venue_id, self.underlying, hop.amount)
            if debug:
                self._debug_allocation_change("route_in" if deposit else "route_out",
                                              counterparty, hop.venue_id, hop.amount, before, self.allocations())

    def _debug_allocation_change(self, action: str, counterparty: str, venue_id: str, amount: int,
                                 before: Dict[str, int], after: Dict[str, int]) -> None:
        logger.debug(
            "[ALLOC] pool=%s action=%s counterparty=%s venue=%s amount=%d before={ %s } after={ %s }",
            self.pool_id,
            action,
            counterparty,
            venue_id,
            amount,
            format_inventory(before),
            format_inventory(after),
        )

    def _handle_rebalancing(self, account: str, before: AllocationSnapshot, after: AllocationSnapshot) -> int:
        if not self.rebalancing_active:
            return 0
        deviation_before = self.compute_deviation(before)
        deviation_after = self.compute_deviation(after)
        reward = self.controller.rebalancing.reward_for(self, deviation_before, deviation_after)
        if reward > 0:
            self.controller.mint_reward(account, reward)
            self.controller.log.add(Event(self.now, "REBALANCING_REWARD", actor_id=account,
                                          pool_id=self.pool_id, asset_id=self.cfg.gov_token, amount=reward,
                                          meta={"deviation_before": deviation_before,
                                                "deviation_after": deviation_after}))
        if self.deviation_ratio(after) <= self.max_deviation:
            self.rebalancing_active = False
            logger.info("pool %s back within max deviation, rebalancing rewards off", self.pool_id)
        return reward

    # -----------------------------
    # Weights
    # -----------------------------
    def _current_prices(self) -> Dict[str, int]:
        oracle = self.controller.oracle
        prices = {self.lp_token(v): oracle.get_usd_price(self.lp_token(v)) for v in self.venue_ids}
        prices[self.underlying] = oracle.get_usd_price(self.underlying)
        return prices

    def _normalize_weights(self, weights: WeightsInput) -> Tuple[Optional[Dict[str, int]], str]:
        items = list(weights.items()) if isinstance(weights, Mapping) else list(weights)
        seen: Dict[str, int] = {}
        for venue_id, weight in items:
            if venue_id in seen:
                return None, "duplicate_venue"
            if venue_id not in self.weights:
                return None, "unknown_venue"
            if weight < 0 or weight > SCALE:
                return None, "out_of_range"
            seen[venue_id] = int(weight)
        if len(seen) != len(self.venue_ids):
            return None, "weights_length_mismatch"
        if sum(seen.values()) != SCALE:
            return None, "weights_not_normalized"
        return seen, "ok"

    def _apply_weights(self, weights: WeightsInput) -> Tuple[bool, str]:
        new_weights, reason = self._normalize_weights(weights)
        if new_weights is None:
            return False, reason
        try:
            snap = self.snapshot()
            prices = self._current_prices()
        except PriceError:
            return False, "missing_price"
        self.weights = {v: new_weights[v] for v in self.venue_ids}
        self.cached_prices.update(prices)
        self._after_weight_change(snap)
        self.controller.log.add(Event(self.now, "WEIGHTS_UPDATED", pool_id=self.pool_id,
                                      meta={"weights": dict(self.weights),
                                            "deviation": self.total_deviation_after_last_weight_update,
                                            "rebalancing_active": self.rebalancing_active}))
        return True, "ok"

    def _after_weight_change(self, snap: AllocationSnapshot, force_rebalancing: bool = False) -> None:
        self.total_deviation_after_last_weight_update = self.compute_deviation(snap)
        self.last_weight_update = self.now
        self.rebalancing_active = force_rebalancing or self.deviation_ratio(snap) > self.max_deviation
        self._update_cache(snap.total)

    def _is_depegged(self, asset: str) -> bool:
        threshold = self.depeg_threshold
        if asset == self.underlying:
            threshold *= 2
        cached = self.cached_prices.get(asset)
        if not cached:
            raise OperationFailed("no_cached_price", asset)
        current = self.controller.oracle.get_usd_price(asset)
        return div_down(abs_sub(cached, current), cached) > threshold

    def _set_weight_to_zero(self, venue_id: str) -> Tuple[bool, str]:
        weight = self.weights[venue_id]
        if weight == 0:
            return False, "weight_already_zero"
        if weight == SCALE:
            return False, "last_venue"
        try:
            snap = self.snapshot()
        except PriceError:
            return False, "missing_price"
        scale_up = div_down(SCALE, SCALE - weight)
        new_weights = {v: (0 if v == venue_id else mul_down(w, scale_up)) for v, w in self.weights.items()}
        largest = max((v for v in new_weights if v != venue_id), key=lambda v: new_weights[v])
        new_weights[largest] += SCALE - sum(new_weights.values())
        self.weights = new_weights
        self._after_weight_change(snap, force_rebalancing=True)
        return True, "ok"

    def handle_depegged_venue(self, venue_id: str, caller: str = "keeper") -> Tuple[bool, str]:
        if venue_id not in self.weights:
            return False, "unknown_venue"
        if self.weights[venue_id] == 0:
            return False, "weight_already_zero"
        try:
            if self._is_depegged(self.underlying):
                return False, "underlying_depegged"
            if not self._is_depegged(self.lp_token(venue_id)):
                return False, "venue_not_depegged"
        except PriceError:
            return False, "missing_price"
        except OperationFailed as exc:
            return False, exc.reason
        ok, reason = self._set_weight_to_zero(venue_id)
        if ok:
            self.controller.log.add(Event(self.now, "VENUE_DEPEGGED", actor_id=caller, pool_id=self.pool_id,
                                          meta={"venue": venue_id, "weights": dict(self.weights)}))
            logger.warning("pool %s: venue %s depegged, weight set to zero", self.pool_id, venue_id)
        return ok, reason

    def handle_shutdown_venue(self, venue_id: str, caller: str = "keeper") -> Tuple[bool, str]:
        if venue_id not in self.weights:
            return False, "unknown_venue"
        if not self.controller.registry.is_shutdown(venue_id):
            return False, "venue_not_shutdown"
        ok, reason = self._set_weight_to_zero(venue_id)
        if ok:
            self.controller.log.add(Event(self.now, "VENUE_SHUTDOWN_HANDLED", actor_id=caller,
                                          pool_id=self.pool_id,
                                          meta={"venue": venue_id, "weights": dict(self.weights)}))
            logger.warning("pool %s: venue %s shut down upstream, weight set to zero", self.pool_id, venue_id)
        return ok, reason

    # -----------------------------
    # Venue set / admin
    # -----------------------------
    def add_venue(self, venue_id: str) -> Tuple[bool, str]:
        if venue_id in self.weights:
            return False, "venue_exists"
        registry = self.controller.registry
        if not registry.is_registered(venue_id):
            return False, "venue_not_registered"
        info = registry.info(venue_id)
        if not info.supports(self.underlying):
            return False, "underlying_not_supported"
        oracle = self.controller.oracle
        if not oracle.is_supported(info.lp_token):
            return False, "missing_price"
        try:
            lp_price = oracle.get_usd_price(info.lp_token)
        except PriceError:
            return False, "missing_price"
        self.venue_ids.append(venue_id)
        self.weights[venue_id] = 0
        self.cached_prices[info.lp_token] = lp_price
        self.controller.log.add(Event(self.now, "VENUE_ADDED", pool_id=self.pool_id, meta={"venue": venue_id}))
        return True, "ok"

    def remove_venue(self, venue_id: str) -> Tuple[bool, str]:
        if venue_id not in self.weights:
            return False, "unknown_venue"
        if self.weights[venue_id] != 0:
            return False, "venue_has_weight"
        if self.controller.adapter.lp_balance(self.pool_id, venue_id) != 0:
            return False, "venue_has_balance"
        if len(self.venue_ids) == 1:
            return False, "last_venue"
        self.venue_ids.remove(venue_id)
        del self.weights[venue_id]
        self.controller.log.add(Event(self.now, "VENUE_REMOVED", pool_id=self.pool_id, meta={"venue": venue_id}))
        return True, "ok"

    def shutdown(self) -> Tuple[bool, str]:
        if self.is_shutdown:
            return False, "already_shutdown"
        self.is_shutdown = True
        self.controller.log.add(Event(self.now, "POOL_SHUTDOWN", pool_id=self.pool_id))
        logger.warning("pool %s shut down; deposits are refused from now on", self.pool_id)
        return True, "ok"

    def set_max_deviation(self, value: int) -> Tuple[bool, str]:
        if not 0 < value <= self.cfg.max_deviation_upper_bound:
            return False, "out_of_range"
        self.max_deviation = value
        self.router.max_deviation = value
        return True, "ok"

    def set_depeg_threshold(self, value: int) -> Tuple[bool, str]:
        if not self.cfg.min_depeg_threshold <= value <= self.cfg.max_depeg_threshold:
            return False, "out_of_range"
        self.depeg_threshold = value
        return True, "ok"
