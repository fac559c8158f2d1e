from __future__ import annotations
from typing import TYPE_CHECKING, Dict, List, Tuple
import logging

from .config import ProtocolConfig, SCALE
from .core import Clock, Event, Vault, mul_down, div_down
from .ledger import StreamingRewardLedger
from .venues import PriceError

if TYPE_CHECKING:
    from .controller import Controller
    from .pool import Pool

logger = logging.getLogger(__name__)


class InflationSchedule:
    """Emission rate that decays by a fixed fraction once per period."""

    def __init__(self, cfg: ProtocolConfig, start: int) -> None:
        self.cfg = cfg
        self.start = int(start)
        self._rates: List[int] = [cfg.initial_inflation_rate]

    def period_of(self, t: int) -> int:
        return max(0, t - self.start) // self.cfg.inflation_period

    def rate_for_period(self, period: int) -> int:
        while len(self._rates) <= period:
            self._rates.append(mul_down(self._rates[-1], SCALE - self.cfg.annual_inflation_decay))
        return self._rates[period]

    def rate_at(self, t: int) -> int:
        return self.rate_for_period(self.period_of(t))

    def emitted_between(self, t0: int, t1: int) -> int:
        t0 = max(t0, self.start)
        if t1 <= t0:
            return 0
        length = self.cfg.inflation_period
        total = 0
        t = t0
        while t < t1:
            period = self.period_of(t)
            period_end = self.start + (period + 1) * length
            end = min(t1, period_end)
            total += self.rate_for_period(period) * (end - t)
            t = end
        return total

    def emitted_until(self, t: int) -> int:
        return self.emitted_between(self.start, t)


class InflationSource:
    """Mints the scheduled emission into whichever vault harvests it."""

    def __init__(self, schedule: InflationSchedule, clock: Clock, token: str) -> None:
        self.schedule = schedule
        self.clock = clock
        self.token = token
        self.minted = 0

    def earned(self, kind: str) -> int:
        if kind != self.token:
            return 0
        return self.schedule.emitted_until(self.clock.now)

    def harvest(self, kind: str, vault: Vault) -> int:
        if kind != self.token:
            return 0
        amount = self.earned(kind) - self.minted
        if amount <= 0:
            return 0
        vault.add(self.token, amount)
        self.minted += amount
        return amount


class InflationManager:
    """Splits protocol inflation across pools by their share of USD value."""

    def __init__(self, controller: "Controller") -> None:
        self.controller = controller
        self.cfg = controller.cfg
        self.token = self.cfg.gov_token
        self.schedule = InflationSchedule(self.cfg, start=controller.clock.now)
        self.source = InflationSource(self.schedule, controller.clock, self.token)
        self.distributor = StreamingRewardLedger("inflation", [self.token], self.source)
        self.pool_ids: List[str] = []
        self.pool_usd: Dict[str, int] = {}
        self.rebalancing_minted = 0
        self._last_rate_period = 0

    def register_pool(self, pool: "Pool") -> None:
        if pool.pool_id not in self.pool_ids:
            self.pool_ids.append(pool.pool_id)

    # -- rates ---------------------------------------------------------------
    def current_inflation_rate(self) -> int:
        return self.schedule.rate_at(self.controller.clock.now)

    def update_inflation_rate(self) -> bool:
        now = self.controller.clock.now
        period = self.schedule.period_of(now)
        if period == self._last_rate_period:
            return False
        self._last_rate_period = period
        rate = self.schedule.rate_for_period(period)
        self.controller.log.add(Event(now, "INFLATION_RATE_UPDATED", amount=rate, meta={"period": period}))
        logger.info("inflation rate moved to %d/s in period %d", rate, period)
        return True

    def pool_weight(self, pool_id: str) -> int:
        return self.distributor.balance_of(pool_id)

    def current_pool_rate(self, pool_id: str) -> int:
        return mul_down(self.current_inflation_rate(), self.pool_weight(pool_id))

    # -- pool weights --------------------------------------------------------
    def _pool_usd_values(self) -> Dict[str, int]:
        values = {}
        for pool_id in self.pool_ids:
            pool = self.controller.pools[pool_id]
            price = self.controller.oracle.get_usd_price(pool.underlying)
            values[pool_id] = mul_down(pool.cached_total_value(), price)
        return values

    def update_pool_weights(self) -> Tuple[bool, str]:
        try:
            values = self._pool_usd_values()
        except PriceError as exc:
            logger.warning("pool weights left unchanged: %s", exc)
            return False, "missing_price"
        self.pool_usd = values
        total = sum(values.values())
        weights = {pid: 0 for pid in values}
        if total > 0:
            for pid, usd in values.items():
                weights[pid] = div_down(usd, total)
            largest = max(weights, key=lambda pid: weights[pid])
            weights[largest] += SCALE - sum(weights.values())
        self.distributor.checkpoint()
        for pid, weight in weights.items():
            if self.distributor.balance_of(pid) != weight:
                self.distributor.set_balance(pid, weight)
        return True, "ok"

    def total_usd(self) -> int:
        return sum(self.pool_usd.values())

    # -- minting ---------------------------------------------------------------
    def mint_rebalancing_reward(self, wallet: Vault, amount: int) -> None:
        if amount <= 0:
            return
        wallet.add(self.token, amount)
        self.rebalancing_minted += amount

    def total_minted(self) -> int:
        return self.source.minted + self.rebalancing_minted
