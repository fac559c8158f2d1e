from __future__ import annotations
from typing import Callable, Dict, Iterable, List, Optional, Tuple
import logging

from .boost import BoostCalculator
from .config import ProtocolConfig, ScenarioConfig
from .core import Clock, Event, EventLog, OperationFailed, Receipt, ReceiptStore, Transaction, Vault, failed
from .inflation import InflationManager
from .ledger import StreamingRewardLedger
from .locker import VoteLocker
from .pool import Pool, WeightsInput
from .rebalancing import RebalancingIncentive
from .staking import LpStaker
from .venues import (
    InMemoryVenue, InMemoryVenueAdapter, PriceError, PriceOracle, ProofVerifier, StaticPriceOracle, VenueAdapter,
    VenueError, VenueRegistry,
)

logger = logging.getLogger(__name__)

# never rolled back: append-only logs and read-only collaborators
_OPAQUE = (EventLog, ReceiptStore, Clock, ProtocolConfig, ScenarioConfig, StaticPriceOracle, VenueRegistry)
# walked only when listed in an operation's scope
_BOUNDARY = (Pool, StreamingRewardLedger, InMemoryVenue, LpStaker, BoostCalculator, InflationManager, VoteLocker)


class Controller:
    """Owns every pool, wallet and reward ledger; all operations go through it."""

    def __init__(
        self,
        cfg: Optional[ProtocolConfig] = None,
        *,
        clock: Optional[Clock] = None,
        oracle: Optional[PriceOracle] = None,
        registry: Optional[VenueRegistry] = None,
        adapter: Optional[VenueAdapter] = None,
        verifier: Optional[ProofVerifier] = None,
        event_log_maxlen: Optional[int] = None,
    ) -> None:
        self.cfg = cfg or ProtocolConfig()
        self.clock = clock or Clock()
        self.oracle = oracle or StaticPriceOracle()
        self.registry = registry or VenueRegistry()
        self.adapter = adapter or InMemoryVenueAdapter()
        self.log = EventLog(maxlen=event_log_maxlen)

        self.wallets: Dict[str, Vault] = {}
        self.pools: Dict[str, Pool] = {}
        self.weight_update_min_delay = self.cfg.weight_update_min_delay
        self._last_weight_request: Dict[str, int] = {}

        self.boost = BoostCalculator(self.cfg, self.clock)
        self.inflation = InflationManager(self)
        self.locker = VoteLocker(self, verifier)
        self.staker = LpStaker(self)
        self.rebalancing = RebalancingIncentive(self)

    # -----------------------------
    # Store
    # -----------------------------
    def wallet(self, account: str) -> Vault:
        return self.wallets.setdefault(account, Vault())

    def fund(self, account: str, asset: str, amount: int) -> None:
        self.wallet(account).add(asset, amount)

    def pool(self, pool_id: str) -> Pool:
        pool = self.pools.get(pool_id)
        if pool is None:
            raise OperationFailed("unknown_pool", pool_id)
        return pool

    def create_pool(self, pool_id: str, underlying: str) -> Pool:
        if pool_id in self.pools:
            raise ValueError(f"pool {pool_id} already exists")
        if not self.oracle.is_supported(underlying):
            raise ValueError(f"underlying {underlying} cannot be priced")
        pool = Pool(pool_id, underlying, self)
        pool.cached_prices[underlying] = self.oracle.get_usd_price(underlying)
        self.pools[pool_id] = pool
        self.staker.register_pool(pool)
        self.inflation.register_pool(pool)
        self.log.add(Event(self.clock.now, "POOL_CREATED", pool_id=pool_id, asset_id=underlying))
        logger.info("created pool %s over %s", pool_id, underlying)
        return pool

    # -----------------------------
    # Atomic execution
    # -----------------------------
    def pool_scope(self, pool: Optional[Pool], *accounts: str) -> List[object]:
        """Objects a pool, staking or claim operation may change."""
        roots: List[object] = [self.wallet(a) for a in accounts]
        roots += [self.staker, self.boost, self.inflation, self.inflation.distributor]
        if pool is not None:
            roots += [pool, pool.rewards]
            venues = getattr(self.adapter, "venues", {})
            roots += [venues[v] for v in set(pool.venue_ids) | pool.venues_seen if v in venues]
        return roots

    def locker_scope(self, *accounts: str, with_fee_sources: bool = False) -> List[object]:
        roots: List[object] = [self.wallet(a) for a in accounts] + [self.locker, self.locker.ledger]
        if with_fee_sources:
            # harvesting fees pulls on every pool ledger and, through them, every venue
            for pool in self.pools.values():
                roots += self.pool_scope(pool)
        return roots

    def transaction(self, scope: Iterable[object]) -> Transaction:
        return Transaction(scope, opaque=_OPAQUE, boundary=(type(self),) + _BOUNDARY)

    def execute(self, action: str, actor: str, pool_id: Optional[str],
                fn: Callable[[], Receipt], amount_in: int = 0,
                scope: Iterable[object] = ()) -> Receipt:
        tx = self.transaction(scope)
        try:
            return fn()
        except OperationFailed as exc:
            reason, detail = exc.reason, str(exc)
        except VenueError as exc:
            reason, detail = "venue_error", str(exc)
        except PriceError as exc:
            reason, detail = "missing_price", str(exc)
        except Exception:
            tx.rollback()
            raise
        tx.rollback()
        self.record_failure(action, actor, pool_id, reason, detail, amount_in)
        return failed(self.clock.now, action, actor, reason, pool_id, amount_in)

    def record_failure(self, action: str, actor: str, pool_id: Optional[str], reason: str,
                       detail: str = "", amount_in: int = 0) -> None:
        logger.info("%s by %s failed: %s (%s)", action, actor, reason, detail)
        self.log.add(Event(self.clock.now, f"{action}_FAILED", actor_id=actor, pool_id=pool_id,
                           amount=amount_in, meta={"reason": reason, "detail": detail}))

    def mint_reward(self, account: str, amount: int) -> int:
        """Mint governance tokens straight into an account's wallet."""
        if amount <= 0:
            return 0
        self.inflation.mint_rebalancing_reward(self.wallet(account), amount)
        return amount

    # -----------------------------
    # Governance
    # -----------------------------
    def set_weight_update_min_delay(self, delay: int) -> Tuple[bool, str]:
        if not self.cfg.min_weight_update_delay <= delay <= self.cfg.max_weight_update_delay:
            return False, "out_of_range"
        self.weight_update_min_delay = delay
        return True, "ok"

    def update_weights(self, pool_id: str, weights: WeightsInput) -> Tuple[bool, str]:
        pool = self.pools.get(pool_id)
        if pool is None:
            return False, "unknown_pool"
        last = self._last_weight_request.get(pool_id)
        if last is not None and self.clock.now < last + self.weight_update_min_delay:
            return False, "weight_update_too_soon"
        ok, reason = pool._apply_weights(weights)
        if ok:
            self._last_weight_request[pool_id] = self.clock.now
            self.inflation.update_pool_weights()
        else:
            self.log.add(Event(self.clock.now, "WEIGHTS_UPDATE_FAILED", pool_id=pool_id, meta={"reason": reason}))
        return ok, reason

    def add_venue(self, pool_id: str, venue_id: str) -> Tuple[bool, str]:
        pool = self.pools.get(pool_id)
        if pool is None:
            return False, "unknown_pool"
        return pool.add_venue(venue_id)

    def remove_venue(self, pool_id: str, venue_id: str) -> Tuple[bool, str]:
        pool = self.pools.get(pool_id)
        if pool is None:
            return False, "unknown_pool"
        return pool.remove_venue(venue_id)

    def shutdown_pool(self, pool_id: str) -> Tuple[bool, str]:
        pool = self.pools.get(pool_id)
        if pool is None:
            return False, "unknown_pool"
        return pool.shutdown()

    # -----------------------------
    # Time
    # -----------------------------
    def advance(self, seconds: int) -> int:
        now = self.clock.advance(seconds)
        self.inflation.update_inflation_rate()
        return now
