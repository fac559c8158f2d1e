from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, ClassVar, Dict, Optional, Protocol, Tuple
import logging

from .config import SCALE
from .core import Vault, Clock, mul_down, div_down

logger = logging.getLogger(__name__)


class PriceError(Exception):
    """Raised when the oracle cannot price an asset."""


class VenueError(Exception):
    """Raised when a venue rejects a deposit or withdrawal."""


# -----------------------------
# Collaborator interfaces
# -----------------------------
class PriceOracle(Protocol):
    def is_supported(self, asset: str) -> bool: ...

    def get_usd_price(self, asset: str) -> int: ...


class VenueAdapter(Protocol):
    def deposit(self, holder: str, vault: Vault, venue_id: str, asset: str, amount: int) -> None: ...

    def withdraw(self, holder: str, vault: Vault, venue_id: str, asset: str, amount: int) -> int: ...

    def lp_balance(self, holder: str, venue_id: str) -> int: ...

    def pending_yield(self, holder: str, venue_id: str) -> int: ...

    def claim_yield(self, holder: str, vault: Vault, venue_id: str) -> int: ...


ProofVerifier = Callable[[object, object], bool]


# -----------------------------
# Oracle
# -----------------------------
class StaticPriceOracle:
    """USD prices (18 decimals) set by hand, LP tokens optionally priced off their venue."""

    def __init__(self) -> None:
        self.prices: Dict[str, int] = {}
        self.lp_pricing: Dict[str, Tuple["InMemoryVenue", str]] = {}

    def set_price(self, asset: str, usd_price: int) -> None:
        if usd_price <= 0:
            raise ValueError("price must be positive")
        self.prices[asset] = int(usd_price)

    def clear_price(self, asset: str) -> None:
        self.prices.pop(asset, None)

    def set_lp_pricing(self, lp_token: str, venue: "InMemoryVenue", base_asset: str) -> None:
        self.lp_pricing[lp_token] = (venue, base_asset)

    def is_supported(self, asset: str) -> bool:
        if asset in self.prices:
            return True
        pricing = self.lp_pricing.get(asset)
        return pricing is not None and pricing[1] in self.prices

    def get_usd_price(self, asset: str) -> int:
        price = self.prices.get(asset)
        if price is not None:
            return price
        pricing = self.lp_pricing.get(asset)
        if pricing is None:
            raise PriceError(f"unsupported asset {asset}")
        venue, base_asset = pricing
        return mul_down(venue.virtual_price, self.get_usd_price(base_asset))


# -----------------------------
# Registry
# -----------------------------
@dataclass
class VenueInfo:
    venue_id: str
    lp_token: str
    coins: Tuple[str, ...]
    decimals: Tuple[int, ...] = ()
    base_venue: Optional[str] = None
    is_shutdown: bool = False

    def supports(self, asset: str) -> bool:
        return asset in self.coins


class VenueRegistry:
    def __init__(self) -> None:
        self.venues: Dict[str, VenueInfo] = {}

    def register(self, info: VenueInfo) -> None:
        if info.venue_id in self.venues:
            raise ValueError(f"venue {info.venue_id} already registered")
        if not info.decimals:
            info.decimals = tuple(18 for _ in info.coins)
        self.venues[info.venue_id] = info

    def is_registered(self, venue_id: str) -> bool:
        return venue_id in self.venues

    def info(self, venue_id: str) -> VenueInfo:
        return self.venues[venue_id]

    def lp_token(self, venue_id: str) -> str:
        return self.venues[venue_id].lp_token

    def is_shutdown(self, venue_id: str) -> bool:
        info = self.venues.get(venue_id)
        return bool(info and info.is_shutdown)

    def mark_shutdown(self, venue_id: str) -> None:
        self.venues[venue_id].is_shutdown = True
        logger.info("venue %s reported shut down upstream", venue_id)


# -----------------------------
# In-memory venue
# -----------------------------
@dataclass
class _Position:
    lp: int = 0
    yield_snapshot: int = 0
    yield_owed: int = 0


@dataclass
class InMemoryVenue:
    rollback_exempt: ClassVar[Tuple[str, ...]] = ("fail_next",)  # a failure fires once

    venue_id: str
    lp_token: str
    coins: Tuple[str, ...]
    yield_token: str
    clock: Clock
    virtual_price: int = SCALE  # underlying per LP token
    slippage: int = 0  # fraction of LP withheld on deposit
    yield_rate: int = 0  # yield token per LP token per second
    reserves: Vault = field(default_factory=Vault)
    positions: Dict[str, _Position] = field(default_factory=dict)
    lp_supply: int = 0
    fail_next: Optional[str] = None
    _yield_per_lp: int = 0
    _last_accrual: int = 0

    def __post_init__(self) -> None:
        self._last_accrual = self.clock.now

    def _accrue(self) -> None:
        elapsed = self.clock.now - self._last_accrual
        if elapsed > 0:
            self._yield_per_lp += self.yield_rate * elapsed
            self._last_accrual = self.clock.now

    def _settle(self, holder: str) -> _Position:
        self._accrue()
        pos = self.positions.setdefault(holder, _Position(yield_snapshot=self._yield_per_lp))
        pos.yield_owed += mul_down(pos.lp, self._yield_per_lp - pos.yield_snapshot)
        pos.yield_snapshot = self._yield_per_lp
        return pos

    def _maybe_fail(self, op: str) -> None:
        if self.fail_next == op or self.fail_next == "any":
            self.fail_next = None
            raise VenueError(f"{self.venue_id}: {op} rejected")

    def deposit(self, holder: str, vault: Vault, asset: str, amount: int) -> int:
        self._maybe_fail("deposit")
        if asset not in self.coins:
            raise VenueError(f"{self.venue_id}: unsupported coin {asset}")
        if not vault.sub(asset, amount):
            raise VenueError(f"{self.venue_id}: insufficient {asset} from {holder}")
        pos = self._settle(holder)
        lp = div_down(amount, self.virtual_price)
        lp -= mul_down(lp, self.slippage)
        self.reserves.add(asset, amount)
        pos.lp += lp
        self.lp_supply += lp
        return lp

    def withdraw(self, holder: str, vault: Vault, asset: str, amount: int) -> int:
        self._maybe_fail("withdraw")
        pos = self._settle(holder)
        lp = -(-amount * SCALE // self.virtual_price)
        if lp > pos.lp:
            lp = pos.lp
        out = min(mul_down(lp, self.virtual_price), self.reserves.get(asset))
        pos.lp -= lp
        self.lp_supply -= lp
        self.reserves.sub(asset, out)
        vault.add(asset, out)
        return out

    def lp_balance(self, holder: str) -> int:
        pos = self.positions.get(holder)
        return pos.lp if pos else 0

    def pending_yield(self, holder: str) -> int:
        pos = self.positions.get(holder)
        if pos is None:
            return 0
        elapsed = max(0, self.clock.now - self._last_accrual)
        acc = self._yield_per_lp + self.yield_rate * elapsed
        return pos.yield_owed + mul_down(pos.lp, acc - pos.yield_snapshot)

    def claim_yield(self, holder: str, vault: Vault) -> int:
        if holder not in self.positions:
            return 0
        pos = self._settle(holder)
        amount, pos.yield_owed = pos.yield_owed, 0
        vault.add(self.yield_token, amount)
        return amount


class InMemoryVenueAdapter:
    """Routes adapter calls to in-memory venues by id."""

    def __init__(self) -> None:
        self.venues: Dict[str, InMemoryVenue] = {}

    def add(self, venue: InMemoryVenue) -> InMemoryVenue:
        self.venues[venue.venue_id] = venue
        return venue

    def _venue(self, venue_id: str) -> InMemoryVenue:
        venue = self.venues.get(venue_id)
        if venue is None:
            raise VenueError(f"no adapter for venue {venue_id}")
        return venue

    def deposit(self, holder: str, vault: Vault, venue_id: str, asset: str, amount: int) -> None:
        self._venue(venue_id).deposit(holder, vault, asset, amount)

    def withdraw(self, holder: str, vault: Vault, venue_id: str, asset: str, amount: int) -> int:
        return self._venue(venue_id).withdraw(holder, vault, asset, amount)

    def lp_balance(self, holder: str, venue_id: str) -> int:
        return self._venue(venue_id).lp_balance(holder)

    def pending_yield(self, holder: str, venue_id: str) -> int:
        return self._venue(venue_id).pending_yield(holder)

    def claim_yield(self, holder: str, vault: Vault, venue_id: str) -> int:
        return self._venue(venue_id).claim_yield(holder, vault)
