from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Literal, Tuple
from collections import deque
from decimal import Decimal
import copy
import logging

from .config import SCALE

logger = logging.getLogger(__name__)

ReceiptStatus = Literal["executed", "failed"]


# -----------------------------
# Fixed point (18 decimals)
# -----------------------------
def mul_down(a: int, b: int) -> int:
    return (a * b) // SCALE


def div_down(a: int, b: int) -> int:
    return (a * SCALE) // b


def abs_sub(a: int, b: int) -> int:
    return a - b if a >= b else b - a


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def to_units(amount: float) -> int:
    # via str so decimal literals map exactly onto 18-decimal fixed point
    return int(Decimal(str(amount)) * SCALE)


def from_units(amount: int) -> float:
    return amount / SCALE


def format_inventory(inv: Dict[str, int]) -> str:
    if not inv:
        return "(empty)"
    items = sorted(inv.items(), key=lambda kv: kv[0])
    return ", ".join(f"{asset}:{from_units(amount):.2f}" for asset, amount in items)


# -----------------------------
# Time
# -----------------------------
class Clock:
    def __init__(self, now: int = 0) -> None:
        self.now = int(now)

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("clock cannot move backwards")
        self.now += int(seconds)
        return self.now


# -----------------------------
# Events
# -----------------------------
@dataclass
class Event:
    tick: int
    event_type: str
    actor_id: Optional[str] = None
    pool_id: Optional[str] = None
    asset_id: Optional[str] = None
    amount: Optional[int] = None
    meta: dict = field(default_factory=dict)


class EventLog:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.events = deque(maxlen=maxlen)

    def add(self, e: Event) -> None:
        self.events.append(e)

    def tail(self, n: int = 200) -> List[Event]:
        if n <= 0:
            return []
        if n >= len(self.events):
            return list(self.events)
        return list(self.events)[-n:]

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.event_type == event_type]


# -----------------------------
# Balances
# -----------------------------
class Vault:
    def __init__(self) -> None:
        self.inventory: Dict[str, int] = {}

    def get(self, asset_id: str) -> int:
        return int(self.inventory.get(asset_id, 0))

    def add(self, asset_id: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("cannot add a negative amount")
        if amount == 0:
            return
        self.inventory[asset_id] = self.get(asset_id) + int(amount)

    def sub(self, asset_id: str, amount: int) -> bool:
        amt = int(amount)
        if amt < 0 or self.get(asset_id) < amt:
            return False
        remaining = self.get(asset_id) - amt
        if remaining == 0:
            self.inventory.pop(asset_id, None)
        else:
            self.inventory[asset_id] = remaining
        return True


def transfer(src: Vault, dst: Vault, asset_id: str, amount: int) -> bool:
    if not src.sub(asset_id, amount):
        return False
    dst.add(asset_id, amount)
    return True


# -----------------------------
# Receipts
# -----------------------------
@dataclass
class Receipt:
    tick: int
    action: str
    actor: str
    pool_id: Optional[str] = None
    amount_in: int = 0
    amount_out: int = 0
    status: ReceiptStatus = "executed"
    fail_reason: Optional[str] = None
    meta: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "executed"

    def to_dict(self) -> dict:
        return {
            "tick": self.tick,
            "action": self.action,
            "actor": self.actor,
            "pool_id": self.pool_id,
            "amount_in": from_units(self.amount_in),
            "amount_out": from_units(self.amount_out),
            "status": self.status,
            "fail_reason": self.fail_reason,
            **{k: v for k, v in self.meta.items() if isinstance(v, (int, float, str, bool))},
        }


def failed(tick: int, action: str, actor: str, reason: str, pool_id: Optional[str] = None,
           amount_in: int = 0) -> Receipt:
    return Receipt(tick=tick, action=action, actor=actor, pool_id=pool_id,
                   amount_in=amount_in, status="failed", fail_reason=reason)


class ReceiptStore:
    def __init__(self) -> None:
        self.receipts: List[Receipt] = []

    def add(self, r: Receipt) -> Receipt:
        self.receipts.append(r)
        return r

    def tail(self, n: int = 200) -> List[Receipt]:
        return self.receipts[-n:]


# -----------------------------
# All-or-nothing operations
# -----------------------------
class OperationFailed(Exception):
    def __init__(self, reason: str, detail: str = "") -> None:
        super().__init__(detail or reason)
        self.reason = reason


_PACKAGE = __name__.split(".")[0]


def _is_package_object(o: object) -> bool:
    return any(c.__module__.split(".")[0] == _PACKAGE for c in type(o).__mro__)


class Transaction:
    """Saves the attribute state of the objects an operation can touch.

    Walking starts from ``roots`` and follows attributes and containers into
    package objects. Objects of ``opaque`` types are neither walked nor
    restored. Objects of ``boundary`` types are walked only when they are
    roots themselves, so the snapshot stays as small as the operation's
    reach. Rolling back restores each object's ``__dict__`` in place, so
    references held by callers stay valid; attributes a class lists in
    ``rollback_exempt`` keep their current value.
    """

    def __init__(self, roots: Iterable[object], opaque: Tuple[type, ...] = (),
                 boundary: Tuple[type, ...] = ()) -> None:
        self.opaque = opaque
        self.boundary = boundary
        objects, kept = self._collect(list(roots))
        memo = {id(o): o for o in kept}
        memo.update({id(o): o for o in objects})
        self.saved = [(o, copy.deepcopy(o.__dict__, memo)) for o in objects]

    def _collect(self, roots: List[object]) -> Tuple[List[object], List[object]]:
        objects: Dict[int, object] = {}
        kept: Dict[int, object] = {}
        root_ids = {id(r) for r in roots}
        visited = set()
        stack = list(roots)
        while stack:
            o = stack.pop()
            if id(o) in visited:
                continue
            visited.add(id(o))
            if isinstance(o, dict):
                stack.extend(o.keys())
                stack.extend(o.values())
            elif isinstance(o, (list, tuple, set, frozenset, deque)):
                stack.extend(o)
            elif isinstance(o, self.opaque) or (isinstance(o, self.boundary) and id(o) not in root_ids):
                kept[id(o)] = o
            elif hasattr(o, "__dict__") and _is_package_object(o):
                objects[id(o)] = o
                stack.extend(o.__dict__.values())
            elif hasattr(o, "__self__") and hasattr(o, "__func__"):
                stack.append(o.__self__)
        return list(objects.values()), list(kept.values())

    def rollback(self) -> None:
        for obj, state in self.saved:
            exempt = {k: obj.__dict__[k] for k in getattr(obj, "rollback_exempt", ()) if k in obj.__dict__}
            obj.__dict__.clear()
            obj.__dict__.update(state)
            obj.__dict__.update(exempt)
