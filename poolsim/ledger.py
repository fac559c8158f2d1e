"""Streaming reward accounting.

A ledger keeps one monotonically increasing accumulator per reward kind
(reward per staked unit ever distributed) and, per account, the accumulator
value last seen plus an owed amount. Rewards arrive from an external source
that reports the cumulative amount earned for the ledger; ``checkpoint``
spreads whatever arrived since the last call over the current total balance.

Every change to an account's balance goes through ``set_balance``, which
settles the account at the old balance before applying the new one. Claims
harvest from the source when the ledger's own token balance falls short.

A ledger with a fee rate keeps the skimmed part aside and exposes it through
``earned``/``harvest``, so it can itself act as the source of another ledger.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol
import logging

from .core import OperationFailed, Vault, mul_down, div_down, transfer

logger = logging.getLogger(__name__)


class EarnedSource(Protocol):
    def earned(self, kind: str) -> int: ...

    def harvest(self, kind: str, vault: Vault) -> int: ...


class CompositeSource:
    """Sums several sources, e.g. the fee streams of every pool ledger."""

    def __init__(self, sources: Optional[Iterable[EarnedSource]] = None) -> None:
        self.sources: List[EarnedSource] = list(sources or [])

    def add(self, source: EarnedSource) -> None:
        self.sources.append(source)

    def earned(self, kind: str) -> int:
        return sum(s.earned(kind) for s in self.sources)

    def harvest(self, kind: str, vault: Vault) -> int:
        return sum(s.harvest(kind, vault) for s in self.sources)


@dataclass
class AccountRewardSnapshot:
    snapshots: Dict[str, int] = field(default_factory=dict)
    owed: Dict[str, int] = field(default_factory=dict)

    def has_owed(self) -> bool:
        return any(v > 0 for v in self.owed.values())


class StreamingRewardLedger:
    def __init__(self, name: str, kinds: Iterable[str], source: EarnedSource,
                 fee_rates: Optional[Dict[str, int]] = None) -> None:
        self.name = name
        self.kinds = tuple(kinds)
        if not self.kinds:
            raise ValueError("a ledger needs at least one reward kind")
        self.source = source
        self.fee_rates = {k: int((fee_rates or {}).get(k, 0)) for k in self.kinds}
        self.vault = Vault()

        self.accumulators: Dict[str, int] = {k: 0 for k in self.kinds}
        self.last_recorded: Dict[str, int] = {k: 0 for k in self.kinds}
        self.harvested: Dict[str, int] = {k: 0 for k in self.kinds}
        self.fees_accrued: Dict[str, int] = {k: 0 for k in self.kinds}
        self.fees_paid: Dict[str, int] = {k: 0 for k in self.kinds}

        self.balances: Dict[str, int] = {}
        self.total_balance: int = 0
        self.accounts: Dict[str, AccountRewardSnapshot] = {}
        self.claimed: Dict[str, Dict[str, int]] = {}

    # -- accounting --------------------------------------------------------
    def _split(self, kind: str) -> tuple[int, int, int]:
        """(current earned, fee, accumulator increment) for what is pending."""
        current = self.source.earned(kind)
        delta = current - self.last_recorded[kind]
        if delta <= 0 or self.total_balance == 0:
            return current, 0, 0
        fee = mul_down(delta, self.fee_rates[kind])
        return current, fee, div_down(delta - fee, self.total_balance)

    def checkpoint(self) -> None:
        for kind in self.kinds:
            if self.total_balance == 0:
                # nothing staked: leave earnings pending for the first stakers
                continue
            current, fee, increment = self._split(kind)
            if current <= self.last_recorded[kind]:
                continue
            self.fees_accrued[kind] += fee
            self.accumulators[kind] += increment
            self.last_recorded[kind] = current

    def account_checkpoint(self, account: str) -> AccountRewardSnapshot:
        self.checkpoint()
        snap = self.accounts.get(account)
        if snap is None:
            snap = AccountRewardSnapshot(
                snapshots=dict(self.accumulators),
                owed={k: 0 for k in self.kinds},
            )
            self.accounts[account] = snap
            return snap
        balance = self.balances.get(account, 0)
        for kind in self.kinds:
            acc = self.accumulators[kind]
            snap.owed[kind] += mul_down(balance, acc - snap.snapshots[kind])
            snap.snapshots[kind] = acc
        return snap

    def set_balance(self, account: str, balance: int) -> None:
        if balance < 0:
            raise ValueError("balance cannot be negative")
        snap = self.account_checkpoint(account)
        old = self.balances.get(account, 0)
        self.total_balance += balance - old
        if balance == 0:
            self.balances.pop(account, None)
            if not snap.has_owed():
                self.accounts.pop(account, None)
        else:
            self.balances[account] = balance

    def balance_of(self, account: str) -> int:
        return self.balances.get(account, 0)

    # -- views -------------------------------------------------------------
    def projected_accumulator(self, kind: str) -> int:
        _, _, increment = self._split(kind)
        return self.accumulators[kind] + increment

    def claimable(self, account: str) -> Dict[str, int]:
        snap = self.accounts.get(account)
        if snap is None:
            return {k: 0 for k in self.kinds}
        balance = self.balances.get(account, 0)
        return {
            kind: snap.owed[kind] + mul_down(balance, self.projected_accumulator(kind) - snap.snapshots[kind])
            for kind in self.kinds
        }

    def reserves(self, kind: str) -> int:
        """Tokens held or harvestable for accounts, excluding fees owed onward."""
        pending = self.source.earned(kind) - self.harvested[kind]
        fees_unpaid = self.fees_accrued[kind] - self.fees_paid[kind]
        return self.vault.get(kind) + pending - fees_unpaid

    # -- token movement ----------------------------------------------------
    def harvest(self, kind: str) -> int:
        amount = self.source.harvest(kind, self.vault)
        self.harvested[kind] += amount
        return amount

    def claim(self, account: str, dst: Vault) -> Dict[str, int]:
        snap = self.account_checkpoint(account)
        amounts = {k: snap.owed[k] for k in self.kinds if snap.owed[k] > 0}
        for kind, amount in amounts.items():
            if self.vault.get(kind) < amount:
                self.harvest(kind)
            if self.vault.get(kind) < amount:
                raise OperationFailed(
                    "insufficient_reserves",
                    f"{self.name}: {kind} reserves {self.vault.get(kind)} below owed {amount}",
                )
        claimed = self.claimed.setdefault(account, {k: 0 for k in self.kinds})
        for kind, amount in amounts.items():
            snap.owed[kind] = 0
            transfer(self.vault, dst, kind, amount)
            claimed[kind] += amount
        if account not in self.balances and not snap.has_owed():
            self.accounts.pop(account, None)
        if amounts:
            logger.debug("ledger=%s account=%s claimed %s", self.name, account, amounts)
        return amounts

    def claimed_by(self, account: str, kind: str) -> int:
        return self.claimed.get(account, {}).get(kind, 0)

    # -- fee stream as a source for another ledger -------------------------
    def earned(self, kind: str) -> int:
        if kind not in self.fees_accrued:
            return 0
        _, fee, _ = self._split(kind)
        return self.fees_accrued[kind] + fee

    def harvest_fees(self, kind: str, vault: Vault) -> int:
        if kind not in self.fees_accrued:
            return 0
        self.checkpoint()
        amount = self.fees_accrued[kind] - self.fees_paid[kind]
        if amount <= 0:
            return 0
        if self.vault.get(kind) < amount:
            self.harvest(kind)
        amount = min(amount, self.vault.get(kind))
        transfer(self.vault, vault, kind, amount)
        self.fees_paid[kind] += amount
        return amount


class FeeStream:
    """Adapts a ledger's skimmed fees to the source interface."""

    def __init__(self, ledger: StreamingRewardLedger) -> None:
        self.ledger = ledger

    def earned(self, kind: str) -> int:
        return self.ledger.earned(kind)

    def harvest(self, kind: str, vault: Vault) -> int:
        return self.ledger.harvest_fees(kind, vault)
