from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Any, Iterable, List
import pandas as pd

from .core import Event, Receipt


@dataclass
class MetricsStore:
    protocol_rows: List[Dict[str, Any]] = field(default_factory=list)
    pool_rows: List[Dict[str, Any]] = field(default_factory=list)
    venue_rows: List[Dict[str, Any]] = field(default_factory=list)

    def add_protocol(self, row: Dict[str, Any]) -> None:
        self.protocol_rows.append(row)

    def add_pool_rows(self, rows: List[Dict[str, Any]]) -> None:
        self.pool_rows.extend(rows)

    def add_venue_rows(self, rows: List[Dict[str, Any]]) -> None:
        self.venue_rows.extend(rows)

    def protocol_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.protocol_rows)

    def pool_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.pool_rows)

    def venue_df(self) -> pd.DataFrame:
        df = pd.DataFrame(self.venue_rows)
        if df.empty:
            return df
        # share of each pool's allocated value held by the venue, next to its target weight
        totals = df.groupby(["tick", "pool_id"])["allocated"].transform("sum")
        df["actual_weight"] = (df["allocated"] / totals.where(totals > 0)).fillna(0.0)
        return df


def receipts_df(receipts: Iterable[Receipt]) -> pd.DataFrame:
    return pd.DataFrame([r.to_dict() for r in receipts])


def events_df(events: Iterable[Event]) -> pd.DataFrame:
    rows = []
    for e in events:
        rows.append({
            "tick": e.tick,
            "event_type": e.event_type,
            "actor_id": e.actor_id,
            "pool_id": e.pool_id,
            "asset_id": e.asset_id,
            "amount": e.amount,
            "reason": e.meta.get("reason"),
        })
    return pd.DataFrame(rows)
