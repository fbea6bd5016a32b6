from __future__ import annotations

from dataclasses import dataclass, field
from functools import reduce
from typing import Dict, Iterable

from .resolve import Assigned, ResolutionOutcome, SUMMARY_COUNTERS


def _add_counts(a: Dict[str, int], b: Dict[str, int]) -> Dict[str, int]:
    out = dict(a)
    for k, v in b.items():
        out[k] = out.get(k, 0) + v
    return out


@dataclass
class CountTable:
    """Per-feature counts, summary counters and input diagnostics."""
    counts: Dict[str, int] = field(default_factory=dict)
    summary: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in SUMMARY_COUNTERS})
    diagnostics: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def for_features(cls, feature_ids: Iterable[str]) -> "CountTable":
        # Every known feature is present, zero or not
        return cls(counts={fid: 0 for fid in feature_ids})

    def merge(self, other: "CountTable") -> "CountTable":
        """Element-wise sum; neither operand is modified."""
        return CountTable(
            counts=_add_counts(self.counts, other.counts),
            summary=_add_counts(self.summary, other.summary),
            diagnostics=_add_counts(self.diagnostics, other.diagnostics),
        )

    @property
    def assigned(self) -> int:
        return sum(self.counts.values())

    def total(self) -> int:
        """Units accounted for: assigned reads plus every summary counter."""
        return self.assigned + sum(self.summary.values())


def merge_tables(tables: Iterable[CountTable]) -> CountTable:
    return reduce(CountTable.merge, tables, CountTable())


class CountAccumulator:
    """Turns resolution outcomes into counts for one worker's table."""

    def __init__(self, table: CountTable | None = None):
        self.table = table if table is not None else CountTable()
        self.units = 0

    def add(self, outcome: ResolutionOutcome) -> None:
        self.units += 1
        if isinstance(outcome, Assigned):
            counts = self.table.counts
            counts[outcome.feature_id] = counts.get(outcome.feature_id, 0) + 1
        else:
            summary = self.table.summary
            summary[outcome.counter] = summary.get(outcome.counter, 0) + 1

    def note(self, key: str, n: int = 1) -> None:
        self.table.diagnostics[key] = self.table.diagnostics.get(key, 0) + n
