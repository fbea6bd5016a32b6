from __future__ import annotations

import logging
from collections import Counter, defaultdict
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from .config import CountConfig
from .errors import MalformedInputError
from .featcountClasses import (
    AlignmentRecord,
    MalformedRecord,
    ReadUnit,
    FLAG_MATE_UNMAPPED,
    pair_unit,
    single_unit,
)

MultiKey = Tuple[str, int]  # (read id, mate number)


class MultiHitRegistry:
    """Tracks, per read id and mate, whether more than one alignment location was reported."""

    def __init__(self):
        self.primary: Counter = Counter()
        self.flagged: Set[MultiKey] = set()

    def note_primary(self, key: MultiKey) -> None:
        self.primary[key] += 1

    def flag(self, key: MultiKey) -> None:
        self.flagged.add(key)

    def is_multimapping(self, key: MultiKey) -> bool:
        return self.primary.get(key, 0) > 1 or key in self.flagged

    def multimapping_among(self, units: Iterable[ReadUnit]) -> FrozenSet[MultiKey]:
        """Multi-mapping keys referenced by ``units``; what a worker needs to see of the registry."""
        out: Set[MultiKey] = set()
        for u in units:
            for key in u.multi_keys():
                if self.is_multimapping(key):
                    out.add(key)
        return frozenset(out)


class AlignmentGrouper:
    """
    Turn an ordered stream of alignment records into read units.

    Units are collected per reference; multi-mapping is only known once the
    whole stream has been seen, so the registry is consulted after
    ``finish()`` rather than while grouping.
    """

    def __init__(self, config: CountConfig, *, logger: logging.Logger | None = None,
                 progress_every: int = 1_000_000):
        self.config = config
        self.logger = logger
        self.progress_every = progress_every
        self.units: Dict[str, List[ReadUnit]] = defaultdict(list)
        self.registry = MultiHitRegistry()
        self.stats: Counter = Counter()
        self._pending: Dict[str, AlignmentRecord] = {}
        self._seen = 0
        self._finished = False

    # Defects -----------------------------------------------------------------

    def _defect(self, reference: Optional[str], position: Optional[int], category: str) -> None:
        self.stats["malformed"] += 1
        if self.logger and self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(f"skip record at {reference}:{position}: {category}")
        if self.stats["malformed"] > self.config.max_malformed:
            raise MalformedInputError(
                f"More than {self.config.max_malformed} malformed alignment records",
                reference=reference,
                position=position,
                category=category,
            )

    # Unit emission -----------------------------------------------------------

    def _emit(self, unit: ReadUnit) -> None:
        self.units[unit.reference].append(unit)

    def _unpaired(self, rec: AlignmentRecord) -> None:
        discard = self.config.unpaired_mates == "discard"
        self._emit(single_unit(rec, mate_strand_flip=(rec.mate == 2), discard=discard))

    def _pair(self, rec: AlignmentRecord) -> None:
        if rec.flags & FLAG_MATE_UNMAPPED:
            self.stats["orphan_mates"] += 1
            self._unpaired(rec)
            return

        other = self._pending.pop(rec.read_id, None)
        if other is None:
            self._pending[rec.read_id] = rec
            return

        if other.mate == rec.mate:
            # A second primary for the same mate; the registry already marks it multi-mapping
            self._unpaired(other)
            self._pending[rec.read_id] = rec
            return

        if other.reference != rec.reference:
            self.stats["discordant_pairs"] += 1
            self._emit(pair_unit(other, rec, discordant=True))
        elif self.config.require_proper_pair and not (other.is_proper_pair and rec.is_proper_pair):
            self.stats["improper_pairs"] += 1
            self._unpaired(other)
            self._unpaired(rec)
        else:
            self._emit(pair_unit(other, rec))

    # Stream processing ---------------------------------------------------------

    def add(self, item) -> None:
        if self._finished:
            raise RuntimeError("AlignmentGrouper.add() called after finish()")
        self._seen += 1
        if isinstance(item, MalformedRecord):
            self._defect(item.reference, item.position, item.reason)
            return
        if not isinstance(item, AlignmentRecord):
            self._defect(None, self._seen, f"unexpected-item:{type(item).__name__}")
            return

        rec = item
        pos = rec.position if rec.position is not None else self._seen
        defect = rec.defect()
        if defect is not None:
            self._defect(rec.reference, pos, defect)
            return
        if rec.is_unmapped:
            self.stats["unmapped"] += 1
            return

        cfg = self.config
        key = (rec.read_id, rec.mate)

        if rec.is_secondary or rec.is_supplementary:
            self.registry.flag(key)
            kind = "secondary" if rec.is_secondary else "supplementary"
            if (rec.is_secondary and cfg.count_secondary) or (rec.is_supplementary and cfg.count_supplementary):
                self._emit(single_unit(rec, mate_strand_flip=(cfg.paired and rec.mate == 2)))
            else:
                self.stats[kind] += 1
            return

        if cfg.duplicates_in_multimapping or not rec.is_duplicate:
            self.registry.note_primary(key)
        if rec.hit_count is not None and rec.hit_count > 1:
            self.registry.flag(key)

        if cfg.paired and rec.is_paired and rec.mate in (1, 2):
            self._pair(rec)
        else:
            self._emit(single_unit(rec))

    def consume(self, records: Iterable) -> None:
        for item in records:
            self.add(item)
            if self.logger and self._seen % self.progress_every == 0:
                self.logger.info(
                    f"Grouped {self._seen:,} records... (pending mates: {len(self._pending):,})"
                )

    def finish(self) -> Dict[str, List[ReadUnit]]:
        """Flush mates whose partner never showed up and return the units per reference."""
        if not self._finished:
            for rec in self._pending.values():
                self.stats["orphan_mates"] += 1
                self._unpaired(rec)
            self._pending.clear()
            self._finished = True
        self.stats["records"] = self._seen
        return dict(self.units)

    def group(self, records: Iterable) -> Dict[str, List[ReadUnit]]:
        self.consume(records)
        return self.finish()
