from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional, Set, Union

from .config import CountConfig, OverlapMode
from .featcountClasses import GenomicInterval, ReadUnit, flip_strand
from .intervals import IntervalIndex

# Summary counter names, in the order they are reported
AMBIGUOUS = "ambiguous"
NO_FEATURE = "no_feature"
TOO_LOW_QUALITY = "too_low_quality"
DUPLICATE = "duplicate"
NOT_UNIQUE = "not_unique"
SUMMARY_COUNTERS = (NO_FEATURE, AMBIGUOUS, TOO_LOW_QUALITY, DUPLICATE, NOT_UNIQUE)


@dataclass(frozen=True)
class Assigned:
    feature_id: str
    counter = None


@dataclass(frozen=True)
class Ambiguous:
    feature_ids: FrozenSet[str]
    counter = AMBIGUOUS


@dataclass(frozen=True)
class NoFeature:
    counter = NO_FEATURE


@dataclass(frozen=True)
class TooLowQuality:
    counter = TOO_LOW_QUALITY


@dataclass(frozen=True)
class Duplicate:
    counter = DUPLICATE


@dataclass(frozen=True)
class NotUnique:
    counter = NOT_UNIQUE


ResolutionOutcome = Union[Assigned, Ambiguous, NoFeature, TooLowQuality, Duplicate, NotUnique]


def _union(per_segment: List[Set[str]]) -> Set[str]:
    return set().union(*per_segment)


def _intersection_strict(per_segment: List[Set[str]]) -> Set[str]:
    if not per_segment:
        return set()
    out = set(per_segment[0])
    for s in per_segment[1:]:
        out &= s
    return out


def _intersection_nonempty(per_segment: List[Set[str]]) -> Set[str]:
    return _intersection_strict([s for s in per_segment if s])


_COMBINE: Dict[OverlapMode, Callable[[List[Set[str]]], Set[str]]] = {
    OverlapMode.UNION: _union,
    OverlapMode.INTERSECTION_STRICT: _intersection_strict,
    OverlapMode.INTERSECTION_NONEMPTY: _intersection_nonempty,
}


def outcome_for(features: Set[str]) -> ResolutionOutcome:
    """Zero features -> NoFeature, one -> Assigned, several -> Ambiguous (never tie-broken)."""
    if not features:
        return NoFeature()
    if len(features) == 1:
        return Assigned(next(iter(features)))
    return Ambiguous(frozenset(features))


class OverlapResolver:
    """
    Decide the outcome of one ReadUnit under the configured overlap mode.

    Holds only configuration, so a single instance can be shared by any number
    of concurrent callers.
    """

    def __init__(self, config: CountConfig):
        self.mode = config.mode
        self.stranded = config.stranded
        self.min_overlap_fraction = float(config.min_overlap_fraction)
        self.min_overlap_bases = int(config.min_overlap_bases)
        self.count_multimapping = config.count_multimapping
        self.count_duplicates = config.count_duplicates
        self.min_mapq = config.min_mapq
        self._combine = _COMBINE[self.mode]

    def query_strand(self, unit: ReadUnit) -> Optional[str]:
        if self.stranded == "no":
            return None
        if self.stranded == "reverse":
            return flip_strand(unit.strand)
        return unit.strand

    def _passes_min_overlap(self, bases: int, segment: GenomicInterval) -> bool:
        if bases <= 0 or bases < self.min_overlap_bases:
            return False
        if self.min_overlap_fraction > 0.0 and bases / segment.length < self.min_overlap_fraction:
            return False
        return True

    def segment_features(self, index: Optional[IntervalIndex], segment: GenomicInterval,
                         strand: Optional[str]) -> Set[str]:
        if index is None:
            return set()
        hits = index.overlaps(segment, strand)
        return {fid for fid, bases in hits.items() if self._passes_min_overlap(bases, segment)}

    def resolve(self, unit: ReadUnit, index: Optional[IntervalIndex], multimapping: bool = False) -> ResolutionOutcome:
        # Mates on different references are reported as not unique
        if unit.discordant:
            return NotUnique()
        if multimapping and not self.count_multimapping:
            return NotUnique()
        if unit.duplicate and not self.count_duplicates:
            return Duplicate()
        if unit.unpaired_discard or unit.mapq < self.min_mapq:
            return TooLowQuality()

        strand = self.query_strand(unit)
        per_segment = [self.segment_features(index, seg, strand) for seg in unit.segments]
        return outcome_for(self._combine(per_segment))
