from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .featcountClasses import Feature, GenomicInterval, UNSTRANDED

logger = logging.getLogger(__name__)


def _merge_feature_intervals(intervals: Iterable[GenomicInterval]) -> List[Tuple[int, int]]:
    """Collapse overlapping constituent intervals so overlap bases are never counted twice."""
    merged: List[List[int]] = []
    for iv in sorted(intervals, key=lambda x: (x.start, x.end)):
        if merged and iv.start < merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], iv.end)
        else:
            merged.append([iv.start, iv.end])
    return [(s, e) for s, e in merged]


def _strand_ok(feature_strand: str, query_strand: Optional[str]) -> bool:
    if query_strand is None or query_strand == UNSTRANDED:
        return True
    return feature_strand == UNSTRANDED or feature_strand == query_strand


class IntervalIndex:
    """
    Static overlap index for the features of one reference sequence.

    Entries are kept sorted by start and read as an implicit balanced binary
    tree (node = midpoint of its index range), each node carrying the largest
    end coordinate of its subtree. A query descends only into subtrees that
    can still reach the query start, so it costs O(log n + k).
    """

    def __init__(self, reference: str, features: Iterable[Feature]):
        self.reference = reference
        self.features: Dict[str, Feature] = {}
        entries: List[Tuple[int, int, str]] = []
        for feat in features:
            if feat.reference != reference:
                raise ValueError(f"Feature {feat.feature_id} is on {feat.reference}, not {reference}")
            if feat.feature_id in self.features:
                raise ValueError(f"Duplicate feature identifier {feat.feature_id!r} on {reference}")
            self.features[feat.feature_id] = feat
            for s, e in _merge_feature_intervals(feat.intervals):
                entries.append((s, e, feat.feature_id))

        entries.sort()
        self._starts = [s for s, _e, _f in entries]
        self._ends = [e for _s, e, _f in entries]
        self._ids = [f for _s, _e, f in entries]
        self._max_end = list(self._ends)
        self._augment(0, len(entries))

    def _augment(self, lo: int, hi: int) -> int:
        # Fill _max_end for the subtree over [lo, hi); depth is O(log n)
        if lo >= hi:
            return -1
        mid = (lo + hi) // 2
        best = max(self._ends[mid], self._augment(lo, mid), self._augment(mid + 1, hi))
        self._max_end[mid] = best
        return best

    def __len__(self) -> int:
        return len(self._starts)

    @property
    def feature_ids(self) -> List[str]:
        return list(self.features.keys())

    def _hits(self, start: int, end: int):
        """Yield entry indices whose interval overlaps [start, end)."""
        stack = [(0, len(self._starts))]
        while stack:
            lo, hi = stack.pop()
            if lo >= hi:
                continue
            mid = (lo + hi) // 2
            if self._max_end[mid] <= start:
                continue
            stack.append((lo, mid))
            if self._starts[mid] < end:
                if self._ends[mid] > start:
                    yield mid
                stack.append((mid + 1, hi))

    def overlaps(self, interval: GenomicInterval, strand: Optional[str] = None) -> Dict[str, int]:
        """Feature id -> number of bases of ``interval`` covered by that feature."""
        out: Dict[str, int] = {}
        if interval.reference != self.reference:
            return out
        for i in self._hits(interval.start, interval.end):
            fid = self._ids[i]
            if not _strand_ok(self.features[fid].strand, strand):
                continue
            bases = min(self._ends[i], interval.end) - max(self._starts[i], interval.start)
            out[fid] = out.get(fid, 0) + bases
        return out

    def query(self, intervals: Iterable[GenomicInterval], strand: Optional[str] = None) -> Set[str]:
        """Distinct feature ids overlapping any of ``intervals``."""
        found: Set[str] = set()
        for iv in intervals:
            found.update(self.overlaps(iv, strand).keys())
        return found


class GenomeIndex:
    """Per-reference interval indexes plus the full feature universe."""

    def __init__(self, features: Iterable[Feature]):
        by_ref: Dict[str, List[Feature]] = defaultdict(list)
        seen: Dict[str, str] = {}
        self.feature_ids: List[str] = []
        for feat in features:
            if feat.feature_id in seen:
                raise ValueError(
                    f"Duplicate feature identifier {feat.feature_id!r} "
                    f"(on {seen[feat.feature_id]} and {feat.reference})"
                )
            seen[feat.feature_id] = feat.reference
            self.feature_ids.append(feat.feature_id)
            by_ref[feat.reference].append(feat)
        self.indexes: Dict[str, IntervalIndex] = {
            ref: IntervalIndex(ref, feats) for ref, feats in by_ref.items()
        }
        logger.debug(f"Indexed {len(self.feature_ids)} features on {len(self.indexes)} references")

    @property
    def references(self) -> List[str]:
        return sorted(self.indexes.keys())

    def get(self, reference: str) -> Optional[IntervalIndex]:
        return self.indexes.get(reference)

    def query(self, reference: str, intervals: Iterable[GenomicInterval], strand: Optional[str] = None) -> Set[str]:
        # References absent from the annotation simply have no features
        idx = self.indexes.get(reference)
        if idx is None:
            return set()
        return idx.query(intervals, strand)
