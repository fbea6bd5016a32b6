from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple

FORWARD = "+"
REVERSE = "-"
UNSTRANDED = "."
STRANDS = (FORWARD, REVERSE, UNSTRANDED)

# SAM flag bits
FLAG_PAIRED = 0x1
FLAG_PROPER_PAIR = 0x2
FLAG_UNMAPPED = 0x4
FLAG_MATE_UNMAPPED = 0x8
FLAG_REVERSE = 0x10
FLAG_READ1 = 0x40
FLAG_READ2 = 0x80
FLAG_SECONDARY = 0x100
FLAG_DUPLICATE = 0x400
FLAG_SUPPLEMENTARY = 0x800


def flip_strand(strand: str) -> str:
    if strand == FORWARD:
        return REVERSE
    if strand == REVERSE:
        return FORWARD
    return strand


@dataclass(frozen=True)
class GenomicInterval:
    """Zero-based, half-open interval on one reference sequence."""
    reference: str
    start: int  # 0-based inclusive
    end: int    # 0-based exclusive
    strand: str = UNSTRANDED

    def __post_init__(self):
        if self.start < 0 or self.start >= self.end:
            raise ValueError(
                f"Invalid interval {self.reference}:{self.start}-{self.end} (need 0 <= start < end)"
            )
        if self.strand not in STRANDS:
            raise ValueError(f"Invalid strand {self.strand!r} for {self.reference}:{self.start}-{self.end}")

    @property
    def length(self) -> int:
        return self.end - self.start


# Annotated feature (gene, exon group, region); owned by the interval index once built
@dataclass(frozen=True)
class Feature:
    feature_id: str
    reference: str
    intervals: Tuple[GenomicInterval, ...]
    strand: str = UNSTRANDED

    def __post_init__(self):
        if not self.feature_id:
            raise ValueError("Feature needs a non-empty identifier")
        if not self.intervals:
            raise ValueError(f"Feature {self.feature_id} has no intervals")
        # Accept lists from callers but keep the stored value immutable
        object.__setattr__(self, "intervals", tuple(self.intervals))
        for iv in self.intervals:
            if iv.reference != self.reference:
                raise ValueError(
                    f"Feature {self.feature_id} on {self.reference} has an interval on {iv.reference}"
                )
        if self.strand not in STRANDS:
            raise ValueError(f"Invalid strand {self.strand!r} for feature {self.feature_id}")

    @property
    def start(self) -> int:
        return min(iv.start for iv in self.intervals)

    @property
    def end(self) -> int:
        return max(iv.end for iv in self.intervals)


@dataclass(frozen=True)
class AlignmentRecord:
    """One normalized alignment as produced by a reader."""
    read_id: str
    reference: Optional[str]
    blocks: Tuple[GenomicInterval, ...]
    strand: str = FORWARD
    flags: int = 0
    mate: int = 0  # 0 single-end, 1 first mate, 2 second mate
    mate_reference: Optional[str] = None
    mate_start: Optional[int] = None
    mapq: int = 255
    hit_count: Optional[int] = None  # NH tag, when the aligner reports it
    position: Optional[int] = None   # ordinal in the input stream, for diagnostics
    barcode: Optional[str] = None    # cell barcode (CB tag), single-cell libraries

    @property
    def is_unmapped(self) -> bool:
        return bool(self.flags & FLAG_UNMAPPED) or self.reference is None

    @property
    def is_paired(self) -> bool:
        return bool(self.flags & FLAG_PAIRED)

    @property
    def is_proper_pair(self) -> bool:
        return bool(self.flags & FLAG_PROPER_PAIR)

    @property
    def is_secondary(self) -> bool:
        return bool(self.flags & FLAG_SECONDARY)

    @property
    def is_supplementary(self) -> bool:
        return bool(self.flags & FLAG_SUPPLEMENTARY)

    @property
    def is_duplicate(self) -> bool:
        return bool(self.flags & FLAG_DUPLICATE)

    def defect(self) -> Optional[str]:
        """Return a short defect category if the record cannot be counted, else None."""
        if not self.read_id:
            return "missing-read-id"
        if self.is_unmapped:
            return None
        if not self.blocks:
            return "no-aligned-blocks"
        for b in self.blocks:
            if b.reference != self.reference:
                return "block-reference-mismatch"
        if self.strand not in (FORWARD, REVERSE):
            return "bad-strand"
        if self.mate not in (0, 1, 2):
            return "bad-mate-number"
        return None


@dataclass(frozen=True)
class MalformedRecord:
    """Placeholder a reader yields for an alignment it could not normalize."""
    reference: Optional[str]
    position: Optional[int]
    reason: str


# Logical unit handed to the resolver: one read, one lone mate or one mate pair
class ReadUnit(NamedTuple):
    read_id: str
    reference: str
    segments: Tuple[GenomicInterval, ...]
    strand: str
    mates: Tuple[int, ...]
    mapq: int
    duplicate: bool
    discordant: bool
    unpaired_discard: bool

    def multi_keys(self) -> Tuple[Tuple[str, int], ...]:
        return tuple((self.read_id, m) for m in self.mates)


def single_unit(rec: AlignmentRecord, *, mate_strand_flip: bool = False, discard: bool = False) -> ReadUnit:
    strand = flip_strand(rec.strand) if mate_strand_flip else rec.strand
    return ReadUnit(
        read_id=rec.read_id,
        reference=rec.reference,
        segments=tuple(rec.blocks),
        strand=strand,
        mates=(rec.mate,),
        mapq=rec.mapq,
        duplicate=rec.is_duplicate,
        discordant=False,
        unpaired_discard=discard,
    )


def pair_unit(first: AlignmentRecord, second: AlignmentRecord, *, discordant: bool = False) -> ReadUnit:
    """Build a pair unit; strand follows mate 1, whatever order the mates arrived in."""
    if first.mate == 2 and second.mate == 1:
        first, second = second, first
    segments = tuple(first.blocks) + (tuple(second.blocks) if not discordant else ())
    return ReadUnit(
        read_id=first.read_id,
        reference=first.reference,
        segments=segments,
        strand=first.strand,
        mates=(first.mate, second.mate),
        mapq=min(first.mapq, second.mapq),
        duplicate=first.is_duplicate or second.is_duplicate,
        discordant=discordant,
        unpaired_discard=False,
    )
