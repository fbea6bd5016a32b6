"""
Pytest fixtures shared by the featcount tests.
"""

import pytest

from featcount import bamtools
from featcount.featcountClasses import (
    AlignmentRecord,
    Feature,
    GenomicInterval,
    FLAG_PAIRED,
    FLAG_PROPER_PAIR,
    FLAG_READ1,
    FLAG_READ2,
    FLAG_REVERSE,
    FLAG_UNMAPPED,
)


# ============================================================================
# Record / feature factories
# ============================================================================

@pytest.fixture
def make_record():
    """Build an AlignmentRecord from plain coordinates; blocks default to one [start, end)."""
    def _make(read_id, ref, start=None, end=None, strand="+", *, blocks=None, flags=0,
              mate=0, mapq=60, nh=None, mate_ref=None, position=None, barcode=None):
        if blocks is None:
            blocks = [(start, end)] if start is not None else []
        ivs = tuple(GenomicInterval(ref, s, e, strand) for s, e in blocks) if ref else ()
        return AlignmentRecord(
            read_id=read_id,
            reference=ref,
            blocks=ivs,
            strand=strand,
            flags=flags,
            mate=mate,
            mate_reference=mate_ref,
            mapq=mapq,
            hit_count=nh,
            position=position,
            barcode=barcode,
        )
    return _make


@pytest.fixture
def make_mates(make_record):
    """Build both mates of a pair; mate 2 is on the opposite strand as in a standard library."""
    def _make(read_id, ref1, span1, ref2, span2, *, proper=True, strand="+", extra_flags=0):
        base = FLAG_PAIRED | (FLAG_PROPER_PAIR if proper else 0) | extra_flags
        strand2 = "-" if strand == "+" else "+"
        m1 = make_record(read_id, ref1, *span1, strand, flags=base | FLAG_READ1, mate=1, mate_ref=ref2)
        m2 = make_record(read_id, ref2, *span2, strand2, flags=base | FLAG_READ2, mate=2, mate_ref=ref1)
        return m1, m2
    return _make


@pytest.fixture
def make_feature():
    def _make(fid, ref, *spans, strand="+"):
        return Feature(fid, ref, tuple(GenomicInterval(ref, s, e, strand) for s, e in spans), strand)
    return _make


@pytest.fixture
def overlapping_features(make_feature):
    """F1=[chr1:100-200,+] and F2=[chr1:150-250,+]."""
    return [
        make_feature("F1", "chr1", (100, 200)),
        make_feature("F2", "chr1", (150, 250)),
    ]


# ============================================================================
# Fake bamnostic
# ============================================================================

class FakeAlignment:
    """
    Just enough of a bamnostic AlignedSegment for the reader.

    Like bamnostic: optional tags come from get_tag() (KeyError when absent),
    the raw mate fields next_refID/next_pos are -1 without a mate, and the
    next_reference_* properties raise ValueError in that case.
    """

    def __init__(self, name, ref, start, cigar, *, flag=0, mapq=60, tags=None,
                 next_ref=None, next_start=None, references=("chr1", "chr2")):
        self.query_name = name
        self.reference_name = ref
        self.reference_start = start
        self.pos = start
        self.cigartuples = cigar
        self.flag = flag
        self.mapping_quality = mapq
        self._references = tuple(references)
        self.next_refID = self._references.index(next_ref) if next_ref else -1
        self.next_pos = next_start if next_start is not None else -1
        self._tags = dict(tags or {})

    @property
    def is_unmapped(self):
        return bool(self.flag & FLAG_UNMAPPED)

    @property
    def is_reverse(self):
        return bool(self.flag & FLAG_REVERSE)

    @property
    def next_reference_name(self):
        if self.next_refID < 0:
            raise ValueError("No data available for mate or mate does not exist")
        return self._references[self.next_refID]

    @property
    def next_reference_start(self):
        if self.next_refID < 0:
            raise ValueError("No data available for mate or mate does not exist")
        return self.next_pos

    def get_tag(self, tag):
        return self._tags[tag]


class FakeAlignmentFile:
    def __init__(self, alignments, references, fail_after=None):
        self._alignments = alignments
        self.references = references
        self._fail_after = fail_after
        self.closed = False

    def __iter__(self):
        for i, aln in enumerate(self._alignments):
            if self._fail_after is not None and i >= self._fail_after:
                raise OSError("truncated BGZF block")
            yield aln

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def close(self):
        self.closed = True


@pytest.fixture
def fake_bam(monkeypatch):
    """
    Replace bamnostic.AlignmentFile; returns a register(path, alignments, ...) function.
    """
    registry = {}

    def register(path, alignments, references=("chr1", "chr2"), fail_after=None):
        registry[str(path)] = (list(alignments), list(references), fail_after)

    def fake_alignmentfile(path, mode):
        alns, refs, fail_after = registry[str(path)]
        return FakeAlignmentFile(alns, refs, fail_after)

    monkeypatch.setattr(bamtools.bn, "AlignmentFile", fake_alignmentfile)
    return register


@pytest.fixture
def fake_alignment():
    return FakeAlignment
