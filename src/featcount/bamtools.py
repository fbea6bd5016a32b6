from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence, Tuple, Union
import glob
import logging
import os
import re

import bamnostic as bn

from .errors import MalformedInputError
from .featcountClasses import (
    AlignmentRecord,
    GenomicInterval,
    MalformedRecord,
    FLAG_PAIRED,
    FLAG_READ1,
    FLAG_READ2,
    FLAG_REVERSE,
    FORWARD,
    REVERSE,
)

# CIGAR operations: M I D N S H P = X
CIGAR_OPS = "MIDNSHP=X"
_CIGAR_RE = re.compile(r"(\d+)([MIDNSHP=X])")
_REF_CONSUMING_ALIGNED = {0, 7, 8}  # M, =, X
_DELETION = 2
_SKIP = 3


def _get_read_name(aln) -> str:
    for attr in ("query_name", "qname", "read_name"):
        v = getattr(aln, attr, None)
        if v:
            return v
    return ""


def _first_attr(aln, names: Sequence[str], default=None):
    for attr in names:
        # bamnostic's mate properties raise ValueError when there is no mate
        try:
            v = getattr(aln, attr, None)
        except ValueError:
            continue
        if v is not None:
            return v
    return default


def expand_bam_patterns(bams: List[str], warn: Optional[Callable[[str], None]] = None) -> List[str]:
    """Expand glob patterns (sample*.bam) cross-platform; keep order; de-dupe."""
    seen = set()
    out: List[str] = []
    for pat in bams:
        matches = glob.glob(pat) if any(ch in pat for ch in "*?[]") else ([pat] if os.path.exists(pat) else [])
        if not matches and warn:
            warn(f"No BAMs matched: {pat}")
        for m in sorted(matches):
            if m not in seen:
                seen.add(m)
                out.append(m)
    return out


def _cigar_tuples(aln) -> List[Tuple[int, int]]:
    cig = _first_attr(aln, ("cigartuples", "cigar"))
    if cig and not isinstance(cig, str):
        return [(int(op), int(length)) for op, length in cig]
    cigar_string = _first_attr(aln, ("cigarstring",)) or cig
    if cigar_string and cigar_string != "*":
        return [(CIGAR_OPS.index(op), int(n)) for n, op in _CIGAR_RE.findall(cigar_string)]
    return []


def cigar_blocks(reference: str, start: int, cigar: Sequence[Tuple[int, int]], strand: str) -> List[GenomicInterval]:
    """
    Aligned reference blocks of one alignment.

    Deletions stay inside the current block; skipped regions (N) split it.
    """
    blocks: List[GenomicInterval] = []
    pos = start
    block_start: Optional[int] = None
    for op, length in cigar:
        if op in _REF_CONSUMING_ALIGNED or op == _DELETION:
            if block_start is None:
                block_start = pos
            pos += length
        elif op == _SKIP:
            if block_start is not None and pos > block_start:
                blocks.append(GenomicInterval(reference, block_start, pos, strand))
            block_start = None
            pos += length
    if block_start is not None and pos > block_start:
        blocks.append(GenomicInterval(reference, block_start, pos, strand))
    return blocks


def _mate_reference(aln, references: Sequence[str]) -> Optional[str]:
    ref_id = _first_attr(aln, ("next_refID", "next_reference_id", "rnext"))
    if isinstance(ref_id, int):
        if ref_id < 0:
            return None
        if ref_id < len(references):
            return references[ref_id]
    name = _first_attr(aln, ("next_reference_name",))
    if name and name != "*":
        return name
    return None


def _mate_start(aln) -> Optional[int]:
    pos = _first_attr(aln, ("next_pos", "next_reference_start", "pnext"))
    if pos is None or int(pos) < 0:
        return None
    return int(pos)


def get_tag(aln, tag: str):
    """Optional tag value, or None when absent (bamnostic get_tag, pysam-style opt)."""
    for getter in ("get_tag", "opt"):
        fn = getattr(aln, getter, None)
        if fn is None:
            continue
        try:
            return fn(tag)
        except KeyError:
            return None
    return None


def _nh(aln) -> Optional[int]:
    nh = get_tag(aln, "NH")
    return nh if isinstance(nh, int) and not isinstance(nh, bool) else None


def _barcode(aln) -> Optional[str]:
    cb = get_tag(aln, "CB")
    return cb if isinstance(cb, str) and cb else None


def normalize_alignment(aln, position: int, references: Sequence[str] = ()) -> Union[AlignmentRecord, MalformedRecord]:
    """Convert a bamnostic (or pysam-like) alignment into an AlignmentRecord."""
    reference = _first_attr(aln, ("reference_name",))
    try:
        flags = int(getattr(aln, "flag", 0) or 0)
        mate = 0
        if flags & FLAG_PAIRED:
            mate = 1 if flags & FLAG_READ1 else (2 if flags & FLAG_READ2 else 0)
        strand = REVERSE if flags & FLAG_REVERSE else FORWARD

        blocks: List[GenomicInterval] = []
        if reference and not getattr(aln, "is_unmapped", False):
            start = int(_first_attr(aln, ("reference_start", "pos"), 0))
            cigar = _cigar_tuples(aln)
            if cigar:
                blocks = cigar_blocks(reference, start, cigar, strand)
            else:
                end = _first_attr(aln, ("reference_end",))
                if end is not None and int(end) > start:
                    blocks = [GenomicInterval(reference, start, int(end), strand)]

        return AlignmentRecord(
            read_id=_get_read_name(aln),
            reference=reference or None,
            blocks=tuple(blocks),
            strand=strand,
            flags=flags,
            mate=mate,
            mate_reference=_mate_reference(aln, references),
            mate_start=_mate_start(aln),
            mapq=int(_first_attr(aln, ("mapping_quality", "mapq"), 255)),
            hit_count=_nh(aln),
            position=position,
            barcode=_barcode(aln),
        )
    except (ValueError, TypeError) as e:
        return MalformedRecord(reference=reference, position=position, reason=f"unparseable: {e}")


def iter_bam_records(
    bam_path: str | Path,
    *,
    limit: int | None = None,
    logger: logging.Logger | None = None,
    progress_every: int = 1_000_000,
) -> Iterator[Union[AlignmentRecord, MalformedRecord]]:
    """Stream normalized records from a BAM, optionally stopping after ``limit`` records."""
    with bn.AlignmentFile(str(bam_path), "rb") as bam:
        references = list(getattr(bam, "references", None) or [])
        if logger and logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"BAM references: {references[:10]}")
        it = iter(bam)
        n = 0
        while limit is None or n < limit:
            try:
                aln = next(it)
            except StopIteration:
                break
            except Exception as e:
                raise MalformedInputError(
                    f"Could not decode {bam_path}: {e}", position=n, category="decode-error"
                ) from e
            yield normalize_alignment(aln, n, references)
            n += 1
            if logger and n % progress_every == 0:
                logger.info(f"Read {n:,} alignments from {bam_path}...")
        if logger and limit is not None and n >= limit:
            logger.info(f"Stopped after {limit:,} records (limit) in {bam_path}")
