from __future__ import annotations
from pathlib import Path

from .bamtools import expand_bam_patterns, iter_bam_records
from .errors import MalformedInputError
from .featcountClasses import AlignmentRecord


def _flag_names(rec: AlignmentRecord) -> str:
    names = []
    if rec.is_paired:
        names.append(f"mate{rec.mate}")
    if rec.is_proper_pair:
        names.append("proper")
    if rec.is_secondary:
        names.append("secondary")
    if rec.is_supplementary:
        names.append("supplementary")
    if rec.is_duplicate:
        names.append("duplicate")
    return ",".join(names) or "-"


def format_record(rec) -> str:
    """One TSV line: read_id, locus with blocks, flags, MAPQ[, NH]."""
    if not isinstance(rec, AlignmentRecord):
        return f"<malformed>\t{rec.reference}:{rec.position}\t{rec.reason}"
    blocks = ",".join(f"{b.start + 1}-{b.end}" for b in rec.blocks)
    nh_s = f"\tNH={rec.hit_count}" if rec.hit_count is not None else ""
    return f"{rec.read_id}\t{rec.reference}:{blocks}({rec.strand})\t{_flag_names(rec)}\tMAPQ={rec.mapq}{nh_s}"


def view_records(bams: list[str], n: int = 10) -> int:
    """
    Print the first N mapped reads of each BAM as the counter sees them,
    i.e. after normalization (1-based inclusive block coordinates).
    """
    bam_paths = expand_bam_patterns(bams, warn=lambda msg: print(f"[WARNING] {msg}"))
    if not bam_paths:
        print("[ERROR] No BAM files found.")
        return 1

    for bam in bam_paths:
        print(f"== {bam} ==")
        printed = 0
        try:
            for rec in iter_bam_records(Path(bam)):
                if isinstance(rec, AlignmentRecord) and rec.is_unmapped:
                    continue
                print(format_record(rec))
                printed += 1
                if printed >= n:
                    break
        except (OSError, MalformedInputError) as e:
            print(f"[ERROR] Could not read {bam}: {e}")
            return 1

        if printed == 0:
            print("[info] No mapped reads found.")

    return 0
