from __future__ import annotations

from collections import Counter
from pathlib import Path
from typing import Iterable, List, Tuple, Union
import logging

from .bamtools import expand_bam_patterns, iter_bam_records
from .count import _make_logger
from .errors import FeatcountError
from .featcountClasses import AlignmentRecord, MalformedRecord


def tally_barcodes(
    records: Iterable[Union[AlignmentRecord, MalformedRecord]],
    counts: Counter | None = None,
    logger: logging.Logger | None = None,
) -> Tuple[Counter, int]:
    """
    Count records per cell barcode (CB tag).

    Every record carrying a barcode is counted, mapped or not. Records without
    one are ignored; unparseable records are skipped and returned as a count.
    """
    counts = Counter() if counts is None else counts
    skipped = 0
    for rec in records:
        if isinstance(rec, MalformedRecord):
            skipped += 1
            if logger:
                logger.debug(f"Skipping record {rec.position}: {rec.reason}")
            continue
        if rec.barcode:
            counts[rec.barcode] += 1
    return counts, skipped


def write_barcode_counts(out_path: str | Path, counts: Counter) -> Tuple[int, int]:
    """Write ``count barcode`` lines sorted by barcode; returns (barcodes, reads)."""
    total = 0
    with open(out_path, "w") as fh:
        for barcode in sorted(counts):
            fh.write(f"{counts[barcode]:>7} {barcode}\n")
            total += counts[barcode]
    return len(counts), total


def barcode_counts(
    bam_paths: List[str],
    out_path: str | Path = "reads_per_barcode",
    *,
    limit: int | None = None,
    log_level: str = "INFO",
) -> int:
    """Reads per cell barcode, summed over all given BAMs."""
    logger = _make_logger(log_level)

    bam_list = expand_bam_patterns(bam_paths, warn=logger.warning)
    if not bam_list:
        logger.error("No BAMs found.")
        return 1

    counts: Counter = Counter()
    for b in bam_list:
        if limit is not None:
            logger.info(f"Processing up to {limit:,} records from {b}")
        else:
            logger.info(f"Processing all records from {b}")
        try:
            _, skipped = tally_barcodes(iter_bam_records(b, limit=limit, logger=logger), counts, logger)
        except (FeatcountError, OSError) as e:
            logger.error(f"{b}: {e}")
            return 1
        if skipped:
            logger.warning(f"{b}: skipped {skipped:,} unreadable records")

    n_barcodes, total = write_barcode_counts(out_path, counts)
    logger.info(
        f"Found {n_barcodes:,} unique barcodes from a total of {total:,} barcoded reads; "
        f"results written to {out_path}"
    )
    return 0
