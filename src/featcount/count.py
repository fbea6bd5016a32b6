from __future__ import annotations

from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from itertools import chain
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple
import logging
import os
import sys

import psutil

from .accumulate import CountAccumulator, CountTable, merge_tables
from .bamtools import expand_bam_patterns, iter_bam_records
from .config import CountConfig
from .errors import ConfigError, FeatcountError, MalformedInputError
from .featcountClasses import Feature, ReadUnit
from .gfftools import load_features
from .grouper import AlignmentGrouper, MultiKey
from .intervals import GenomeIndex, IntervalIndex
from .resolve import (
    AMBIGUOUS,
    DUPLICATE,
    NO_FEATURE,
    NOT_UNIQUE,
    OverlapResolver,
    SUMMARY_COUNTERS,
    TOO_LOW_QUALITY,
)

# Row labels for the summary counters in the output matrix
SUMMARY_LABELS = {
    NO_FEATURE: "__no_feature",
    AMBIGUOUS: "__ambiguous",
    TOO_LOW_QUALITY: "__too_low_aQual",
    DUPLICATE: "__duplicate",
    NOT_UNIQUE: "__alignment_not_unique",
}


def _make_logger(level: str) -> logging.Logger:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger("featcount.count")
    # Configure once
    if not logger.handlers:
        handler = logging.StreamHandler()
        fmt = logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        handler.setFormatter(fmt)
        logger.addHandler(handler)
    logger.setLevel(lvl)
    return logger


def _get_memory_usage():
    process = psutil.Process(os.getpid())
    return process.memory_info().rss / 1024 / 1024  # Current memory usage in MB


@dataclass
class ReferenceContext:
    """Everything one worker needs for one reference; nothing in it is shared mutable state."""
    reference: str
    index: Optional[IntervalIndex]
    units: List[ReadUnit]
    multi_keys: FrozenSet[MultiKey]
    config: CountConfig
    log_reads: int = 0


def count_reference(ctx: ReferenceContext) -> CountTable:
    """Resolve and count every unit of one reference into a fresh table."""
    logger = logging.getLogger("featcount.count")
    debug = logger.isEnabledFor(logging.DEBUG) and ctx.log_reads > 0
    resolver = OverlapResolver(ctx.config)
    seed = ctx.index.feature_ids if ctx.index is not None else []
    acc = CountAccumulator(CountTable.for_features(seed))

    for n, unit in enumerate(ctx.units):
        multi = any(k in ctx.multi_keys for k in unit.multi_keys())
        outcome = resolver.resolve(unit, ctx.index, multimapping=multi)
        acc.add(outcome)
        if debug and n < ctx.log_reads:
            segs = ",".join(f"{s.start}-{s.end}" for s in unit.segments)
            logger.debug(f"{unit.read_id}: {ctx.reference}:{segs}({unit.strand}) mates={unit.mates} -> {outcome}")

    if ctx.index is None:
        acc.note("units_on_unannotated_references", acc.units)
    return acc.table


def _reference_contexts(
    units: Dict[str, List[ReadUnit]],
    genome: GenomeIndex,
    grouper: AlignmentGrouper,
    config: CountConfig,
    log_reads: int,
) -> List[ReferenceContext]:
    return [
        ReferenceContext(
            reference=ref,
            index=genome.get(ref),
            units=ref_units,
            multi_keys=grouper.registry.multimapping_among(ref_units),
            config=config,
            log_reads=log_reads,
        )
        for ref, ref_units in sorted(units.items())
    ]


def _run_workers(contexts: List[ReferenceContext], workers: int,
                 logger: logging.Logger | None = None) -> List[CountTable]:
    if workers <= 1 or len(contexts) <= 1:
        return [count_reference(ctx) for ctx in contexts]

    tables: List[CountTable] = []
    with ProcessPoolExecutor(max_workers=workers) as executor:
        future_to_ref = {executor.submit(count_reference, ctx): ctx.reference for ctx in contexts}
        completed = 0
        for future in as_completed(future_to_ref):
            ref = future_to_ref[future]
            try:
                tables.append(future.result())
            except Exception as e:
                # Abandon the run: no partial table may reach the caller
                executor.shutdown(wait=False, cancel_futures=True)
                raise FeatcountError(f"Counting failed on reference {ref}: {e}") from e
            completed += 1
            if logger:
                logger.debug(f"Reference {ref} done ({completed}/{len(contexts)})")
    return tables


def count_features(
    records: Iterable | Mapping[str, Iterable],
    features: Iterable[Feature] | GenomeIndex,
    config: CountConfig | None = None,
    *,
    logger: logging.Logger | None = None,
    log_reads: int = 0,
) -> CountTable:
    """
    Count reads per feature.

    ``records`` is an iterable of AlignmentRecord/MalformedRecord ordered by
    reference (or a mapping reference -> records). Returns the merged table,
    containing every feature of the annotation. Raises ConfigError before
    reading anything if the configuration is invalid, and MalformedInputError
    when the input exceeds the malformed-record tolerance; in both cases no
    table is produced.
    """
    config = (config or CountConfig()).validate()

    if isinstance(features, GenomeIndex):
        genome = features
    else:
        try:
            genome = GenomeIndex(features)
        except ValueError as e:
            raise MalformedInputError(str(e), category="annotation") from e

    if isinstance(records, Mapping):
        records = chain.from_iterable(records.values())

    grouper = AlignmentGrouper(config, logger=logger)
    units = grouper.group(records)
    n_units = sum(len(v) for v in units.values())
    if logger:
        logger.info(
            f"Grouped {grouper.stats['records']:,} records into {n_units:,} read units "
            f"on {len(units)} references"
        )

    contexts = _reference_contexts(units, genome, grouper, config, log_reads)
    tables = _run_workers(contexts, config.workers, logger=logger)

    final = merge_tables(chain([CountTable.for_features(genome.feature_ids)], tables))
    for key, n in grouper.stats.items():
        final.diagnostics[key] = final.diagnostics.get(key, 0) + n
    final.diagnostics["read_units"] = n_units

    if logger:
        logger.debug(
            "Summary: " + ", ".join(f"{k}={final.summary.get(k, 0)}" for k in SUMMARY_COUNTERS)
            + f", assigned={final.assigned}"
        )
    return final


def write_count_matrix(
    out_path: str | Path,
    sample_names: List[str],
    tables: List[CountTable],
    feature_ids: Iterable[str],
) -> Tuple[int, int]:
    """Write features x samples counts followed by the summary rows; returns (rows, samples)."""
    features = sorted(set(feature_ids).union(*(t.counts.keys() for t in tables)))
    outp = Path(out_path)
    outp.parent.mkdir(parents=True, exist_ok=True)
    with open(outp, "w", encoding="utf-8") as fh:
        fh.write("feature\t" + "\t".join(sample_names) + "\n")
        for feat in features:
            fh.write(feat + "\t" + "\t".join(str(t.counts.get(feat, 0)) for t in tables) + "\n")
        for key in SUMMARY_COUNTERS:
            fh.write(SUMMARY_LABELS[key] + "\t" + "\t".join(str(t.summary.get(key, 0)) for t in tables) + "\n")
    return len(features), len(sample_names)


def count_matrix(
    bam_paths: List[str],
    gff_path: str | Path,
    out_path: str | Path,
    *,
    config: CountConfig | None = None,
    feature_type: str = "exon",
    id_attribute: str = "gene_id",
    limit: int | None = None,
    log_level: str = "INFO",
    log_reads: int = 0,
) -> int:
    """
    Build a matrix with rows = features, columns = samples (one per BAM).
    Summary counters are appended as '__'-prefixed rows.
    """
    logger = _make_logger(log_level)

    logger.debug(f"Python version: {sys.version}")
    logger.debug(f"Starting memory: {_get_memory_usage():.1f} MB")

    config = config or CountConfig()
    try:
        config.validate()
    except ConfigError as e:
        logger.error(str(e))
        return 2
    logger.debug(f"Configuration: {config.to_dict()}")

    try:
        features = load_features(gff_path, feature_type=feature_type, id_attribute=id_attribute, logger=logger)
        genome = GenomeIndex(features)
    except (OSError, ValueError) as e:
        logger.error(f"{gff_path}: {e}")
        return 1
    if not genome.feature_ids:
        logger.warning(
            f"No '{feature_type}' features with attribute '{id_attribute}' found in {gff_path}; "
            "every read will be reported as __no_feature."
        )

    bam_list = expand_bam_patterns(bam_paths, warn=logger.warning)
    if not bam_list:
        logger.error("No BAMs found.")
        return 1

    logger.info(
        f"{len(bam_list)} BAM(s) to process; mode={config.overlap_mode}, stranded={config.stranded}, "
        f"paired={config.paired}, workers={config.workers}"
    )
    sample_names = [Path(b).stem for b in bam_list]
    tables: List[CountTable] = []

    for bamf, b in enumerate(bam_list, 1):
        logger.info(f"Processing BAM {bamf}/{len(bam_list)}: {b}")
        try:
            table = count_features(
                iter_bam_records(b, limit=limit, logger=logger),
                genome,
                config,
                logger=logger,
                log_reads=log_reads,
            )
        except (FeatcountError, OSError) as e:
            logger.error(f"{b}: {e}")
            return 1
        tables.append(table)
        logger.info(
            f"Done {b}: assigned={table.assigned:,}, "
            + ", ".join(f"{SUMMARY_LABELS[k]}={table.summary.get(k, 0):,}" for k in SUMMARY_COUNTERS)
        )
        if table.diagnostics.get("malformed"):
            logger.warning(f"{b}: skipped {table.diagnostics['malformed']:,} malformed records")
        logger.debug(f"{b}: diagnostics {dict(sorted(table.diagnostics.items()))}")
        logger.info(f"Current memory: {_get_memory_usage():.1f} MB")

    rows, samples = write_count_matrix(out_path, sample_names, tables, genome.feature_ids)
    logger.info(f"Wrote matrix to {out_path} with {rows} features and {samples} samples")
    return 0
