from __future__ import annotations
from collections import Counter
from pathlib import Path
import gzip
import logging
import re
from typing import Dict, List, Optional, TextIO, Tuple

from .featcountClasses import Feature, GenomicInterval, STRANDS, UNSTRANDED

_GTF_ATTR_RE = re.compile(r'\s*([^\s"]+)\s+"?([^";]*)"?\s*')


def _open_text_auto(path: str | Path, mode: str = "rt") -> TextIO:
    p = Path(path)
    if p.suffix.lower() == ".gz":
        return gzip.open(p, mode, encoding="utf-8", errors="replace")
    return open(p, mode, encoding="utf-8", errors="replace")


def parse_attrs(attr_field: str) -> Dict[str, str]:
    """
    Parse the 9th column of a GFF3 (``k=v;k=v``) or GTF (``k "v"; k "v";``) row.
    """
    out: Dict[str, str] = {}
    for kv in attr_field.strip().split(";"):
        kv = kv.strip()
        if not kv:
            continue
        if "=" in kv and '"' not in kv.split("=", 1)[0]:
            k, v = kv.split("=", 1)
            out[k.strip()] = v.strip()
            continue
        m = _GTF_ATTR_RE.fullmatch(kv)
        if m:
            # GTF allows repeated keys (e.g. tag); keep the first
            out.setdefault(m.group(1), m.group(2))
    return out


def _feature_id(attrs: Dict[str, str], id_attribute: str) -> Optional[str]:
    for key in (id_attribute, "ID", "Name"):
        v = attrs.get(key)
        if v:
            return v
    return None


def load_features(
    gff_path: str | Path,
    *,
    feature_type: str | None = "exon",
    id_attribute: str = "gene_id",
    logger: logging.Logger | None = None,
) -> List[Feature]:
    """
    Load GFF3/GTF rows of ``feature_type`` and group them by ``id_attribute``.

    Every group becomes one Feature whose intervals are the grouped rows
    (e.g. all exons of a gene). Coordinates are converted from 1-based
    inclusive to 0-based half-open. Malformed rows are skipped and counted;
    rows whose chromosome or strand disagrees with the rest of their group
    are skipped as well. ``feature_type=None`` keeps every row.
    """
    order: List[str] = []
    groups: Dict[str, Tuple[str, str, List[GenomicInterval]]] = {}
    skipped: Counter = Counter()

    with _open_text_auto(gff_path) as fh:
        for line in fh:
            if not line.strip() or line.startswith("#"):
                continue
            cols = line.rstrip("\n").split("\t")
            if len(cols) < 9:
                skipped["short_row"] += 1
                continue
            chrom, _src, ftype, start_s, end_s, _score, strand, _phase, attrs = cols[:9]
            if feature_type is not None and ftype != feature_type:
                continue
            try:
                start = int(start_s); end = int(end_s)
            except ValueError:
                skipped["bad_coordinates"] += 1
                continue
            if start < 1 or end < start:
                skipped["bad_coordinates"] += 1
                continue
            if strand not in STRANDS:
                strand = UNSTRANDED
            fid = _feature_id(parse_attrs(attrs), id_attribute)
            if not fid:
                skipped["missing_id"] += 1
                continue

            iv = GenomicInterval(chrom, start - 1, end, strand)
            if fid not in groups:
                groups[fid] = (chrom, strand, [iv])
                order.append(fid)
                continue
            g_chrom, g_strand, ivs = groups[fid]
            if g_chrom != chrom or g_strand != strand:
                skipped["inconsistent_group"] += 1
                continue
            ivs.append(iv)

    features = [Feature(fid, groups[fid][0], tuple(groups[fid][2]), groups[fid][1]) for fid in order]

    if logger:
        n_iv = sum(len(f.intervals) for f in features)
        logger.info(f"Annotation loaded: {len(features)} features from {n_iv} '{feature_type or '*'}' rows")
        if skipped:
            logger.warning(
                f"Skipped {sum(skipped.values())} annotation rows: "
                + ", ".join(f"{k}={v}" for k, v in sorted(skipped.items()))
            )
        if logger.isEnabledFor(logging.DEBUG):
            for f in features[:5]:
                logger.debug(f"  Example feature: {f.feature_id} {f.reference}:{f.start}-{f.end}({f.strand}) "
                             f"intervals={len(f.intervals)}")
    return features
