import argparse

from .barcodes import barcode_counts
from .config import CountConfig, OverlapMode, STRANDED_CHOICES, UNPAIRED_CHOICES, load_config
from .count import count_matrix
from .errors import ConfigError
from .viewer import view_records

# argparse dest -> CountConfig field, for options that override the config file
_CONFIG_OPTIONS = (
    "overlap_mode",
    "stranded",
    "paired",
    "count_multimapping",
    "count_duplicates",
    "min_overlap_fraction",
    "min_overlap_bases",
    "require_proper_pair",
    "unpaired_mates",
    "count_secondary",
    "count_supplementary",
    "duplicates_in_multimapping",
    "min_mapq",
    "max_malformed",
    "workers",
)


def _build_config(args: argparse.Namespace) -> CountConfig:
    values = load_config(args.config) if args.config else {}
    values = {str(k).replace("-", "_"): v for k, v in values.items()}
    for name in _CONFIG_OPTIONS:
        v = getattr(args, name, None)
        if v is not None:
            values[name] = v
    return CountConfig.from_dict(values).validate()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Normalized view of the first reads of each BAM
    if args.cmd in ["view", "head"]:
        return view_records(args.bams, n=args.num)

    # Count reads per feature
    elif args.cmd == "count":
        try:
            config = _build_config(args)
        except ConfigError as e:
            print(f"[ERROR] {e}")
            return 2
        return count_matrix(
            bam_paths=args.bams,
            gff_path=args.gff,
            out_path=args.out,
            config=config,
            feature_type=args.feature_type,
            id_attribute=args.id_attribute,
            limit=args.limit,
            log_level=args.log_level,
            log_reads=args.log_reads,
        )

    # Reads per cell barcode
    elif args.cmd == "barcodes":
        return barcode_counts(args.bams, args.out, limit=args.limit, log_level=args.log_level)
    else:
        parser.error("Unknown command")

    return 2


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="featcount",
        description="Count aligned reads per annotated feature."
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    # Sanity checking of BAM files
    t = sub.add_parser(
        "view",
        aliases=["head"],
        help="Print the first N mapped reads of each BAM after normalization."
    )
    t.add_argument(
        "bams",
        nargs="+",
        help="One or more BAM files (glob patterns allowed)."
    )
    t.add_argument(
        "-n", "--num",
        type=int,
        default=10,
        help="Number of reads per BAM."
    )

    # count (matrix over multiple BAMs)
    c = sub.add_parser(
        "count",
        help="Count reads per feature across one or more BAMs; produces a feature x sample matrix."
    )
    c.add_argument(
        "bams",
        nargs="+",
        help="One or more BAM files or glob patterns (e.g., sample*.bam)."
    )
    c.add_argument(
        "--gff",
        required=True,
        help="Annotation in GFF3 or GTF format (.gz allowed)."
    )
    c.add_argument(
        "--out",
        required=True,
        help="Output TSV matrix path."
    )
    c.add_argument(
        "--config",
        default=None,
        help="Optional YAML file with counting options; command-line flags take precedence."
    )
    c.add_argument(
        "-t", "--type",
        dest="feature_type",
        default="exon",
        help="Annotation feature type (3rd column) to count on (default: exon)."
    )
    c.add_argument(
        "-i", "--id-attr",
        dest="id_attribute",
        default="gene_id",
        help="Attribute grouping rows into one feature (default: gene_id)."
    )
    c.add_argument(
        "-m", "--mode",
        dest="overlap_mode",
        choices=[m.value for m in OverlapMode],
        default=None,
        help="Overlap resolution mode (default: union)."
    )
    c.add_argument(
        "-s", "--stranded",
        choices=list(STRANDED_CHOICES),
        default=None,
        help="Strand-specific counting (default: yes)."
    )
    c.add_argument(
        "-p", "--paired",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Count mate pairs as one unit (default: off)."
    )
    c.add_argument(
        "--proper-pair",
        dest="require_proper_pair",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Only pair mates flagged as proper pair (default: on)."
    )
    c.add_argument(
        "--unpaired",
        dest="unpaired_mates",
        choices=list(UNPAIRED_CHOICES),
        default=None,
        help="Mates that cannot be paired: count as single reads or discard as __too_low_aQual (default: single)."
    )
    c.add_argument(
        "-M", "--multimapping",
        dest="count_multimapping",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Count multi-mapping reads at each location instead of __alignment_not_unique (default: off)."
    )
    c.add_argument(
        "--secondary",
        dest="count_secondary",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Also count secondary alignments (default: off)."
    )
    c.add_argument(
        "--supplementary",
        dest="count_supplementary",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Also count supplementary alignments (default: off)."
    )
    c.add_argument(
        "--duplicates",
        dest="count_duplicates",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Count reads flagged as duplicates (default: on); --no-duplicates reports them as __duplicate."
    )
    c.add_argument(
        "--duplicates-multimapping",
        dest="duplicates_in_multimapping",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Let duplicate-flagged alignments take part in multi-mapping detection (default: on)."
    )
    c.add_argument(
        "--min-overlap-fraction",
        type=float,
        default=None,
        help="Minimum fraction of an aligned segment overlapping a feature (0.0-1.0, default 0)."
    )
    c.add_argument(
        "--min-overlap-bases",
        type=int,
        default=None,
        help="Minimum number of overlapping bases per aligned segment (default 0)."
    )
    c.add_argument(
        "-a", "--min-mapq",
        dest="min_mapq",
        type=int,
        default=None,
        help="Reads below this mapping quality go to __too_low_aQual (default 0)."
    )
    c.add_argument(
        "--max-malformed",
        type=int,
        default=None,
        help="Abort when more malformed records than this are met (default 1000)."
    )
    c.add_argument(
        "-j", "--workers",
        type=int,
        default=None,
        help="Worker processes, one reference sequence per task (default 1)."
    )
    c.add_argument(
        "-n", "--limit",
        type=int,
        default=None,
        help="Process only the first N records of each BAM."
    )
    # Debugging assistance
    c.add_argument(
        "--log-level",
        default="INFO",
        choices=["ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO)."
    )
    c.add_argument(
        "--log-reads",
        type=int,
        default=0,
        help="When DEBUG, log the outcome of the first N read units per reference (default: 0)."
    )

    # barcodes (reads per CB tag)
    b = sub.add_parser(
        "barcodes",
        help="Count reads per cell barcode (CB tag); writes 'count barcode' lines sorted by barcode."
    )
    b.add_argument(
        "bams",
        nargs="+",
        help="One or more BAM files (glob patterns allowed); counts are summed."
    )
    b.add_argument(
        "-o", "--out",
        default="reads_per_barcode",
        help="Output file (default: reads_per_barcode)."
    )
    b.add_argument(
        "-n", "--limit",
        type=int,
        default=None,
        help="Process only the first N records of each BAM."
    )
    b.add_argument(
        "--log-level",
        default="INFO",
        choices=["ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO)."
    )
    return p

if __name__ == "__main__":
    raise SystemExit(main())
