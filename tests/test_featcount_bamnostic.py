# tests/test_featcount_bamnostic.py
import pytest

from featcount import bamtools, viewer
from featcount.config import CountConfig
from featcount.count import count_features
from featcount.errors import MalformedInputError
from featcount.featcountClasses import (
    AlignmentRecord,
    MalformedRecord,
    FLAG_DUPLICATE,
    FLAG_PAIRED,
    FLAG_PROPER_PAIR,
    FLAG_READ1,
    FLAG_READ2,
    FLAG_REVERSE,
    FLAG_UNMAPPED,
)
from featcount.resolve import NOT_UNIQUE


def test_cigar_blocks_split_on_skips():
    # 10M 2D 5M 100N 20M 3S
    cigar = [(0, 10), (2, 2), (0, 5), (3, 100), (0, 20), (4, 3)]
    blocks = bamtools.cigar_blocks("chr1", 1000, cigar, "+")
    assert [(b.start, b.end) for b in blocks] == [(1000, 1017), (1117, 1137)]


def test_cigar_blocks_insertions_and_clips():
    cigar = [(5, 4), (4, 2), (0, 10), (1, 3), (0, 10)]
    blocks = bamtools.cigar_blocks("chr1", 0, cigar, "-")
    assert [(b.start, b.end, b.strand) for b in blocks] == [(0, 20, "-")]


def test_normalize_paired_reverse_mate(fake_alignment):
    aln = fake_alignment(
        "r1", "chr2", 500, [(0, 50)],
        flag=FLAG_PAIRED | FLAG_PROPER_PAIR | FLAG_READ2 | FLAG_REVERSE | FLAG_DUPLICATE,
        mapq=17, tags={"NH": 2}, next_ref="chr2", next_start=300,
    )
    rec = bamtools.normalize_alignment(aln, 4)
    assert isinstance(rec, AlignmentRecord)
    assert rec.read_id == "r1" and rec.reference == "chr2"
    assert [(b.start, b.end) for b in rec.blocks] == [(500, 550)]
    assert rec.strand == "-"
    assert rec.mate == 2
    assert rec.is_proper_pair and rec.is_duplicate
    assert rec.mapq == 17 and rec.hit_count == 2
    assert rec.mate_reference == "chr2" and rec.mate_start == 300
    assert rec.position == 4


def test_normalize_cigar_string_and_mate_id(fake_alignment):
    aln = fake_alignment("r1", "chr1", 10, None, flag=FLAG_PAIRED | FLAG_READ1, next_ref="chr2", next_start=40)
    aln.cigarstring = "5M10N5M"
    rec = bamtools.normalize_alignment(aln, 0, ["chr1", "chr2"])
    assert [(b.start, b.end) for b in rec.blocks] == [(10, 15), (25, 30)]
    assert rec.mate_reference == "chr2" and rec.mate_start == 40


def test_normalize_single_end_record(fake_alignment):
    aln = fake_alignment("r1", "chr1", 100, [(0, 50)])
    with pytest.raises(ValueError):
        aln.next_reference_name
    rec = bamtools.normalize_alignment(aln, 0, ["chr1", "chr2"])
    assert isinstance(rec, AlignmentRecord)
    assert rec.mate == 0
    assert rec.mate_reference is None and rec.mate_start is None
    assert rec.hit_count is None and rec.barcode is None

    # The raising mate properties read as absent
    assert bamtools._first_attr(aln, ("next_reference_name", "next_reference_start")) is None


def test_nh_and_barcode_read_through_get_tag(fake_alignment):
    aln = fake_alignment(
        "r1", "chr1", 500, [(0, 50)], flag=FLAG_PAIRED | FLAG_READ1,
        tags={"NH": 3, "CB": "AAACCTG-1"}, next_ref="chr1", next_start=300,
    )
    assert not hasattr(aln, "opt")
    rec = bamtools.normalize_alignment(aln, 0, ["chr1", "chr2"])
    assert rec.hit_count == 3
    assert rec.barcode == "AAACCTG-1"
    assert rec.mate_reference == "chr1" and rec.mate_start == 300


def test_get_tag_falls_back_to_opt():
    class OptOnly:
        def opt(self, tag):
            return {"NH": 2}[tag]

    assert bamtools.get_tag(OptOnly(), "NH") == 2
    assert bamtools.get_tag(OptOnly(), "CB") is None
    assert bamtools.get_tag(object(), "NH") is None


def test_single_end_bam_counts(tmp_path, fake_bam, fake_alignment, make_feature):
    path = tmp_path / "se.bam"
    fake_bam(path, [fake_alignment(f"r{i}", "chr1", 10 * i, [(0, 20)]) for i in range(3)])
    table = count_features(
        bamtools.iter_bam_records(path),
        [make_feature("F", "chr1", (0, 1000))],
        CountConfig(max_malformed=1),
    )
    assert table.counts == {"F": 3}
    assert table.diagnostics.get("malformed", 0) == 0


def test_nh_marks_bam_reads_not_unique(tmp_path, fake_bam, fake_alignment, make_feature):
    path = tmp_path / "nh.bam"
    fake_bam(path, [
        fake_alignment("multi", "chr1", 10, [(0, 20)], tags={"NH": 3}),
        fake_alignment("unique", "chr1", 50, [(0, 20)], tags={"NH": 1}),
    ])
    table = count_features(bamtools.iter_bam_records(path), [make_feature("F", "chr1", (0, 1000))])
    assert table.counts == {"F": 1}
    assert table.summary[NOT_UNIQUE] == 1


def test_expand_bam_patterns(tmp_path):
    for name in ("b.bam", "a.bam"):
        (tmp_path / name).write_bytes(b"")
    warnings = []
    found = bamtools.expand_bam_patterns(
        [str(tmp_path / "*.bam"), str(tmp_path / "a.bam"), str(tmp_path / "none*.bam")],
        warn=warnings.append,
    )
    assert found == [str(tmp_path / "a.bam"), str(tmp_path / "b.bam")]
    assert len(warnings) == 1 and "none*.bam" in warnings[0]


def test_normalize_unmapped_and_bad_values(fake_alignment):
    rec = bamtools.normalize_alignment(fake_alignment("u", None, 0, None, flag=FLAG_UNMAPPED), 0)
    assert rec.is_unmapped and rec.blocks == ()

    bad = fake_alignment("b", "chr1", 10, [(0, 10)])
    bad.mapping_quality = "high"
    out = bamtools.normalize_alignment(bad, 9)
    assert isinstance(out, MalformedRecord)
    assert out.position == 9 and out.reference == "chr1"


def test_iter_bam_records_limit(tmp_path, fake_bam, fake_alignment):
    path = tmp_path / "x.bam"
    fake_bam(path, [fake_alignment(f"r{i}", "chr1", i, [(0, 5)]) for i in range(5)])
    assert len(list(bamtools.iter_bam_records(path))) == 5
    limited = list(bamtools.iter_bam_records(path, limit=2))
    assert [r.read_id for r in limited] == ["r0", "r1"]


def test_iter_bam_records_decode_error(tmp_path, fake_bam, fake_alignment):
    path = tmp_path / "x.bam"
    fake_bam(path, [fake_alignment("r0", "chr1", 0, [(0, 5)])] * 4, fail_after=2)
    with pytest.raises(MalformedInputError) as exc:
        list(bamtools.iter_bam_records(path))
    assert exc.value.category == "decode-error"
    assert exc.value.position == 2


def test_view_records_runs(tmp_path, fake_bam, fake_alignment, capsys):
    path = tmp_path / "x.bam"
    path.write_bytes(b"")
    fake_bam(path, [
        fake_alignment("u", None, 0, None, flag=FLAG_UNMAPPED),
        fake_alignment("r1", "chr1", 99, [(0, 10), (3, 50), (0, 10)], tags={"NH": 1}),
        fake_alignment("r2", "chr1", 300, [(0, 10)]),
    ])
    rc = viewer.view_records([str(path)], n=1)
    assert rc == 0
    out = capsys.readouterr().out
    assert "r1\tchr1:100-109,160-169(+)\t-\tMAPQ=60\tNH=1" in out
    assert "r2" not in out


def test_view_records_no_files(capsys):
    assert viewer.view_records(["/nonexistent/*.bam"]) == 1
