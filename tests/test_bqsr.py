import pytest

from readprep.bqsr import (
    RecalibrationTable,
    apply_recalibration,
    build_recalibration_table,
    empirical_quality,
)
from readprep.collection import ReadCollection
from readprep.context import ExecutionContext
from readprep.covariates import CovariateKind, context, cycle, parse_covariates
from readprep.reference import ReferenceGenome
from readprep.toy_data import make_record, random_reference, synthetic_reads

CTX = ExecutionContext(parallelism=2, default_partitions=4)
Q = CovariateKind.QUALITY_SCORE


def collection(reads):
    return ReadCollection.from_items(reads, CTX)


def test_q30_at_one_percent_error_recalibrates_to_q20():
    ref = random_reference(10000, seed=11)
    reads = synthetic_reads(ref, n_reads=2400, read_length=50, error_rate=0.01, quality=30, seed=13)
    table = build_recalibration_table(collection(reads), covariates=(Q,), min_observations=100)
    assert table.total_observations == 2400 * 50
    assert table.recalibrated(("rg1", 30), 30) == 20

    out = apply_recalibration(collection(reads), table).collect()
    assert all(set(r.quality_scores) == {20} for r in out)
    assert all(r.original_quality_scores == (30,) * 50 for r in out)


def test_recalibration_is_pure_and_table_is_frozen():
    ref = random_reference(1500, seed=2)
    reads = synthetic_reads(ref, n_reads=200, error_rate=0.02, seed=4)
    coll = collection(reads)

    t1 = build_recalibration_table(coll, min_observations=20)
    t2 = build_recalibration_table(collection(list(reversed(reads))), min_observations=20)
    assert dict(t1.counts) == dict(t2.counts)

    first = apply_recalibration(coll, t1).collect()
    second = apply_recalibration(coll, t1).collect()
    assert first == second
    assert coll.collect() == reads

    with pytest.raises(TypeError):
        t1.counts[("rg1",)] = (0, 0)  # type: ignore[index]


def test_fallback_to_coarser_key_and_reported_quality():
    kinds = (Q, CovariateKind.CYCLE)
    table = RecalibrationTable(
        covariates=kinds,
        counts={
            ("rg1",): (1000, 10),
            ("rg1", 30): (50, 5),
            ("rg1", 30, 1): (5, 5),
            ("rg1", 25): (400, 40),
        },
        min_observations=100,
    )
    assert table.bucket_for(("rg1", 30, 1)) == ("rg1",)
    assert table.recalibrated(("rg1", 30, 1), 30) == round(empirical_quality(1000, 10))
    assert table.bucket_for(("rg1", 25, 7)) == ("rg1", 25)
    assert table.recalibrated(("rg2", 30, 1), 30) == 30
    assert table.total_observations == 1000


def test_original_qualities_kept_on_second_pass():
    ref = random_reference(800, seed=5)
    reads = synthetic_reads(ref, n_reads=100, error_rate=0.05, quality=30, seed=6)
    table = build_recalibration_table(collection(reads), covariates=(Q,), min_observations=10)
    once = apply_recalibration(collection(reads), table).collect()
    twice = apply_recalibration(collection(once), table).collect()
    assert all(r.original_quality_scores == (30,) * 50 for r in twice)


def test_duplicates_known_sites_and_reads_without_md_are_skipped():
    ref = random_reference(300, seed=8)
    seq = list(ref[10:60])
    seq[5] = "A" if seq[5] != "A" else "C"
    mismatched = make_record("m", ref, 10, "".join(seq))
    dup = make_record("d", ref, 10, "".join(seq)).with_updates(duplicate_read=True)
    no_md = make_record("n", ref, 100, ref[100:150]).with_updates(mismatching_positions=None)

    table = build_recalibration_table(collection([mismatched, dup, no_md]), covariates=(Q,), min_observations=1)
    assert table.total_observations == 50
    assert table.total_mismatches == 1

    masked = build_recalibration_table(
        collection([mismatched]), covariates=(Q,), min_observations=1, known_sites=frozenset({("chr1", 15)})
    )
    assert masked.total_observations == 49
    assert masked.total_mismatches == 0

    genome = ReferenceGenome({"chr1": ref})
    with_ref = build_recalibration_table(collection([mismatched, no_md]), covariates=(Q,), reference=genome)
    assert with_ref.total_observations == 100
    assert with_ref.total_mismatches == 1


def test_covariates_follow_sequencing_order():
    ref = random_reference(100, seed=1)
    fwd = make_record("f", ref, 0, "ACGTA")
    rev = make_record("r", ref, 0, "ACGTA", negative_strand=True)
    second = fwd.with_updates(read_paired=True, second_of_pair=True)

    assert [cycle(fwd, i) for i in range(5)] == [1, 2, 3, 4, 5]
    assert [cycle(rev, i) for i in range(5)] == [5, 4, 3, 2, 1]
    assert cycle(second, 0) == -1

    assert context(fwd, 0) is None
    assert context(fwd, 2) == "CG"
    assert context(rev, 4) is None
    # reverse strand: next stored base, complemented, precedes this one
    assert context(rev, 2) == "AC"
    assert context(make_record("n", ref, 0, "ANGTA"), 2) is None

    assert parse_covariates(["quality-score", "CYCLE", "context"]) == (
        Q,
        CovariateKind.CYCLE,
        CovariateKind.CONTEXT,
    )
    with pytest.raises(ValueError):
        CovariateKind.parse("mapping_quality")


def test_table_export(tmp_path):
    ref = random_reference(600, seed=9)
    table = build_recalibration_table(
        collection(synthetic_reads(ref, n_reads=40, error_rate=0.02, seed=3)), min_observations=5
    )
    rows = table.rows()
    assert rows[0]["level"] == 1
    assert {"read_group", "quality_score", "cycle", "context", "observations"} <= set(rows[0])

    out = table.write_tsv(tmp_path / "table.tsv")
    lines = out.read_text().splitlines()
    assert lines[0].split("\t")[:3] == ["level", "read_group", "quality_score"]
    assert len(lines) == len(table) + 1

    curve = table.quality_curve()
    assert [c["reported"] for c in curve] == [30]
