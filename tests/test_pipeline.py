import json

import pytest

from readprep import cigar as cg
from readprep.bam import read_alignments
from readprep.config import TransformConfig
from readprep.context import ExecutionContext
from readprep.errors import ConfigurationError, StageError
from readprep.pipeline import run_transform
from readprep.predicates import field
from readprep.sorting import is_coordinate_sorted
from readprep.store import load_reads
from readprep.toy_data import make_record, make_toy_data, random_reference, synthetic_reads

CTX = ExecutionContext(parallelism=2, default_partitions=4)
STAGES = ["load", "sort", "mark_duplicates", "recalibration_table", "recalibrate", "realign", "final_sort", "store"]


@pytest.fixture(scope="module")
def toy(tmp_path_factory):
    return make_toy_data(outdir=tmp_path_factory.mktemp("toy"))


def test_transform_toy_bam_to_parquet_with_report(toy, tmp_path):
    out = tmp_path / "reads.parquet"
    config = TransformConfig(
        reference_fasta=toy["ref_fa"],
        known_sites=toy["known_sites_vcf"],
        min_observations_for_bucket=20,
        dump_recalibration_table=str(tmp_path / "table.tsv"),
    )
    summary = run_transform(toy["reads_bam"], out, config=config, context=CTX, outdir=tmp_path / "qc")

    assert [s["name"] for s in summary["stages"]] == STAGES
    assert summary["reads_in"] == summary["reads_out"] == int(toy["reads"])
    assert summary["flagstat"]["duplicates"] >= 10
    assert summary["recalibration_curve"]
    assert (tmp_path / "table.tsv").exists()

    ds = load_reads(out, context=CTX)
    reads = ds.reads.collect()
    assert len(reads) == int(toy["reads"])
    assert is_coordinate_sorted(reads, ds.references)
    assert ds.read_groups == ("rg1", "rg2")
    assert all(r.original_quality_scores is not None for r in reads if r.quality_scores)

    realigned = {r.read_name: r for r in reads if r.read_name.startswith("indel_m")}
    assert len(realigned) == 3
    assert all(any(op == cg.DELETION for op, _ in r.cigar) for r in realigned.values())

    qc = tmp_path / "qc"
    assert (qc / "report.html").exists()
    assert (qc / "plots" / "stage_counts.png").exists()
    saved = json.loads((qc / "summary.json").read_text())
    assert saved["reads_out"] == summary["reads_out"]


def test_transform_to_bam_with_stages_disabled(toy, tmp_path):
    out = tmp_path / "reads.md.bam"
    config = TransformConfig(enable_recalibration=False, enable_realignment=False)
    summary = run_transform(toy["reads_bam"], out, config=config, context=CTX)
    assert [s["name"] for s in summary["stages"]] == ["load", "sort", "mark_duplicates", "final_sort", "store"]

    records, refs, rgs = read_alignments(out)
    assert len(records) == int(toy["reads"])
    assert refs == (("chr1", 1200),)
    assert sum(r.duplicate_read for r in records) == summary["flagstat"]["duplicates"]
    assert all(r.original_quality_scores is None for r in records)


def test_transform_in_memory_records_with_filter(tmp_path):
    ref = random_reference(1500, seed=21)
    reads = synthetic_reads(ref, n_reads=120, duplicates=5, error_rate=0.01, seed=22)
    out = tmp_path / "filtered.parquet"
    summary = run_transform(
        reads,
        out,
        config=TransformConfig(min_observations_for_bucket=10),
        context=CTX,
        predicate=field("start") < 700,
    )
    expected = sum(1 for r in reads if r.start < 700)
    assert summary["reads_in"] == expected
    assert load_reads(out, context=CTX).reads.count() == expected


def test_invalid_configuration_is_rejected_before_work(tmp_path):
    out = tmp_path / "never.parquet"
    with pytest.raises(ConfigurationError):
        run_transform([], out, config=TransformConfig(enable_sort=False), context=CTX)
    with pytest.raises(ConfigurationError):
        run_transform([], tmp_path / "reads.txt", config=TransformConfig(), context=CTX)
    with pytest.raises(ConfigurationError):
        run_transform([], out, config=TransformConfig(reference_fasta=str(tmp_path / "nope.fa")), context=CTX)
    assert not out.exists()


def test_unknown_filter_field_is_a_configuration_error(tmp_path):
    # neither the reference nor the input is opened before the filter is checked
    not_fasta = tmp_path / "ref.fa"
    not_fasta.write_text("not a fasta\n")
    out = tmp_path / "never.parquet"
    with pytest.raises(ConfigurationError) as exc:
        run_transform(
            tmp_path / "absent.bam",
            out,
            config=TransformConfig(reference_fasta=str(not_fasta)),
            context=CTX,
            predicate=field("nope") == 1,
        )
    assert exc.value.option == "predicate"
    assert not out.exists()


def test_stage_failure_names_stage_and_writes_nothing(tmp_path):
    ref = random_reference(500, seed=4)
    good = make_record("ok", ref, 10, ref[10:60])
    bad_md = make_record("bad", ref, 100, ref[100:150]).with_updates(mismatching_positions="10")
    out = tmp_path / "out.parquet"
    with pytest.raises(StageError) as exc:
        run_transform([good, bad_md], out, config=TransformConfig(), context=CTX)
    assert exc.value.stage == "recalibration_table"
    assert not out.exists()


def test_stage_failure_reports_record(tmp_path):
    ref = random_reference(500, seed=4)
    triple = [make_record("tri", ref, s, ref[s : s + 50]) for s in (10, 20, 30)]
    with pytest.raises(StageError) as exc:
        run_transform(triple, tmp_path / "out.parquet", config=TransformConfig(), context=CTX)
    assert exc.value.stage == "mark_duplicates"
    assert "tri" in (exc.value.record or "")
