import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from readprep import cigar as cg
from readprep.collection import ReadCollection
from readprep.context import ExecutionContext
from readprep.errors import ConfigurationError, IngestionError, SchemaError, TransformError
from readprep.ingest import load_alignments
from readprep.models import AlignmentRecord, project_record
from readprep.predicates import field, parse_predicate
from readprep.schema import arrow_schema, records_to_table
from readprep.store import load_reads, save_reads

CTX = ExecutionContext(parallelism=2, default_partitions=3)


def make_reads(n: int = 30):
    reads = []
    for i in range(n):
        reads.append(
            AlignmentRecord(
                read_name=f"r{i:03d}",
                sequence="ACGTACGTAC",
                quality_scores=tuple(range(20, 30)),
                reference_name="chr1" if i % 2 == 0 else "chr2",
                start=10 * i,
                cigar=((cg.SOFT_CLIP, 2), (cg.MATCH, 8)),
                mapping_quality=i,
                read_group_id="rg1" if i < 20 else "rg2",
                mismatching_positions="8",
                inferred_insert_size=300 + i,
                original_quality_scores=(30,) * 10 if i % 3 == 0 else None,
                read_mapped=True,
                read_negative_strand=i % 4 == 0,
                duplicate_read=i % 5 == 0,
            )
        )
    reads.append(AlignmentRecord(read_name="unmapped", sequence="NNNN", quality_scores=(2, 2, 2, 2)))
    return reads


def test_save_load_roundtrip(tmp_path):
    reads = make_reads()
    out = tmp_path / "reads.parquet"
    summary = save_reads(
        ReadCollection.from_items(reads, CTX),
        out,
        references=(("chr1", 1000), ("chr2", 1000)),
        read_groups=("rg1", "rg2"),
        row_group_size=4,
    )
    assert summary["reads"] == len(reads)
    assert summary["row_groups"] > 3

    ds = load_reads(out, context=CTX)
    assert ds.reads.collect() == reads
    assert ds.references == (("chr1", 1000), ("chr2", 1000))
    assert ds.read_groups == ("rg1", "rg2")
    assert ds.reads.num_partitions == summary["row_groups"]


def test_projection_keeps_only_selected_fields(tmp_path):
    reads = make_reads()
    out = tmp_path / "reads.parquet"
    save_reads(ReadCollection.from_items(reads, CTX), out)

    keep = {"read_name", "start"}
    loaded = load_reads(out, context=CTX, projection=keep).reads.collect()
    assert [(r.read_name, r.start) for r in loaded] == [(r.read_name, r.start) for r in reads]
    assert all(r.sequence == "" and r.cigar == () and r.read_mapped is False for r in loaded)


@pytest.mark.parametrize(
    "keep",
    [
        set(),
        {"read_name", "start"},
        {"read_mapped", "read_negative_strand", "duplicate_read"},
        {"cigar", "inferred_insert_size", "mismatching_positions", "original_quality_scores"},
        {"quality_scores", "reference_name", "read_group_id", "mapping_quality"},
    ],
)
def test_projection_matches_full_load_restricted_to_fields(tmp_path, keep):
    reads = make_reads()
    out = tmp_path / "reads.parquet"
    save_reads(ReadCollection.from_items(reads, CTX), out, row_group_size=6)

    full = load_reads(out, context=CTX).reads.collect()
    projected = load_reads(out, context=CTX, projection=keep).reads.collect()
    assert projected == [project_record(r, frozenset(keep)) for r in full]


def test_unknown_projection_field_is_a_configuration_error(tmp_path):
    out = tmp_path / "reads.parquet"
    save_reads(ReadCollection.from_items(make_reads(4), CTX), out)
    with pytest.raises(ConfigurationError) as exc:
        load_reads(out, context=CTX, projection={"nope"})
    assert exc.value.option == "projection"
    with pytest.raises(ConfigurationError) as exc:
        load_alignments(make_reads(4), context=CTX, predicate=field("nope") == 1)
    assert exc.value.option == "predicate"


def test_predicate_pushdown_matches_in_memory_filter(tmp_path):
    reads = make_reads()
    out = tmp_path / "reads.parquet"
    save_reads(ReadCollection.from_items(reads, CTX), out, row_group_size=7)

    pred = parse_predicate('reference_name == "chr1" and mapping_quality >= 10 and not duplicate_read')
    pushed = load_reads(out, context=CTX, predicate=pred).reads.collect()
    assert pushed == [r for r in reads if pred(r)]
    assert pushed

    # predicate columns need not be projected
    names = load_reads(out, context=CTX, projection={"read_name"}, predicate=field("start") >= 250)
    assert [r.read_name for r in names.reads.collect()] == [r.read_name for r in reads if (r.start or 0) >= 250]


def test_older_schema_version_loads_with_defaults(tmp_path):
    reads = make_reads(5)
    v1 = arrow_schema(version=1)
    path = tmp_path / "v1.parquet"
    pq.write_table(records_to_table(reads, v1), str(path))

    loaded = load_reads(path, context=CTX).reads.collect()
    assert [r.read_name for r in loaded] == [r.read_name for r in reads]
    assert all(r.inferred_insert_size == 0 for r in loaded)
    assert all(r.mismatching_positions is None for r in loaded)
    assert all(r.original_quality_scores is None for r in loaded)
    assert loaded[0].cigar == reads[0].cigar

    pred_on_new_field = field("mismatching_positions").is_null()
    assert load_reads(path, context=CTX, predicate=pred_on_new_field).reads.count() == len(reads)


def test_incompatible_schema_is_rejected(tmp_path):
    changed_type = tmp_path / "bad_type.parquet"
    pq.write_table(pa.table({"read_name": ["a"], "start": ["not-a-number"]}), str(changed_type))
    with pytest.raises(SchemaError) as exc:
        load_reads(changed_type, context=CTX)
    assert exc.value.field == "start"

    missing = tmp_path / "missing.parquet"
    pq.write_table(pa.table({"read_name": ["a"]}), str(missing))
    with pytest.raises(SchemaError):
        load_reads(missing, context=CTX)


def test_unknown_columns_are_ignored(tmp_path):
    reads = make_reads(3)
    table = records_to_table(reads, arrow_schema()).append_column("future_field", pa.array(list(range(len(reads)))))
    path = tmp_path / "newer.parquet"
    pq.write_table(table, str(path))
    assert load_reads(path, context=CTX).reads.collect() == reads


def test_corrupt_or_missing_file_raises_ingestion_error(tmp_path):
    bad = tmp_path / "corrupt.parquet"
    bad.write_bytes(b"this is not parquet")
    with pytest.raises(IngestionError):
        load_reads(bad, context=CTX)
    with pytest.raises(IngestionError):
        load_reads(tmp_path / "absent.parquet", context=CTX)
    with pytest.raises(IngestionError):
        load_alignments(tmp_path / "reads.txt", context=CTX)


def test_failed_save_leaves_existing_file_untouched(tmp_path):
    out = tmp_path / "reads.parquet"
    save_reads(ReadCollection.from_items(make_reads(4), CTX), out)
    before = out.read_bytes()

    def boom(r):
        raise RuntimeError("disk full")

    with pytest.raises(TransformError):
        save_reads(ReadCollection.from_items(make_reads(4), CTX).map(boom), out)
    assert out.read_bytes() == before
    assert [p.name for p in tmp_path.iterdir()] == ["reads.parquet"]


def test_load_alignments_from_records_validates_and_filters():
    reads = make_reads(6)
    ds = load_alignments(reads, context=CTX, predicate=field("mapping_quality") < 3)
    assert [r.read_name for r in ds.reads.collect()] == ["r000", "r001", "r002", "unmapped"]
    assert ds.read_groups == ("rg1",)

    broken = AlignmentRecord(read_name="x", sequence="ACGT", quality_scores=(30,), read_mapped=False)
    with pytest.raises(IngestionError) as exc:
        load_alignments([broken], context=CTX)
    assert exc.value.record == "x"
