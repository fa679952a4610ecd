import pytest

from readprep import cigar as cg
from readprep.collection import ReadCollection
from readprep.context import ExecutionContext
from readprep.markdups import Fragment, ReadPosition, mark_duplicates
from readprep.models import AlignmentRecord
from readprep.toy_data import make_record, random_reference, synthetic_reads

REF = random_reference(2000, seed=3)


def run(reads, partitions: int = 4, **kw):
    ctx = ExecutionContext(parallelism=2, default_partitions=partitions)
    out = mark_duplicates(ReadCollection.from_items(reads, ctx), **kw).collect()
    return sorted(out, key=lambda r: r.record_id)


def dup_names(reads):
    return sorted(r.read_name for r in reads if r.duplicate_read)


def make_pair(name: str, left: int, right: int, quality: int = 30, read_group: str = "rg1"):
    seq1 = REF[left : left + 50]
    seq2 = REF[right : right + 50]
    r1 = make_record(name, REF, left, seq1, quality=quality, read_group=read_group).with_updates(
        read_paired=True,
        mate_mapped=True,
        first_of_pair=True,
        mate_reference_name="chr1",
        mate_start=right,
        mate_negative_strand=True,
    )
    r2 = make_record(name, REF, right, seq2, quality=quality, read_group=read_group, negative_strand=True).with_updates(
        read_paired=True,
        mate_mapped=True,
        second_of_pair=True,
        mate_reference_name="chr1",
        mate_start=left,
    )
    return [r1, r2]


def test_thousand_reads_with_ten_duplicates():
    reads = synthetic_reads(REF, n_reads=1000, duplicates=10)
    out = run(reads)
    assert len(out) == 1000
    assert dup_names(out) == [f"readdup{k:05d}" for k in range(10)]


def test_pairs_are_marked_as_a_unit():
    reads = make_pair("good", 100, 300, quality=35) + make_pair("worse", 100, 300, quality=25)
    reads += make_pair("elsewhere", 120, 300)
    out = run(reads)
    assert dup_names(out) == ["worse", "worse"]


def test_idempotent_and_partition_independent():
    reads = synthetic_reads(REF, n_reads=300, duplicates=25, seed=5)
    reads += make_pair("p1", 500, 700) + make_pair("p2", 500, 700)
    once = run(reads, partitions=1)
    assert run(reads, partitions=7) == once
    assert run(once, partitions=3) == once
    assert len(dup_names(once)) == 27


def test_one_representative_per_key_even_if_flags_were_set():
    a = make_record("a", REF, 40, REF[40:90]).with_updates(duplicate_read=True)
    b = make_record("b", REF, 40, REF[40:90])
    out = run([a, b])
    assert [r.duplicate_read for r in out] == [False, True]


def test_unmapped_secondary_and_supplementary_pass_through():
    base = make_record("a", REF, 40, REF[40:90])
    secondary = base.with_updates(secondary_alignment=True, duplicate_read=True)
    supplementary = make_record("b", REF, 40, REF[40:90]).with_updates(supplementary_alignment=True)
    unmapped = AlignmentRecord(read_name="u", sequence="ACGT", quality_scores=(30,) * 4, duplicate_read=True)
    out = run([base, secondary, supplementary, unmapped])
    by_id = {r.record_id: r for r in out}
    assert by_id[secondary.record_id] == secondary
    assert by_id[supplementary.record_id] == supplementary
    assert by_id["u/0"] == unmapped
    assert by_id["a/0"].duplicate_read is False


def test_scoring_policies_and_tie_break():
    low_mapq = make_record("a", REF, 40, REF[40:90], quality=40, mapping_quality=10)
    high_mapq = make_record("b", REF, 40, REF[40:90], quality=20, mapping_quality=60)
    assert dup_names(run([low_mapq, high_mapq])) == ["b"]
    assert dup_names(run([low_mapq, high_mapq], policy="mapping_quality")) == ["a"]

    tie_a = make_record("x1", REF, 70, REF[70:120])
    tie_b = make_record("x2", REF, 70, REF[70:120])
    assert dup_names(run([tie_b, tie_a])) == ["x2"]

    with pytest.raises(ValueError, match="Unknown duplicate policy"):
        run([tie_a], policy="coin_flip")


def test_read_groups_are_separate_unless_pooled():
    a = make_record("a", REF, 40, REF[40:90], read_group="rg1", quality=35)
    b = make_record("b", REF, 40, REF[40:90], read_group="rg2")
    assert dup_names(run([a, b])) == []
    assert dup_names(run([a, b], pool_read_groups=True)) == ["b"]


def test_fragment_key_uses_unclipped_five_prime_ends():
    clipped = make_record(
        "c", REF, 45, "AAAAA" + REF[45:90], cigar=((cg.SOFT_CLIP, 5), (cg.MATCH, 45))
    )
    frag = Fragment.build([clipped])
    assert frag.key.left == ReadPosition("chr1", 40, False)
    assert frag.key.right is None

    reverse = make_record("r", REF, 40, REF[40:90], negative_strand=True)
    assert Fragment.build([reverse]).key.left == ReadPosition("chr1", 89, True)
