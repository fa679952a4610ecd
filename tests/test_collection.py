import pytest

from readprep.collection import ReadCollection
from readprep.context import ExecutionContext
from readprep.errors import TransformError
from readprep.models import AlignmentRecord
from readprep.sorting import is_coordinate_sorted, sort_reads
from readprep import cigar as cg


def ctx(parallelism: int = 2, partitions: int = 3) -> ExecutionContext:
    return ExecutionContext(parallelism=parallelism, default_partitions=partitions)


def test_narrow_steps_are_lazy_and_preserve_order():
    calls = []

    def double(x: int) -> int:
        calls.append(x)
        return 2 * x

    coll = ReadCollection.from_items(range(10), ctx())
    mapped = coll.map(double).filter(lambda x: x % 3 != 0)
    assert calls == []
    assert mapped.collect() == [2, 4, 8, 10, 14, 16]
    assert sorted(calls) == list(range(10))


def test_transformations_leave_source_untouched():
    coll = ReadCollection.from_items([3, 1, 2], ctx())
    coll.map(lambda x: x * 10).sort_by(lambda x: x).collect()
    assert coll.collect() == [3, 1, 2]


def test_sort_then_group_by_window_keeps_sorted_order():
    coll = ReadCollection.from_items([50, 10, 30, 20, 40], ctx(partitions=4))
    grouped = coll.sort_by(lambda x: x).group_by_key(lambda x: x // 100).collect()
    assert grouped == [(0, [10, 20, 30, 40, 50])]


def test_sort_by_many_partitions_and_descending():
    values = [(i * 7919) % 1000 for i in range(500)]
    coll = ReadCollection.from_items(values, ctx(parallelism=4, partitions=5))
    assert coll.sort_by(lambda x: x).collect() == sorted(values)
    assert coll.sort_by(lambda x: x, ascending=False).collect() == sorted(values, reverse=True)
    assert coll.sort_by(lambda x: x, num_partitions=7).num_partitions == 7


def test_sort_is_stable_for_equal_keys():
    items = [("b", 1), ("a", 2), ("b", 3), ("a", 4)]
    out = ReadCollection.from_items(items, ctx()).sort_by(lambda kv: kv[0]).collect()
    assert out == [("a", 2), ("a", 4), ("b", 1), ("b", 3)]


def test_group_and_reduce_by_key_do_not_depend_on_partitioning():
    words = ["a", "b", "a", "c", "b", "a"] * 5
    for n in (1, 2, 6):
        coll = ReadCollection.from_items(words, ctx(partitions=n))
        counts = dict(coll.reduce_by_key(lambda w: w, lambda w: 1, lambda x, y: x + y).collect())
        assert counts == {"a": 15, "b": 10, "c": 5}
        groups = dict(coll.group_by_key(lambda w: w).collect())
        assert {k: len(v) for k, v in groups.items()} == counts


def test_flat_map_union_and_repartition():
    left = ReadCollection.from_items([1, 2], ctx(partitions=1))
    right = ReadCollection.from_items([3], ctx(partitions=1))
    both = left.union(right).flat_map(lambda x: [x] * x)
    assert both.collect() == [1, 2, 2, 3, 3, 3]
    re = both.repartition(4)
    assert re.num_partitions == 4
    assert re.collect() == [1, 2, 2, 3, 3, 3]
    assert re.take(2) == [1, 2]
    assert re.count() == 6


def test_failing_user_function_raises_transform_error_with_item():
    coll = ReadCollection.from_items([1, 2, 0, 4], ctx())
    with pytest.raises(TransformError) as exc:
        coll.map(lambda x: 10 // x).collect()
    assert exc.value.item == 0
    assert "ZeroDivisionError" in str(exc.value)


def test_failing_reducer_raises_transform_error_with_item():
    pairs = [("a", 1), ("a", 0)]

    # both values meet in the map-side combine
    coll = ReadCollection.from_items(pairs, ctx(partitions=1))
    with pytest.raises(TransformError) as exc:
        coll.reduce_by_key(lambda kv: kv[0], lambda kv: kv[1], lambda a, b: a // b).collect()
    assert exc.value.item == ("a", 0)

    # one value per partition, so they only meet in the merge
    coll = ReadCollection.from_items(pairs, ctx(partitions=2))
    with pytest.raises(TransformError) as exc:
        coll.reduce_by_key(lambda kv: kv[0], lambda kv: kv[1], lambda a, b: a // b).collect()
    assert exc.value.item == ("a", 0)


def test_cache_evaluates_once():
    calls = []
    coll = ReadCollection.from_items(range(5), ctx()).map(lambda x: calls.append(x) or x)
    cached = coll.cache()
    cached.collect()
    cached.count()
    assert len(calls) == 5


def test_context_rejects_bad_settings():
    with pytest.raises(ValueError):
        ExecutionContext(parallelism=0)
    with pytest.raises(ValueError):
        ExecutionContext(default_partitions=0)


def _mapped(name: str, contig: str, start: int, negative: bool = False) -> AlignmentRecord:
    return AlignmentRecord(
        read_name=name,
        sequence="ACGT",
        quality_scores=(30,) * 4,
        reference_name=contig,
        start=start,
        cigar=((cg.MATCH, 4),),
        read_mapped=True,
        read_negative_strand=negative,
    )


def test_sort_reads_uses_header_order_and_puts_unmapped_last():
    reads = [
        AlignmentRecord(read_name="u1", sequence="ACGT"),
        _mapped("x", "chr2", 5),
        _mapped("y", "chr1", 50),
        _mapped("z", "chr1", 50, negative=True),
        _mapped("w", "chr1", 10),
    ]
    refs = (("chr2", 100), ("chr1", 100))
    out = sort_reads(ReadCollection.from_items(reads, ctx()), refs).collect()
    assert [r.read_name for r in out] == ["x", "w", "y", "z", "u1"]
    assert is_coordinate_sorted(out, refs)
    assert not is_coordinate_sorted(out)
