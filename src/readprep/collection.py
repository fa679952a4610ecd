"""Partitioned, lazily evaluated, immutable collections.

A :class:`ReadCollection` is a description of how to compute a list of
partitions. Narrow transformations (``map``, ``filter``, ``flat_map``,
``map_partitions``) run partition-locally and preserve order within each
partition; consecutive narrow steps are fused into one pass. Wide
transformations (``group_by_key``, ``reduce_by_key``, ``sort_by``,
``repartition``) redistribute items between partitions and are the only
synchronization points. Nothing runs until an action (``collect``, ``count``,
``cache``, ...) is called.

A user function that raises fails the whole action with
:class:`~readprep.errors.TransformError`; there is no skip-and-continue.
"""

from __future__ import annotations

import bisect
import logging
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    Hashable,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

from .context import ExecutionContext
from .errors import ReadPrepError, TransformError

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")
K = TypeVar("K")
V = TypeVar("V")

Partition = List[Any]
PartitionFn = Callable[[Partition], Partition]

_SAMPLES_PER_PARTITION = 20


class _Plan:
    num_partitions: int

    def compute(self, context: ExecutionContext) -> List[Partition]:
        raise NotImplementedError


class _Source(_Plan):
    def __init__(self, partitions: Sequence[Sequence[Any]]) -> None:
        self.partitions = tuple(tuple(p) for p in partitions)
        self.num_partitions = len(self.partitions)

    def compute(self, context: ExecutionContext) -> List[Partition]:
        return [list(p) for p in self.partitions]


class _Narrow(_Plan):
    def __init__(self, parent: _Plan, fn: PartitionFn, desc: str) -> None:
        # fuse chains of narrow steps into a single pass per partition
        if isinstance(parent, _Narrow):
            inner = parent.fn
            self.parent = parent.parent
            self.fn = lambda part: fn(inner(part))
            self.desc = f"{parent.desc}|{desc}"
        else:
            self.parent = parent
            self.fn = fn
            self.desc = desc
        self.num_partitions = self.parent.num_partitions

    def compute(self, context: ExecutionContext) -> List[Partition]:
        parts = self.parent.compute(context)
        return context.run(self.fn, parts, desc=self.desc)


class _Shuffle(_Plan):
    def __init__(
        self,
        parent: _Plan,
        exchange: Callable[[List[Partition], ExecutionContext], List[Partition]],
        num_partitions: int,
    ) -> None:
        self.parent = parent
        self.exchange = exchange
        self.num_partitions = num_partitions

    def compute(self, context: ExecutionContext) -> List[Partition]:
        return self.exchange(self.parent.compute(context), context)


class _Union(_Plan):
    def __init__(self, plans: Sequence[_Plan]) -> None:
        self.plans = list(plans)
        self.num_partitions = sum(p.num_partitions for p in self.plans)

    def compute(self, context: ExecutionContext) -> List[Partition]:
        out: List[Partition] = []
        for plan in self.plans:
            out.extend(plan.compute(context))
        return out


def _call(fn: Callable[[Any], Any], item: Any) -> Any:
    try:
        return fn(item)
    except ReadPrepError:
        raise
    except Exception as e:
        raise TransformError(f"{e.__class__.__name__}: {e}", item=item) from e


def _split(items: Sequence[Any], n: int) -> List[Partition]:
    """Split into ``n`` contiguous chunks whose sizes differ by at most one."""
    n = max(1, n)
    size, extra = divmod(len(items), n)
    out: List[Partition] = []
    pos = 0
    for i in range(n):
        step = size + (1 if i < extra else 0)
        out.append(list(items[pos : pos + step]))
        pos += step
    return out


def _bucket_of(key: Hashable, n: int) -> int:
    return hash(key) % n


class ReadCollection(Generic[T]):
    """Immutable, partitioned, lazily evaluated collection.

    Build one with :meth:`from_items` or :meth:`from_partitions`; every
    transformation returns a new collection and leaves this one untouched.
    """

    def __init__(self, plan: _Plan, context: ExecutionContext) -> None:
        self._plan = plan
        self.context = context

    # -----------------
    # construction
    # -----------------

    @classmethod
    def from_items(
        cls,
        items: Iterable[T],
        context: ExecutionContext,
        num_partitions: Optional[int] = None,
    ) -> "ReadCollection[T]":
        data = list(items)
        n = num_partitions if num_partitions is not None else context.default_partitions
        if n < 1:
            raise ValueError("num_partitions must be >= 1")
        return cls(_Source(_split(data, n)), context)

    @classmethod
    def from_partitions(
        cls, partitions: Sequence[Sequence[T]], context: ExecutionContext
    ) -> "ReadCollection[T]":
        return cls(_Source(partitions), context)

    @property
    def num_partitions(self) -> int:
        return self._plan.num_partitions

    def _narrow(self, fn: PartitionFn, desc: str) -> "ReadCollection[Any]":
        return ReadCollection(_Narrow(self._plan, fn, desc), self.context)

    # -----------------
    # narrow transformations
    # -----------------

    def map(self, f: Callable[[T], U]) -> "ReadCollection[U]":
        return self._narrow(lambda part: [_call(f, x) for x in part], "map")

    def flat_map(self, f: Callable[[T], Iterable[U]]) -> "ReadCollection[U]":
        def run(part: Partition) -> Partition:
            out: Partition = []
            for x in part:
                out.extend(_call(lambda item: list(f(item)), x))
            return out

        return self._narrow(run, "flat_map")

    def filter(self, predicate: Callable[[T], bool]) -> "ReadCollection[T]":
        return self._narrow(lambda part: [x for x in part if _call(predicate, x)], "filter")

    def map_partitions(self, f: Callable[[List[T]], Iterable[U]]) -> "ReadCollection[U]":
        def run(part: Partition) -> Partition:
            try:
                return list(f(part))
            except ReadPrepError:
                raise
            except Exception as e:
                raise TransformError(f"{e.__class__.__name__}: {e}") from e

        return self._narrow(run, "map_partitions")

    def key_by(self, key_fn: Callable[[T], K]) -> "ReadCollection[Tuple[K, T]]":
        return self.map(lambda x: (key_fn(x), x))

    def values(self) -> "ReadCollection[Any]":
        return self.map(lambda kv: kv[1])

    def union(self, other: "ReadCollection[T]") -> "ReadCollection[T]":
        return ReadCollection(_Union([self._plan, other._plan]), self.context)

    # -----------------
    # wide transformations (shuffle boundaries)
    # -----------------

    def group_by_key(
        self, key_fn: Callable[[T], K], num_partitions: Optional[int] = None
    ) -> "ReadCollection[Tuple[K, List[T]]]":
        """Group items by ``key_fn``.

        Groups carry no order relative to each other. Within a group, items keep
        their encounter order (partition order, then position within partition),
        so grouping right after :meth:`sort_by` yields sorted groups.
        """
        n = num_partitions or self.context.default_partitions

        def scatter(part: Partition) -> List[Partition]:
            buckets: List[Partition] = [[] for _ in range(n)]
            for x in part:
                k = _call(key_fn, x)
                buckets[_bucket_of(k, n)].append((k, x))
            return buckets

        def gather(bucket: Partition) -> Partition:
            groups: Dict[Any, List[Any]] = {}
            for k, x in bucket:
                groups.setdefault(k, []).append(x)
            return list(groups.items())

        def exchange(parts: List[Partition], context: ExecutionContext) -> List[Partition]:
            scattered = context.run(scatter, parts, desc="group_by_key:scatter")
            inbound = [[kv for src in scattered for kv in src[j]] for j in range(n)]
            return context.run(gather, inbound, desc="group_by_key:gather")

        return ReadCollection(_Shuffle(self._plan, exchange, n), self.context)

    def reduce_by_key(
        self,
        key_fn: Callable[[T], K],
        value_fn: Callable[[T], V],
        reduce_fn: Callable[[V, V], V],
        num_partitions: Optional[int] = None,
    ) -> "ReadCollection[Tuple[K, V]]":
        """Combine values sharing a key; ``reduce_fn`` must be associative and commutative."""
        n = num_partitions or self.context.default_partitions

        def combine(part: Partition) -> List[Partition]:
            acc: Dict[Any, Any] = {}
            for x in part:
                k = _call(key_fn, x)
                v = _call(value_fn, x)
                acc[k] = _call(lambda item: reduce_fn(acc[k], v), x) if k in acc else v
            buckets: List[Partition] = [[] for _ in range(n)]
            for k, v in acc.items():
                buckets[_bucket_of(k, n)].append((k, v))
            return buckets

        def merge(bucket: Partition) -> Partition:
            acc: Dict[Any, Any] = {}
            for k, v in bucket:
                acc[k] = _call(lambda item: reduce_fn(acc[k], v), (k, v)) if k in acc else v
            return list(acc.items())

        def exchange(parts: List[Partition], context: ExecutionContext) -> List[Partition]:
            combined = context.run(combine, parts, desc="reduce_by_key:combine")
            inbound = [[kv for src in combined for kv in src[j]] for j in range(n)]
            return context.run(merge, inbound, desc="reduce_by_key:merge")

        return ReadCollection(_Shuffle(self._plan, exchange, n), self.context)

    def sort_by(
        self,
        key_fn: Callable[[T], Any],
        ascending: bool = True,
        num_partitions: Optional[int] = None,
    ) -> "ReadCollection[T]":
        """Total order across the whole collection.

        Items are range-partitioned on sampled key boundaries and each range is
        sorted independently; concatenating the partitions gives the global
        order. The sort is stable for equal keys.
        """
        n = num_partitions or self.context.default_partitions

        def keyed(part: Partition) -> Partition:
            return [(_call(key_fn, x), x) for x in part]

        def exchange(parts: List[Partition], context: ExecutionContext) -> List[Partition]:
            keyed_parts = context.run(keyed, parts, desc="sort_by:keys")
            total = sum(len(p) for p in keyed_parts)
            bounds = _range_bounds(keyed_parts, n, total)

            ranges: List[Partition] = [[] for _ in range(len(bounds) + 1)]
            for part in keyed_parts:
                for kx in part:
                    try:
                        ranges[bisect.bisect_right(bounds, kx[0])].append(kx)
                    except TypeError as e:
                        raise TransformError(f"Unorderable sort key: {e}", item=kx[1]) from e

            def sort_range(rng: Partition) -> Partition:
                try:
                    rng.sort(key=lambda kx: kx[0], reverse=not ascending)
                except TypeError as e:
                    raise TransformError(f"Unorderable sort key: {e}") from e
                return [x for _, x in rng]

            out = context.run(sort_range, ranges, desc="sort_by:sort")
            if not ascending:
                out.reverse()
            # keep the requested partition count even when fewer ranges were needed
            while len(out) < n:
                out.append([])
            return out

        return ReadCollection(_Shuffle(self._plan, exchange, n), self.context)

    def repartition(self, num_partitions: int) -> "ReadCollection[T]":
        """Redistribute into ``num_partitions`` contiguous chunks, keeping global order."""
        if num_partitions < 1:
            raise ValueError("num_partitions must be >= 1")

        def exchange(parts: List[Partition], context: ExecutionContext) -> List[Partition]:
            return _split([x for p in parts for x in p], num_partitions)

        return ReadCollection(_Shuffle(self._plan, exchange, num_partitions), self.context)

    # -----------------
    # actions
    # -----------------

    def partitions(self) -> List[List[T]]:
        return self._plan.compute(self.context)

    def collect(self) -> List[T]:
        return [x for part in self.partitions() for x in part]

    def count(self) -> int:
        return sum(len(p) for p in self.partitions())

    def take(self, n: int) -> List[T]:
        return self.collect()[:n]

    def reduce(self, f: Callable[[U, T], U], initial: U) -> U:
        acc = initial
        for x in self.collect():
            acc = _call(lambda item: f(acc, item), x)
        return acc

    def cache(self) -> "ReadCollection[T]":
        """Evaluate now and return a collection backed by the computed partitions."""
        return ReadCollection(_Source(self.partitions()), self.context)


def _range_bounds(keyed_parts: List[Partition], n: int, total: int) -> List[Any]:
    if n <= 1 or total == 0:
        return []
    step = max(1, total // (n * _SAMPLES_PER_PARTITION))
    sample: List[Any] = []
    i = 0
    for part in keyed_parts:
        for k, _ in part:
            if i % step == 0:
                sample.append(k)
            i += 1
    try:
        sample.sort()
    except TypeError as e:
        raise TransformError(f"Unorderable sort key: {e}") from e
    bounds: List[Any] = []
    for j in range(1, n):
        b = sample[min(len(sample) - 1, (j * len(sample)) // n)]
        if not bounds or bounds[-1] < b:
            bounds.append(b)
    return bounds
