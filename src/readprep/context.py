from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, TypeVar

from tqdm import tqdm

logger = logging.getLogger(__name__)

A = TypeVar("A")
B = TypeVar("B")


@dataclass(frozen=True)
class ExecutionContext:
    """Explicit execution settings passed to every pipeline entry point.

    Attributes
    ----------
    parallelism:
        Number of partitions evaluated concurrently.
    default_partitions:
        Partition count used when a collection is built or shuffled without an
        explicit count.
    progress:
        Show a progress bar over partitions for each executed step.
    """

    parallelism: int = 4
    default_partitions: int = 8
    progress: bool = False

    def __post_init__(self) -> None:
        if self.parallelism < 1:
            raise ValueError("parallelism must be >= 1")
        if self.default_partitions < 1:
            raise ValueError("default_partitions must be >= 1")

    def run(self, fn: Callable[[A], B], partitions: Sequence[A], *, desc: Optional[str] = None) -> List[B]:
        """Apply ``fn`` to every partition, concurrently, returning results in partition order.

        The first exception raised by any partition is re-raised after the pool
        shuts down; no partial result is returned.
        """
        n = len(partitions)
        if n == 0:
            return []
        if self.parallelism == 1 or n == 1:
            it = partitions
            if self.progress:
                it = tqdm(partitions, unit="partition", desc=desc or "Partitions")
            return [fn(p) for p in it]

        with ThreadPoolExecutor(max_workers=min(self.parallelism, n)) as pool:
            futures = [pool.submit(fn, p) for p in partitions]
            if self.progress:
                for fut in tqdm(futures, unit="partition", desc=desc or "Partitions"):
                    fut.exception()
            return [f.result() for f in futures]
