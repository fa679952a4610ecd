"""Parquet persistence for read collections, with projection and predicate pushdown.

Each row group becomes one partition on load. For every row group the loader
first reads only the columns the predicate references, evaluates the
predicate, and only then reads the projected columns, materializing records
for the passing rows alone. Columns outside the projection are never read
and the corresponding record fields keep their defaults.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence

import pyarrow as pa
import pyarrow.parquet as pq

from .collection import ReadCollection
from .context import ExecutionContext
from .dataset import AlignmentDataset, References
from .errors import ConfigurationError, IngestionError
from .models import AlignmentRecord
from .predicates import Predicate, check_fields
from .schema import (
    FIELD_NAMES,
    FIELDS_BY_NAME,
    StoredSchema,
    arrow_schema,
    check_compatible,
    records_to_table,
)
from .utils import atomic_output, chunked

logger = logging.getLogger(__name__)

DEFAULT_ROW_GROUP_SIZE = 65_536


def resolve_projection(projection: Optional[Iterable[str]]) -> FrozenSet[str]:
    """Validate a projection; ``None`` means every field."""
    if projection is None:
        return FIELD_NAMES
    keep = frozenset(projection)
    unknown = sorted(keep - FIELD_NAMES)
    if unknown:
        raise ConfigurationError(f"Projection references unknown field(s): {', '.join(unknown)}", option="projection")
    return keep


def save_reads(
    reads: ReadCollection[AlignmentRecord],
    path: str | Path,
    *,
    references: References = (),
    read_groups: Sequence[str] = (),
    row_group_size: int = DEFAULT_ROW_GROUP_SIZE,
    compression: str = "zstd",
) -> Dict[str, Any]:
    """Write ``reads`` to a Parquet file at ``path``.

    The collection is fully evaluated before anything is written, and the file
    only appears at ``path`` once it is complete; a failure leaves ``path``
    untouched. Returns a small summary dict.
    """
    t0 = time.time()
    partitions = reads.partitions()
    schema = arrow_schema(references=references, read_groups=read_groups)

    n_rows = 0
    n_groups = 0
    with atomic_output(path) as tmp:
        with pq.ParquetWriter(str(tmp), schema, compression=compression) as writer:
            for part in partitions:
                for chunk in chunked(part, row_group_size):
                    writer.write_table(records_to_table(chunk, schema), row_group_size=row_group_size)
                    n_rows += len(chunk)
                    n_groups += 1

    logger.info("Wrote %d reads in %d row groups to %s", n_rows, n_groups, path)
    return {
        "path": str(path),
        "reads": n_rows,
        "row_groups": n_groups,
        "runtime_seconds": float(time.time() - t0),
    }


def _open(path: Path) -> pq.ParquetFile:
    try:
        return pq.ParquetFile(str(path))
    except (OSError, pa.ArrowInvalid) as e:
        raise IngestionError(f"Cannot read Parquet file {path}: {e}", source=str(path)) from e


def _row_values(columns: Dict[str, List[Any]], names: Iterable[str], j: int) -> Dict[str, Any]:
    return {name: FIELDS_BY_NAME[name].decode(columns[name][j]) for name in names}


def _load_row_group(
    path: Path,
    index: int,
    stored: StoredSchema,
    keep: FrozenSet[str],
    predicate: Optional[Predicate],
) -> List[AlignmentRecord]:
    pf = _open(path)
    n_rows = pf.metadata.row_group(index).num_rows
    selected: Optional[List[int]] = None

    try:
        if predicate is not None:
            pred_names = sorted(predicate.fields())
            pred_cols = [n for n in pred_names if n in stored.present]
            ptable = pf.read_row_group(index, columns=pred_cols)
            pcols = {n: ptable.column(n).to_pylist() for n in pred_cols}
            missing = {n: FIELDS_BY_NAME[n].default for n in pred_names if n not in stored.present}
            selected = []
            for j in range(n_rows):
                row = _row_values(pcols, pred_cols, j)
                row.update(missing)
                if predicate.evaluate(row):
                    selected.append(j)
            if not selected:
                return []

        read_cols = sorted(n for n in keep if n in stored.present)
        if not read_cols:
            return [AlignmentRecord() for _ in range(n_rows if selected is None else len(selected))]
        table = pf.read_row_group(index, columns=read_cols)
        if selected is not None:
            table = table.take(pa.array(selected, type=pa.int64()))
            n_rows = len(selected)
        cols = {n: table.column(n).to_pylist() for n in read_cols}
        return [AlignmentRecord(**_row_values(cols, read_cols, j)) for j in range(n_rows)]
    except (OSError, pa.ArrowException) as e:
        raise IngestionError(
            f"Corrupt row group {index} in {path}: {e}", source=str(path)
        ) from e
    except ValueError as e:
        raise IngestionError(f"Malformed value in row group {index} of {path}: {e}", source=str(path)) from e


def load_reads(
    path: str | Path,
    *,
    context: ExecutionContext,
    projection: Optional[Iterable[str]] = None,
    predicate: Optional[Predicate] = None,
) -> AlignmentDataset:
    """Load a Parquet file written by :func:`save_reads` (or an older schema version).

    Returns a lazily evaluated dataset with one partition per row group.
    Raises IngestionError if the file cannot be read and SchemaError if its
    schema is not an additive evolution of the current one.
    """
    p = Path(path)
    if not p.exists():
        raise IngestionError(f"Input does not exist: {p}", source=str(p))
    keep = resolve_projection(projection)
    if predicate is not None:
        check_fields(predicate, FIELD_NAMES)

    pf = _open(p)
    stored = check_compatible(pf.schema_arrow, source=str(p))
    if stored.version < 2:
        logger.info("%s uses schema version %d; newer fields take defaults.", p, stored.version)

    groups = ReadCollection.from_partitions([[i] for i in range(pf.num_row_groups)], context)
    reads = groups.map_partitions(
        lambda idxs: [r for i in idxs for r in _load_row_group(p, i, stored, keep, predicate)]
    )
    return AlignmentDataset(reads=reads, references=stored.references, read_groups=stored.read_groups)
