from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from .bam import infer_references, read_alignments
from .collection import ReadCollection
from .context import ExecutionContext
from .dataset import AlignmentDataset
from .errors import IngestionError
from .models import AlignmentRecord, project_record, validate_record
from .predicates import Predicate, check_fields
from .schema import FIELD_NAMES
from .store import load_reads, resolve_projection
from .utils import file_suffix

logger = logging.getLogger(__name__)

PARQUET_SUFFIXES = {".parquet", ".adam", ".pq"}
ALIGNMENT_SUFFIXES = {".bam", ".sam", ".cram"}

Source = Union[str, Path, Iterable[AlignmentRecord]]


def _from_records(
    records: List[AlignmentRecord],
    *,
    context: ExecutionContext,
    projection: Optional[Iterable[str]],
    predicate: Optional[Predicate],
    references: Tuple[Tuple[str, int], ...],
    read_groups: Tuple[str, ...],
    num_partitions: Optional[int],
) -> AlignmentDataset:
    keep = resolve_projection(projection)
    if predicate is not None:
        check_fields(predicate, FIELD_NAMES)
        records = [r for r in records if predicate(r)]
    if keep != FIELD_NAMES:
        records = [project_record(r, keep) for r in records]
    reads = ReadCollection.from_items(records, context, num_partitions)
    return AlignmentDataset(reads=reads, references=references, read_groups=read_groups)


def load_alignments(
    source: Source,
    *,
    context: ExecutionContext,
    projection: Optional[Iterable[str]] = None,
    predicate: Optional[Predicate] = None,
    num_partitions: Optional[int] = None,
) -> AlignmentDataset:
    """Ingestion boundary: turn records or a file path into an AlignmentDataset.

    Parameters
    ----------
    source:
        An iterable of AlignmentRecord, a Parquet path (``.parquet``/``.adam``),
        or a BAM/SAM/CRAM path.
    projection:
        Field names to materialize; other fields keep their defaults.
    predicate:
        Row filter; pushed into the Parquet reader when loading Parquet.

    Raises
    ------
    IngestionError
        Unreadable or corrupt source, or a malformed record.
    SchemaError
        Parquet schema that is not an additive evolution of the current one.
    """
    if isinstance(source, (str, Path)):
        p = Path(source)
        suffix = file_suffix(p)
        if suffix in PARQUET_SUFFIXES:
            return load_reads(p, context=context, projection=projection, predicate=predicate)
        if suffix in ALIGNMENT_SUFFIXES:
            if not p.exists():
                raise IngestionError(f"Input does not exist: {p}", source=str(p))
            records, references, read_groups = read_alignments(p)
            return _from_records(
                records,
                context=context,
                projection=projection,
                predicate=predicate,
                references=references,
                read_groups=read_groups,
                num_partitions=num_partitions,
            )
        raise IngestionError(
            f"Unrecognized input format for {p} (expected .parquet/.adam/.bam/.sam/.cram)",
            source=str(p),
        )

    records = list(source)
    for rec in records:
        if not isinstance(rec, AlignmentRecord):
            raise IngestionError(f"Expected AlignmentRecord, got {type(rec).__name__}")
        try:
            validate_record(rec)
        except ValueError as e:
            raise IngestionError(str(e), record=rec.read_name) from e
    read_groups = tuple(sorted({r.read_group_id for r in records if r.read_group_id is not None}))
    return _from_records(
        records,
        context=context,
        projection=projection,
        predicate=predicate,
        references=infer_references(records),
        read_groups=read_groups,
        num_partitions=num_partitions,
    )
