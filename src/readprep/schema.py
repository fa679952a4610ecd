"""Versioned columnar schema for AlignmentRecord.

The schema is a language-neutral list of fields, each with an Arrow type, a
default, and the schema version that introduced it. Evolution is additive
only: a reader accepts files written with any older version (fields added
later take their default) and rejects files whose columns change the type of
a known field or lack a field that every version has.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pyarrow as pa

from . import cigar as cg
from .errors import SchemaError
from .models import RECORD_FIELDS, AlignmentRecord

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

META_VERSION = b"readprep.schema_version"
META_REFERENCES = b"readprep.references"
META_READ_GROUPS = b"readprep.read_groups"

References = Tuple[Tuple[str, int], ...]


def _identity(v: Any) -> Any:
    return v


def _quals_to_arrow(v: Optional[Tuple[int, ...]]) -> Optional[List[int]]:
    return None if v is None else list(v)


def _quals_from_arrow(v: Optional[List[int]]) -> Optional[Tuple[int, ...]]:
    return None if v is None else tuple(int(q) for q in v)


def _cigar_to_arrow(v: cg.CigarTuples) -> Optional[str]:
    return cg.cigar_to_string(v) if v else None


def _cigar_from_arrow(v: Optional[str]) -> cg.CigarTuples:
    return cg.parse_cigar(v) if v else ()


@dataclass(frozen=True)
class FieldSpec:
    name: str
    arrow_type: pa.DataType
    default: Any
    since: int = 1
    to_arrow: Callable[[Any], Any] = _identity
    from_arrow: Callable[[Any], Any] = _identity

    def decode(self, value: Any) -> Any:
        if value is None:
            return self.default
        return self.from_arrow(value)


_QUALS = pa.list_(pa.uint8())

FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("read_name", pa.string(), ""),
    FieldSpec("sequence", pa.string(), ""),
    FieldSpec("quality_scores", _QUALS, (), to_arrow=_quals_to_arrow, from_arrow=_quals_from_arrow),
    FieldSpec("reference_name", pa.string(), None),
    FieldSpec("start", pa.int64(), None),
    FieldSpec("cigar", pa.string(), (), to_arrow=_cigar_to_arrow, from_arrow=_cigar_from_arrow),
    FieldSpec("mapping_quality", pa.int32(), 0),
    FieldSpec("read_group_id", pa.string(), None),
    FieldSpec("mate_reference_name", pa.string(), None),
    FieldSpec("mate_start", pa.int64(), None),
    FieldSpec("inferred_insert_size", pa.int64(), 0, since=2),
    FieldSpec("mismatching_positions", pa.string(), None, since=2),
    FieldSpec(
        "original_quality_scores",
        _QUALS,
        None,
        since=2,
        to_arrow=_quals_to_arrow,
        from_arrow=_quals_from_arrow,
    ),
    FieldSpec("read_paired", pa.bool_(), False),
    FieldSpec("proper_pair", pa.bool_(), False),
    FieldSpec("read_mapped", pa.bool_(), False),
    FieldSpec("mate_mapped", pa.bool_(), False),
    FieldSpec("read_negative_strand", pa.bool_(), False),
    FieldSpec("mate_negative_strand", pa.bool_(), False),
    FieldSpec("first_of_pair", pa.bool_(), False),
    FieldSpec("second_of_pair", pa.bool_(), False),
    FieldSpec("secondary_alignment", pa.bool_(), False),
    FieldSpec("supplementary_alignment", pa.bool_(), False),
    FieldSpec("failed_vendor_quality_checks", pa.bool_(), False),
    FieldSpec("duplicate_read", pa.bool_(), False),
)

FIELDS_BY_NAME: Dict[str, FieldSpec] = {f.name: f for f in FIELDS}
FIELD_NAMES = frozenset(FIELDS_BY_NAME)

assert FIELD_NAMES == frozenset(RECORD_FIELDS), "schema and AlignmentRecord disagree"


def arrow_schema(
    *,
    version: int = SCHEMA_VERSION,
    references: References = (),
    read_groups: Sequence[str] = (),
) -> pa.Schema:
    """Arrow schema for ``version`` with readprep metadata attached."""
    pa_fields = [pa.field(f.name, f.arrow_type) for f in FIELDS if f.since <= version]
    metadata = {
        META_VERSION: str(version).encode(),
        META_REFERENCES: json.dumps([list(r) for r in references]).encode(),
        META_READ_GROUPS: json.dumps(list(read_groups)).encode(),
    }
    return pa.schema(pa_fields, metadata=metadata)


def records_to_table(records: Sequence[AlignmentRecord], schema: pa.Schema) -> pa.Table:
    columns = {}
    for name in schema.names:
        spec = FIELDS_BY_NAME[name]
        columns[name] = pa.array([spec.to_arrow(getattr(r, name)) for r in records], type=spec.arrow_type)
    return pa.Table.from_pydict(columns, schema=schema)


def _compatible(found: pa.DataType, expected: pa.DataType) -> bool:
    if found.equals(expected):
        return True
    if pa.types.is_integer(expected):
        return pa.types.is_integer(found)
    if pa.types.is_string(expected):
        return pa.types.is_string(found) or pa.types.is_large_string(found)
    if pa.types.is_list(expected):
        return (pa.types.is_list(found) or pa.types.is_large_list(found)) and pa.types.is_integer(
            found.value_type
        )
    return False


@dataclass(frozen=True)
class StoredSchema:
    """What a reader learned from a file's schema."""

    version: int
    present: frozenset
    references: References
    read_groups: Tuple[str, ...]


def check_compatible(found: pa.Schema, *, source: str) -> StoredSchema:
    """Validate a stored schema against the current one.

    Raises SchemaError when the change is not additive.
    """
    meta = found.metadata or {}
    try:
        version = int(meta.get(META_VERSION, b"1").decode())
    except ValueError as e:
        raise SchemaError(f"Unreadable schema version in {source}: {e}", source=source) from e
    if version > SCHEMA_VERSION:
        logger.warning(
            "%s was written with schema version %d (reader knows %d); unknown columns are ignored.",
            source,
            version,
            SCHEMA_VERSION,
        )

    present = set()
    for pa_field in found:
        spec = FIELDS_BY_NAME.get(pa_field.name)
        if spec is None:
            logger.warning("Ignoring unknown column '%s' in %s", pa_field.name, source)
            continue
        if not _compatible(pa_field.type, spec.arrow_type):
            raise SchemaError(
                f"Column '{pa_field.name}' in {source} has type {pa_field.type}, "
                f"incompatible with {spec.arrow_type}",
                source=source,
                field=pa_field.name,
            )
        present.add(pa_field.name)

    for spec in FIELDS:
        if spec.since == 1 and spec.name not in present:
            raise SchemaError(
                f"Column '{spec.name}' is missing from {source}; it exists in every schema version",
                source=source,
                field=spec.name,
            )

    try:
        references = tuple((str(n), int(length)) for n, length in json.loads(meta.get(META_REFERENCES, b"[]")))
        read_groups = tuple(str(g) for g in json.loads(meta.get(META_READ_GROUPS, b"[]")))
    except (ValueError, TypeError) as e:
        raise SchemaError(f"Unreadable readprep metadata in {source}: {e}", source=source) from e

    return StoredSchema(
        version=version,
        present=frozenset(present),
        references=references,
        read_groups=read_groups,
    )
