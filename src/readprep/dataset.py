from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from .collection import ReadCollection
from .models import AlignmentRecord

References = Tuple[Tuple[str, int], ...]


@dataclass(frozen=True)
class AlignmentDataset:
    """A read collection plus the metadata that travels with it.

    Attributes
    ----------
    reads:
        The records.
    references:
        Sequence dictionary ``((name, length), ...)`` in header order; may be
        empty when the source did not carry one.
    read_groups:
        Read group identifiers declared by the source.
    """

    reads: ReadCollection[AlignmentRecord]
    references: References = ()
    read_groups: Tuple[str, ...] = ()
