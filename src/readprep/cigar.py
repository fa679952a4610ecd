from __future__ import annotations

import re
from typing import Iterable, List, Sequence, Tuple

# SAM / pysam operation codes
MATCH = 0  # M
INSERTION = 1  # I
DELETION = 2  # D
SKIP = 3  # N
SOFT_CLIP = 4  # S
HARD_CLIP = 5  # H
PADDING = 6  # P
SEQ_MATCH = 7  # =
SEQ_MISMATCH = 8  # X

CigarTuples = Tuple[Tuple[int, int], ...]

_OP_CHARS = "MIDNSHP=X"
_CIGAR_RE = re.compile(r"(\d+)([MIDNSHP=X])")

ALIGNED_OPS = frozenset({MATCH, SEQ_MATCH, SEQ_MISMATCH})
CLIP_OPS = frozenset({SOFT_CLIP, HARD_CLIP})
_CONSUMES_QUERY = frozenset({MATCH, INSERTION, SOFT_CLIP, SEQ_MATCH, SEQ_MISMATCH})
_CONSUMES_REF = frozenset({MATCH, DELETION, SKIP, SEQ_MATCH, SEQ_MISMATCH})


def parse_cigar(text: str) -> CigarTuples:
    """Parse a CIGAR string (e.g. ``"10M2I5M"``) into ``((op, length), ...)``.

    ``"*"`` and the empty string parse to an empty tuple. Raises ValueError for
    anything that is not a well-formed CIGAR.
    """
    if text in ("", "*"):
        return ()
    out: List[Tuple[int, int]] = []
    pos = 0
    for m in _CIGAR_RE.finditer(text):
        if m.start() != pos:
            raise ValueError(f"Unparsable CIGAR: {text!r}")
        length = int(m.group(1))
        if length == 0:
            raise ValueError(f"Zero-length CIGAR element in {text!r}")
        out.append((_OP_CHARS.index(m.group(2)), length))
        pos = m.end()
    if pos != len(text):
        raise ValueError(f"Unparsable CIGAR: {text!r}")
    return tuple(out)


def cigar_to_string(cigar: Iterable[Tuple[int, int]]) -> str:
    parts = [f"{length}{op_char(op)}" for op, length in cigar]
    return "".join(parts) if parts else "*"


def op_char(op: int) -> str:
    if not 0 <= op < len(_OP_CHARS):
        raise ValueError(f"Unknown CIGAR operation code: {op}")
    return _OP_CHARS[op]


def check_cigar(cigar: Sequence[Tuple[int, int]]) -> None:
    """Raise ValueError if a cigar tuple sequence is malformed."""
    for i, element in enumerate(cigar):
        if len(element) != 2:
            raise ValueError(f"CIGAR element {i} is not an (op, length) pair: {element!r}")
        op, length = element
        op_char(op)
        if length <= 0:
            raise ValueError(f"CIGAR element {i} has non-positive length {length}")


def reference_length(cigar: Iterable[Tuple[int, int]]) -> int:
    return sum(length for op, length in cigar if op in _CONSUMES_REF)


def query_length(cigar: Iterable[Tuple[int, int]]) -> int:
    """Number of read bases described by the cigar (hard clips excluded)."""
    return sum(length for op, length in cigar if op in _CONSUMES_QUERY)


def leading_clip(cigar: Sequence[Tuple[int, int]], *, soft_only: bool = True) -> int:
    n = 0
    for op, length in cigar:
        if op == SOFT_CLIP or (op == HARD_CLIP and not soft_only):
            n += length
        elif op == HARD_CLIP:
            continue
        else:
            break
    return n


def trailing_clip(cigar: Sequence[Tuple[int, int]], *, soft_only: bool = True) -> int:
    return leading_clip(list(reversed(cigar)), soft_only=soft_only)


def normalize(cigar: Iterable[Tuple[int, int]]) -> CigarTuples:
    """Merge adjacent elements with the same op and drop zero-length elements."""
    out: List[Tuple[int, int]] = []
    for op, length in cigar:
        if length <= 0:
            continue
        if out and out[-1][0] == op:
            out[-1] = (op, out[-1][1] + length)
        else:
            out.append((op, length))
    return tuple(out)
