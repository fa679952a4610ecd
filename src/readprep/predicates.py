"""A small, serializable predicate language over declared record fields.

Predicates are plain data (no user code), so the store can evaluate them
against just the columns they reference before materializing a record, and
so they can be written to JSON and read back. Evaluation is pure and
deterministic: the same predicate gives the same answer whether it is pushed
into the store or applied to records in memory.

Build predicates with :func:`field`::

    (field("mapping_quality") >= 30) & ~field("duplicate_read")

or parse them from text::

    parse_predicate("mapping_quality >= 30 and not duplicate_read")
"""

from __future__ import annotations

import json
import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .errors import ConfigurationError

_COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


class Predicate:
    """Base class; combine with ``&``, ``|`` and ``~``."""

    def evaluate(self, row: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    def fields(self) -> FrozenSet[str]:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError

    def __call__(self, record: Any) -> bool:
        """Evaluate against an object exposing the fields as attributes."""
        return self.evaluate(_AttrRow(record))

    def __and__(self, other: "Predicate") -> "Predicate":
        return And((self, other))

    def __or__(self, other: "Predicate") -> "Predicate":
        return Or((self, other))

    def __invert__(self) -> "Predicate":
        return Not(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


class _AttrRow(Mapping[str, Any]):
    def __init__(self, obj: Any) -> None:
        self._obj = obj

    def __getitem__(self, key: str) -> Any:
        try:
            return getattr(self._obj, key)
        except AttributeError:
            raise KeyError(key) from None

    def __iter__(self):
        return iter(())

    def __len__(self) -> int:
        return 0


@dataclass(frozen=True)
class Compare(Predicate):
    """``field <op> value``. Any comparison with a null field value is false."""

    name: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _COMPARATORS:
            raise ValueError(f"Unknown comparison operator: {self.op!r}")

    def evaluate(self, row: Mapping[str, Any]) -> bool:
        actual = row[self.name]
        if actual is None:
            return False
        try:
            return bool(_COMPARATORS[self.op](actual, self.value))
        except TypeError as e:
            raise ValueError(f"Cannot compare field {self.name}={actual!r} with {self.value!r}") from e

    def fields(self) -> FrozenSet[str]:
        return frozenset([self.name])

    def to_dict(self) -> Dict[str, Any]:
        return {"cmp": self.op, "field": self.name, "value": self.value}


@dataclass(frozen=True)
class IsIn(Predicate):
    name: str
    values: Tuple[Any, ...]

    def evaluate(self, row: Mapping[str, Any]) -> bool:
        actual = row[self.name]
        return actual is not None and actual in self.values

    def fields(self) -> FrozenSet[str]:
        return frozenset([self.name])

    def to_dict(self) -> Dict[str, Any]:
        return {"in": list(self.values), "field": self.name}


@dataclass(frozen=True)
class IsNull(Predicate):
    name: str

    def evaluate(self, row: Mapping[str, Any]) -> bool:
        return row[self.name] is None

    def fields(self) -> FrozenSet[str]:
        return frozenset([self.name])

    def to_dict(self) -> Dict[str, Any]:
        return {"is_null": self.name}


@dataclass(frozen=True)
class Truthy(Predicate):
    """True when the field value is truthy (for boolean flag fields)."""

    name: str

    def evaluate(self, row: Mapping[str, Any]) -> bool:
        return bool(row[self.name])

    def fields(self) -> FrozenSet[str]:
        return frozenset([self.name])

    def to_dict(self) -> Dict[str, Any]:
        return {"truthy": self.name}


@dataclass(frozen=True)
class And(Predicate):
    terms: Tuple[Predicate, ...]

    def evaluate(self, row: Mapping[str, Any]) -> bool:
        return all(t.evaluate(row) for t in self.terms)

    def fields(self) -> FrozenSet[str]:
        return frozenset().union(*(t.fields() for t in self.terms))

    def to_dict(self) -> Dict[str, Any]:
        return {"and": [t.to_dict() for t in self.terms]}


@dataclass(frozen=True)
class Or(Predicate):
    terms: Tuple[Predicate, ...]

    def evaluate(self, row: Mapping[str, Any]) -> bool:
        return any(t.evaluate(row) for t in self.terms)

    def fields(self) -> FrozenSet[str]:
        return frozenset().union(*(t.fields() for t in self.terms))

    def to_dict(self) -> Dict[str, Any]:
        return {"or": [t.to_dict() for t in self.terms]}


@dataclass(frozen=True)
class Not(Predicate):
    term: Predicate

    def evaluate(self, row: Mapping[str, Any]) -> bool:
        return not self.term.evaluate(row)

    def fields(self) -> FrozenSet[str]:
        return self.term.fields()

    def to_dict(self) -> Dict[str, Any]:
        return {"not": self.term.to_dict()}


@dataclass(frozen=True)
class Always(Predicate):
    def evaluate(self, row: Mapping[str, Any]) -> bool:
        return True

    def fields(self) -> FrozenSet[str]:
        return frozenset()

    def to_dict(self) -> Dict[str, Any]:
        return {"always": True}


class FieldRef:
    """Builder returned by :func:`field`."""

    def __init__(self, name: str) -> None:
        self.name = name

    def __eq__(self, value: Any) -> Predicate:  # type: ignore[override]
        return Compare(self.name, "==", value)

    def __ne__(self, value: Any) -> Predicate:  # type: ignore[override]
        return Compare(self.name, "!=", value)

    def __lt__(self, value: Any) -> Predicate:
        return Compare(self.name, "<", value)

    def __le__(self, value: Any) -> Predicate:
        return Compare(self.name, "<=", value)

    def __gt__(self, value: Any) -> Predicate:
        return Compare(self.name, ">", value)

    def __ge__(self, value: Any) -> Predicate:
        return Compare(self.name, ">=", value)

    def __invert__(self) -> Predicate:
        return Not(Truthy(self.name))

    def isin(self, values) -> Predicate:
        return IsIn(self.name, tuple(values))

    def is_null(self) -> Predicate:
        return IsNull(self.name)

    def is_true(self) -> Predicate:
        return Truthy(self.name)

    __hash__ = None  # type: ignore[assignment]


def field(name: str) -> FieldRef:
    return FieldRef(name)


def from_dict(data: Mapping[str, Any]) -> Predicate:
    """Inverse of :meth:`Predicate.to_dict`. Raises ValueError on unknown shapes."""
    if "cmp" in data:
        return Compare(str(data["field"]), str(data["cmp"]), data["value"])
    if "in" in data:
        return IsIn(str(data["field"]), tuple(data["in"]))
    if "is_null" in data:
        return IsNull(str(data["is_null"]))
    if "truthy" in data:
        return Truthy(str(data["truthy"]))
    if "and" in data:
        return And(tuple(from_dict(d) for d in data["and"]))
    if "or" in data:
        return Or(tuple(from_dict(d) for d in data["or"]))
    if "not" in data:
        return Not(from_dict(data["not"]))
    if "always" in data:
        return Always()
    raise ValueError(f"Unrecognized predicate: {data!r}")


def from_json(text: str) -> Predicate:
    return from_dict(json.loads(text))


def check_fields(predicate: Predicate, known: FrozenSet[str]) -> None:
    unknown = sorted(predicate.fields() - known)
    if unknown:
        raise ConfigurationError(f"Predicate references unknown field(s): {', '.join(unknown)}", option="predicate")


# -----------------
# text syntax
# -----------------

_TOKEN = re.compile(
    r"""\s*(?:
        (?P<num>-?\d+(?:\.\d+)?)
      | (?P<str>"[^"]*"|'[^']*')
      | (?P<op>==|!=|<=|>=|<|>)
      | (?P<lp>\()
      | (?P<rp>\))
      | (?P<comma>,)
      | (?P<lb>\[)
      | (?P<rb>\])
      | (?P<word>[A-Za-z_][A-Za-z0-9_]*)
    )""",
    re.VERBOSE,
)

_KEYWORDS = {"and", "or", "not", "in", "is", "null", "true", "false", "none"}


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = text.strip()
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if m is None or m.end() == pos:
            raise ValueError(f"Unexpected character in predicate at {pos}: {text[pos:]!r}")
        kind = m.lastgroup
        assert kind is not None
        tokens.append((kind, m.group(kind)))
        pos = m.end()
        while pos < len(text) and text[pos].isspace():
            pos += 1
    return tokens


class _Parser:
    """Recursive descent: or_expr := and_expr ('or' and_expr)*; and_expr := unary ('and' unary)*."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.i = 0

    def peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def next(self) -> Tuple[str, str]:
        tok = self.peek()
        if tok is None:
            raise ValueError(f"Unexpected end of predicate: {self.text!r}")
        self.i += 1
        return tok

    def accept_word(self, word: str) -> bool:
        tok = self.peek()
        if tok is not None and tok[0] == "word" and tok[1].lower() == word:
            self.i += 1
            return True
        return False

    def parse(self) -> Predicate:
        expr = self.or_expr()
        if self.peek() is not None:
            raise ValueError(f"Trailing input in predicate: {self.text!r}")
        return expr

    def or_expr(self) -> Predicate:
        terms = [self.and_expr()]
        while self.accept_word("or"):
            terms.append(self.and_expr())
        return terms[0] if len(terms) == 1 else Or(tuple(terms))

    def and_expr(self) -> Predicate:
        terms = [self.unary()]
        while self.accept_word("and"):
            terms.append(self.unary())
        return terms[0] if len(terms) == 1 else And(tuple(terms))

    def unary(self) -> Predicate:
        if self.accept_word("not"):
            return Not(self.unary())
        tok = self.peek()
        if tok is not None and tok[0] == "lp":
            self.next()
            expr = self.or_expr()
            if self.next()[0] != "rp":
                raise ValueError(f"Missing ')' in predicate: {self.text!r}")
            return expr
        return self.atom()

    def atom(self) -> Predicate:
        kind, name = self.next()
        if kind != "word" or name.lower() in _KEYWORDS:
            raise ValueError(f"Expected a field name, got {name!r}")
        tok = self.peek()
        if tok is None or (tok[0] == "word" and tok[1].lower() in ("and", "or")) or tok[0] == "rp":
            return Truthy(name)
        if tok[0] == "op":
            self.next()
            return Compare(name, tok[1], self.literal())
        if self.accept_word("in"):
            if self.next()[0] != "lb":
                raise ValueError(f"Expected '[' after 'in' in predicate: {self.text!r}")
            values: List[Any] = []
            while True:
                values.append(self.literal())
                sep = self.next()[0]
                if sep == "rb":
                    break
                if sep != "comma":
                    raise ValueError(f"Expected ',' or ']' in predicate: {self.text!r}")
            return IsIn(name, tuple(values))
        if self.accept_word("is"):
            negate = self.accept_word("not")
            if not self.accept_word("null"):
                raise ValueError(f"Expected 'null' after 'is' in predicate: {self.text!r}")
            return Not(IsNull(name)) if negate else IsNull(name)
        raise ValueError(f"Unexpected token {tok[1]!r} in predicate: {self.text!r}")

    def literal(self) -> Any:
        kind, text = self.next()
        if kind == "num":
            return float(text) if "." in text else int(text)
        if kind == "str":
            return text[1:-1]
        if kind == "word" and text.lower() in ("true", "false"):
            return text.lower() == "true"
        raise ValueError(f"Expected a literal, got {text!r}")


def parse_predicate(text: str) -> Predicate:
    """Parse the text syntax.

    Grammar: comparisons ``f == 3``, ``f >= 2.5``, ``f != "chr1"``; membership
    ``f in ["a", "b"]``; nulls ``f is null`` / ``f is not null``; a bare field
    name tests truthiness; combine with ``and``, ``or``, ``not`` and parentheses.
    """
    return _Parser(text).parse()
