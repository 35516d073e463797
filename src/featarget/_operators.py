from __future__ import annotations
import re
import logging
import datetime
import functools
from collections.abc import Callable
from typing import Any, Literal, TypeAlias


logger = logging.getLogger(__name__)

ValueKind: TypeAlias = Literal["null", "bool", "number", "string", "array", "object"]


def value_kind(v: Any) -> ValueKind:
    """
    Classify a JSON value. Attribute and clause values are always one of
    these kinds; bool is checked before number since bool is an int subclass
    in python but never a number in a flag rule.
    """
    match v:
        case None:
            return "null"
        case bool():
            return "bool"
        case int() | float():
            return "number"
        case str():
            return "string"
        case list() | tuple():
            return "array"
        case dict():
            return "object"
    raise TypeError(f"not a JSON value: {type(v).__name__}")


_semver_re = re.compile(
    r"^(?P<major>0|[1-9]\d*)(?:\.(?P<minor>0|[1-9]\d*))?(?:\.(?P<patch>0|[1-9]\d*))?"
    r"(?:-(?P<prerel>[0-9A-Za-z\-.]+))?(?:\+(?P<build>[0-9A-Za-z\-.]+))?$"
)


class SemanticVersion:
    """
    A semantic version as defined by semver 2.0.0 except that minor and patch
    may be omitted, in which case they are zero.
    """

    __slots__ = ("major", "minor", "patch", "prerelease", "build")
    major: int
    minor: int
    patch: int
    prerelease: str
    build: str

    @staticmethod
    def parse(s: str) -> SemanticVersion:
        m = _semver_re.match(s)
        if not m:
            raise ValueError(f"invalid semantic version {s!r}")
        v = SemanticVersion()
        v.major = int(m.group("major"))
        v.minor = int(m.group("minor") or 0)
        v.patch = int(m.group("patch") or 0)
        v.prerelease = m.group("prerel") or ""
        v.build = m.group("build") or ""
        return v

    def compare(self, other: SemanticVersion) -> int:
        """
        Compare precedence. Returns a negative number, zero or a positive
        number. Build metadata never takes part in precedence.
        """
        for a, b in ((self.major, other.major), (self.minor, other.minor), (self.patch, other.patch)):
            if a != b:
                return -1 if a < b else 1
        if not self.prerelease and not other.prerelease:
            return 0
        # A version without prerelease outranks any prerelease of it.
        if not self.prerelease:
            return 1
        if not other.prerelease:
            return -1
        return _compare_identifiers(self.prerelease.split("."), other.prerelease.split("."))


def _compare_identifiers(ids1: list[str], ids2: list[str]) -> int:
    for id1, id2 in zip(ids1, ids2):
        num1, num2 = id1.isdigit(), id2.isdigit()
        if num1 and num2:
            d = int(id1) - int(id2)
        elif num1 or num2:
            # Numeric identifiers always have lower precedence.
            d = -1 if num1 else 1
        else:
            d = (id1 > id2) - (id1 < id2)
        if d != 0:
            return -1 if d < 0 else 1
    return (len(ids1) > len(ids2)) - (len(ids1) < len(ids2))


def _to_semver(v: Any) -> SemanticVersion | None:
    if value_kind(v) != "string":
        return None
    try:
        return SemanticVersion.parse(v)
    except ValueError:
        return None


_rfc3339_re = re.compile(
    r"^(?P<datetime>\d{4}-\d{2}-\d{2}[Tt]\d{2}:\d{2}:\d{2})(?:\.(?P<frac>\d+))?(?P<tz>[Zz]|[+-]\d{2}:\d{2})$"
)


def _to_unix_millis(v: Any) -> float | None:
    """
    Coerce an RFC3339 timestamp string or a number of milliseconds since the
    unix epoch. Timestamps without a timezone, and other ISO 8601 forms, are
    not coercible.
    """
    match value_kind(v):
        case "number":
            return float(v)
        case "string":
            m = _rfc3339_re.match(v)
            if not m:
                return None
            s = m.group("datetime").upper()
            if m.group("frac"):
                # Sub-microsecond digits are dropped.
                s += "." + m.group("frac")[:6].ljust(6, "0")
            tz = m.group("tz")
            s += "+00:00" if tz in ("Z", "z") else tz
            try:
                t = datetime.datetime.fromisoformat(s)
            except ValueError:
                return None
            return t.timestamp() * 1000
    return None


@functools.lru_cache(maxsize=1024)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def _op_in(u: Any, c: Any) -> bool:
    uk, ck = value_kind(u), value_kind(c)
    if uk != ck:
        return False
    if uk == "number":
        return float(u) == float(c)
    return u == c


def _string_op(fn: Callable[[str, str], bool]) -> Callable[[Any, Any], bool]:
    def op(u: Any, c: Any) -> bool:
        return value_kind(u) == "string" and value_kind(c) == "string" and fn(u, c)

    return op


def _numeric_op(fn: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def op(u: Any, c: Any) -> bool:
        return value_kind(u) == "number" and value_kind(c) == "number" and fn(float(u), float(c))

    return op


def _date_op(fn: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def op(u: Any, c: Any) -> bool:
        ut, ct = _to_unix_millis(u), _to_unix_millis(c)
        return ut is not None and ct is not None and fn(ut, ct)

    return op


def _semver_op(fn: Callable[[int], bool]) -> Callable[[Any, Any], bool]:
    def op(u: Any, c: Any) -> bool:
        uv, cv = _to_semver(u), _to_semver(c)
        return uv is not None and cv is not None and fn(uv.compare(cv))

    return op


_operators: dict[str, Callable[[Any, Any], bool]] = {
    "in": _op_in,
    "startsWith": _string_op(lambda u, c: u.startswith(c)),
    "endsWith": _string_op(lambda u, c: u.endswith(c)),
    "contains": _string_op(lambda u, c: c in u),
    "matches": _string_op(lambda u, c: _compile(c).search(u) is not None),
    "lessThan": _numeric_op(lambda u, c: u < c),
    "lessThanOrEqual": _numeric_op(lambda u, c: u <= c),
    "greaterThan": _numeric_op(lambda u, c: u > c),
    "greaterThanOrEqual": _numeric_op(lambda u, c: u >= c),
    "before": _date_op(lambda u, c: u < c),
    "after": _date_op(lambda u, c: u > c),
    "semVerEqual": _semver_op(lambda d: d == 0),
    "semVerLessThan": _semver_op(lambda d: d < 0),
    "semVerGreaterThan": _semver_op(lambda d: d > 0),
}

OPERATORS = frozenset(_operators) | {"segmentMatch"}


def apply(op: str, user_value: Any, clause_value: Any) -> bool:
    """
    Apply the named operator to a single user value and a single clause
    value. Unknown operators and any failure while applying an operator (bad
    regex, values that aren't JSON) evaluate to no match.
    """
    fn = _operators.get(op)
    if fn is None:
        return False
    try:
        return fn(user_value, clause_value)
    except Exception as e:
        logger.debug("exception applying operator %s to %r and %r: %s", op, user_value, clause_value, e)
        return False
