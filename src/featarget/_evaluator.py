from __future__ import annotations
import time
import logging
from collections.abc import Callable
from hashlib import sha1
from typing import Any, Literal, TypeAlias

from ._model import Clause, FeatureFlag, Segment, SegmentRule, User, VariationOrRollout
from ._operators import apply, value_kind


ReasonKind: TypeAlias = Literal["OFF", "FALLTHROUGH", "TARGET_MATCH", "RULE_MATCH", "PREREQUISITE_FAILED", "ERROR"]
ErrorKind: TypeAlias = Literal["MALFORMED_FLAG", "WRONG_TYPE", "FLAG_NOT_FOUND", "USER_NOT_SPECIFIED", "EXCEPTION"]


class EvaluationReason:
    """
    Why an evaluation produced its result. Only the fields relevant to the
    kind are set: rule_index and rule_id for RULE_MATCH, prerequisite_key for
    PREREQUISITE_FAILED and error_kind for ERROR.
    """

    __slots__ = ("kind", "rule_index", "rule_id", "prerequisite_key", "error_kind")
    kind: ReasonKind
    rule_index: int | None
    rule_id: str | None
    prerequisite_key: str | None
    error_kind: ErrorKind | None

    def __init__(
        self,
        kind: ReasonKind,
        *,
        rule_index: int | None = None,
        rule_id: str | None = None,
        prerequisite_key: str | None = None,
        error_kind: ErrorKind | None = None,
    ):
        self.kind = kind
        self.rule_index = rule_index
        self.rule_id = rule_id
        self.prerequisite_key = prerequisite_key
        self.error_kind = error_kind

    @staticmethod
    def off() -> EvaluationReason:
        return EvaluationReason("OFF")

    @staticmethod
    def fallthrough() -> EvaluationReason:
        return EvaluationReason("FALLTHROUGH")

    @staticmethod
    def target_match() -> EvaluationReason:
        return EvaluationReason("TARGET_MATCH")

    @staticmethod
    def rule_match(rule_index: int, rule_id: str | None) -> EvaluationReason:
        return EvaluationReason("RULE_MATCH", rule_index=rule_index, rule_id=rule_id)

    @staticmethod
    def prerequisite_failed(key: str) -> EvaluationReason:
        return EvaluationReason("PREREQUISITE_FAILED", prerequisite_key=key)

    @staticmethod
    def error(error_kind: ErrorKind) -> EvaluationReason:
        return EvaluationReason("ERROR", error_kind=error_kind)

    def _astuple(self):
        return (self.kind, self.rule_index, self.rule_id, self.prerequisite_key, self.error_kind)

    def __eq__(self, other):
        if not isinstance(other, EvaluationReason):
            return NotImplemented
        return self._astuple() == other._astuple()

    def __hash__(self):
        return hash(self._astuple())

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"kind": self.kind}
        match self.kind:
            case "RULE_MATCH":
                d["ruleIndex"] = self.rule_index
                if self.rule_id is not None:
                    d["ruleId"] = self.rule_id
            case "PREREQUISITE_FAILED":
                d["prerequisiteKey"] = self.prerequisite_key
            case "ERROR":
                d["errorKind"] = self.error_kind
        return d

    def __repr__(self):
        return f"EvaluationReason({self.to_dict()!r})"


class EvaluationDetail:
    """
    The result of evaluating a flag: the value, the index of the variation
    it came from (None when no variation applied) and the reason.
    """

    __slots__ = ("value", "variation_index", "reason")
    value: Any
    variation_index: int | None
    reason: EvaluationReason

    def __init__(self, value: Any, variation_index: int | None, reason: EvaluationReason):
        self.value = value
        self.variation_index = variation_index
        self.reason = reason

    @property
    def is_default_value(self) -> bool:
        return self.variation_index is None

    def __eq__(self, other):
        if not isinstance(other, EvaluationDetail):
            return NotImplemented
        return (self.value, self.variation_index, self.reason) == (other.value, other.variation_index, other.reason)

    def __repr__(self):
        return f"EvaluationDetail({self.value!r}, {self.variation_index!r}, {self.reason!r})"


def _error_detail(error_kind: ErrorKind, value: Any = None) -> EvaluationDetail:
    return EvaluationDetail(value, None, EvaluationReason.error(error_kind))


class FlagEvaluation:
    """
    Record of a single flag evaluation for the event pipeline. Prerequisite
    evaluations carry the key of the flag that depends on them in prereq_of.
    """

    __slots__ = (
        "flag",
        "variation_index",
        "value",
        "default",
        "version",
        "reason",
        "prereq_of",
        "user_key",
        "track_events",
        "timestamp",
    )
    flag: str
    variation_index: int | None
    value: Any
    default: Any
    version: int | None
    reason: EvaluationReason
    prereq_of: str | None
    user_key: str | None
    track_events: bool
    timestamp: float

    @staticmethod
    def new(
        flag: FeatureFlag | None,
        key: str,
        user: User | None,
        detail: EvaluationDetail,
        default: Any = None,
        prereq_of: str | None = None,
    ) -> FlagEvaluation:
        e = FlagEvaluation()
        e.flag = key
        e.variation_index = detail.variation_index
        e.value = detail.value
        e.default = default
        e.version = flag.version if flag is not None else None
        e.reason = detail.reason
        e.prereq_of = prereq_of
        e.user_key = user.key if user is not None else None
        e.track_events = flag is not None and _is_tracked(flag, detail.reason)
        e.timestamp = time.time()
        return e


def _is_tracked(flag: FeatureFlag, reason: EvaluationReason) -> bool:
    if flag.track_events:
        return True
    match reason.kind:
        case "FALLTHROUGH":
            return flag.track_events_fallthrough
        case "RULE_MATCH":
            i = reason.rule_index
            return i is not None and 0 <= i < len(flag.rules) and flag.rules[i].track_events
    return False


class EvalResult:
    __slots__ = ("detail", "prerequisite_evaluations")
    detail: EvaluationDetail
    prerequisite_evaluations: list[FlagEvaluation]

    def __init__(self, detail: EvaluationDetail, prerequisite_evaluations: list[FlagEvaluation]):
        self.detail = detail
        self.prerequisite_evaluations = prerequisite_evaluations


# Largest unsigned 60 bit integer, the range of the first 15 hex characters of
# the hash.
_LONG_SCALE = float(0xFFFFFFFFFFFFFFF)


def bucket(key: str, salt: str, id_value: str, secondary: str | None = None) -> float:
    """
    Hashes the flag or segment key, its salt and the bucketing id to a float
    in the range [0, 1). The result must stay identical across processes
    and SDKs sharing the flag data.
    """
    if secondary:
        id_value = f"{id_value}.{secondary}"
    h = sha1(f"{key}.{salt}.{id_value}".encode("utf-8")).hexdigest()[:15]
    return int(h, 16) / _LONG_SCALE


def _bucketable_value(v: Any) -> str | None:
    match value_kind(v):
        case "string":
            return v
        case "number":
            if isinstance(v, int):
                return str(v)
            if v.is_integer():
                return str(int(v))
    return None


def bucket_user(user: User, key: str, attribute: str, salt: str) -> float:
    """
    Bucket the user by the given attribute. Users with no usable value for
    the attribute always land in bucket 0.
    """
    id_value = _bucketable_value(user.get(attribute))
    if id_value is None:
        return 0.0
    return bucket(key, salt, id_value, user.secondary)


def _match_any(clause: Clause, user_value: Any) -> bool:
    return any(apply(clause.op, user_value, v) for v in clause.values)


def _maybe_negate(clause: Clause, b: bool) -> bool:
    return not b if clause.negate else b


def clause_matches_user_no_segments(clause: Clause, user: User) -> bool:
    """
    Match a clause against the user's attribute. A missing attribute never
    matches, whether or not the clause is negated. A list attribute matches
    when any of its elements does.
    """
    user_value = user.get(clause.attribute)
    match value_kind(user_value):
        case "null" | "object":
            return False
        case "array":
            for e in user_value:
                if value_kind(e) in ("array", "object"):
                    return False
                if _match_any(clause, e):
                    return _maybe_negate(clause, True)
            return _maybe_negate(clause, False)
        case _:
            return _maybe_negate(clause, _match_any(clause, user_value))


def clause_matches_user(clause: Clause, user: User, get_segment: Callable[[str], Segment | None]) -> bool:
    if clause.op == "segmentMatch":
        matched = False
        for key in clause.values:
            if not isinstance(key, str):
                continue
            segment = get_segment(key)
            if segment is not None and segment_matches_user(segment, user):
                matched = True
                break
        return _maybe_negate(clause, matched)
    return clause_matches_user_no_segments(clause, user)


def _segment_rule_matches_user(rule: SegmentRule, user: User, segment_key: str, salt: str) -> bool:
    # Segment rules can't reference other segments.
    if not all(clause_matches_user_no_segments(c, user) for c in rule.clauses):
        return False
    if rule.weight is None:
        return True
    return bucket_user(user, segment_key, rule.bucket_by or "key", salt) < rule.weight / 100000


def segment_matches_user(segment: Segment, user: User) -> bool:
    if user.key is None:
        return False
    if user.key in segment.included:
        return True
    if user.key in segment.excluded:
        return False
    return any(_segment_rule_matches_user(r, user, segment.key, segment.salt) for r in segment.rules)


def variation_index_for_user(vr: VariationOrRollout, user: User, key: str, salt: str) -> int | None:
    """
    Resolve a fixed variation or a rollout to a variation index. None means
    the variation/rollout is malformed: neither is set, the rollout is empty
    or its weights don't cover the user's bucket.
    """
    if vr.variation is not None:
        return vr.variation
    if vr.rollout is None:
        return None
    b = bucket_user(user, key, vr.rollout.bucket_by or "key", salt)
    total = 0.0
    for wv in vr.rollout.variations:
        total += wv.weight / 100000
        if b < total:
            return wv.variation
    return None


class _PrerequisiteCycle(Exception):
    pass


class Evaluator:
    """
    Evaluates flags for users. Flags and segments referenced during an
    evaluation are fetched through the given getters, usually backed by the
    store. Evaluator never raises; every failure is reported as an ERROR
    reason.
    """

    def __init__(
        self,
        get_flag: Callable[[str], FeatureFlag | None],
        get_segment: Callable[[str], Segment | None],
        logger: logging.Logger | None = None,
    ):
        self._get_flag = get_flag
        self._get_segment = get_segment
        self._logger = logger or logging.getLogger(__name__)

    def evaluate(self, flag: FeatureFlag, user: User | None) -> EvalResult:
        prereq_evals: list[FlagEvaluation] = []
        if user is None or user.key is None:
            self._logger.warning("user or user key is missing when evaluating flag %s", flag.key)
            return EvalResult(_error_detail("USER_NOT_SPECIFIED"), prereq_evals)
        try:
            detail = self._evaluate(flag, user, prereq_evals, (flag.key,))
        except _PrerequisiteCycle as e:
            self._logger.error("prerequisite cycle in flag %s: %s", flag.key, e)
            detail = _error_detail("MALFORMED_FLAG")
        except Exception:
            self._logger.exception("unexpected error evaluating flag %s", flag.key)
            detail = _error_detail("EXCEPTION")
        return EvalResult(detail, prereq_evals)

    def _evaluate(
        self,
        flag: FeatureFlag,
        user: User,
        prereq_evals: list[FlagEvaluation],
        chain: tuple[str, ...],
    ) -> EvaluationDetail:
        if not flag.on:
            return self._off_value(flag, EvaluationReason.off())

        failure = self._check_prerequisites(flag, user, prereq_evals, chain)
        if failure is not None:
            return self._off_value(flag, failure)

        for target in flag.targets:
            if user.key in target.values:
                return self._variation(flag, target.variation, EvaluationReason.target_match())

        for i, rule in enumerate(flag.rules):
            if all(clause_matches_user(c, user, self._get_segment) for c in rule.clauses):
                return self._variation_or_rollout(flag, rule, user, EvaluationReason.rule_match(i, rule.id))

        return self._variation_or_rollout(flag, flag.fallthrough, user, EvaluationReason.fallthrough())

    def _check_prerequisites(
        self,
        flag: FeatureFlag,
        user: User,
        prereq_evals: list[FlagEvaluation],
        chain: tuple[str, ...],
    ) -> EvaluationReason | None:
        """
        Evaluate every prerequisite and record the evaluations. Returns the
        failure reason naming the first failed prerequisite, or None if all
        of them passed. A prerequisite missing from the store stops the
        check right away.
        """
        failed_key: str | None = None
        for prereq in flag.prerequisites:
            if prereq.key in chain:
                raise _PrerequisiteCycle(" -> ".join(chain + (prereq.key,)))
            prereq_flag = self._get_flag(prereq.key)
            if prereq_flag is None:
                self._logger.error("could not retrieve prerequisite flag %s when evaluating %s", prereq.key, flag.key)
                return EvaluationReason.prerequisite_failed(prereq.key if failed_key is None else failed_key)
            # Off prerequisites are still evaluated so their evaluation is
            # recorded, but they never satisfy the prerequisite.
            detail = self._evaluate(prereq_flag, user, prereq_evals, chain + (prereq.key,))
            prereq_evals.append(FlagEvaluation.new(prereq_flag, prereq_flag.key, user, detail, prereq_of=flag.key))
            if failed_key is None and (not prereq_flag.on or detail.variation_index != prereq.variation):
                failed_key = prereq.key
        if failed_key is not None:
            return EvaluationReason.prerequisite_failed(failed_key)
        return None

    def _variation(self, flag: FeatureFlag, index: int, reason: EvaluationReason) -> EvaluationDetail:
        if not 0 <= index < len(flag.variations):
            self._logger.error("data inconsistency in flag %s: invalid variation index %d", flag.key, index)
            return _error_detail("MALFORMED_FLAG")
        return EvaluationDetail(flag.variations[index], index, reason)

    def _off_value(self, flag: FeatureFlag, reason: EvaluationReason) -> EvaluationDetail:
        if flag.off_variation is None:
            return EvaluationDetail(None, None, reason)
        return self._variation(flag, flag.off_variation, reason)

    def _variation_or_rollout(
        self,
        flag: FeatureFlag,
        vr: VariationOrRollout,
        user: User,
        reason: EvaluationReason,
    ) -> EvaluationDetail:
        index = variation_index_for_user(vr, user, flag.key, flag.salt)
        if index is None:
            self._logger.error("data inconsistency in flag %s: variation/rollout resolves to no variation", flag.key)
            return _error_detail("MALFORMED_FLAG")
        return self._variation(flag, index, reason)
