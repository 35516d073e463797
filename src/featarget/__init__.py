from __future__ import annotations
import time
import logging
from abc import abstractmethod
from collections.abc import Callable
from typing import Any, Literal, TypeAlias

from prometheus_client import Histogram

from ._operators import OPERATORS, SemanticVersion, apply, value_kind
from ._model import (
    FEATURES,
    SEGMENTS,
    Clause,
    DataSet,
    FeatureFlag,
    Prerequisite,
    Rollout,
    Rule,
    Segment,
    SegmentRule,
    Target,
    User,
    VariationOrRollout,
    VersionedDataKind,
    WeightedVariation,
    merge_data,
)
from ._store import InMemoryFeatureStore
from ._evaluator import (
    EvalResult,
    EvaluationDetail,
    EvaluationReason,
    Evaluator,
    FlagEvaluation,
    bucket,
    bucket_user,
    clause_matches_user,
    segment_matches_user,
    variation_index_for_user,
)

__all__ = [
    "OPERATORS",
    "FEATURES",
    "SEGMENTS",
    "Clause",
    "Client",
    "Config",
    "DataSet",
    "EvalResult",
    "EvaluationDetail",
    "EvaluationReason",
    "Evaluator",
    "Exporter",
    "FeatureFlag",
    "FeatureFlagsState",
    "FlagEvaluation",
    "InMemoryFeatureStore",
    "Prerequisite",
    "Rollout",
    "Rule",
    "Segment",
    "SegmentRule",
    "SemanticVersion",
    "Target",
    "User",
    "VariationOrRollout",
    "VersionedDataKind",
    "WeightedVariation",
    "apply",
    "bucket",
    "bucket_user",
    "clause_matches_user",
    "merge_data",
    "segment_matches_user",
    "variation_index_for_user",
]


class Exporter:
    """
    The exporter receives the records of every flag evaluation made through
    the client, prerequisite evaluations first and the requested flag last.
    Batching, summarising and delivery are up to the implementation.
    """

    @abstractmethod
    def export(self, entries: list[FlagEvaluation]) -> None: ...


class Config:
    """
    Settings shared by the store, the evaluator and the client.

    exporter: Receives evaluation records. None disables exporting.
    store_lock_timeout: Seconds to wait for the store lock before going ahead
        without it.
    logger: Logger used by all components. Defaults to the package logger.
    record_metrics: Observe evaluation durations in prometheus.
    """

    __slots__ = ("exporter", "store_lock_timeout", "logger", "record_metrics")
    exporter: Exporter | None
    store_lock_timeout: float
    logger: logging.Logger
    record_metrics: bool

    def __init__(
        self,
        exporter: Exporter | None = None,
        store_lock_timeout: float = 1.0,
        logger: logging.Logger | None = None,
        record_metrics: bool = True,
    ):
        if isinstance(store_lock_timeout, bool) or not isinstance(store_lock_timeout, (int, float)):
            raise TypeError(f"store_lock_timeout must be a number, not {type(store_lock_timeout).__name__}")
        if store_lock_timeout < 0:
            raise ValueError("store_lock_timeout must not be negative")
        self.exporter = exporter
        self.store_lock_timeout = store_lock_timeout
        self.logger = logger or logging.getLogger(__name__)
        self.record_metrics = record_metrics


class FeatureFlagsState:
    """
    Snapshot of the evaluation of all flags for one user, suitable for
    bootstrapping a front end client. valid is False when the state could not
    be computed (no user, store not initialized).
    """

    __slots__ = ("valid", "_values", "_reasons", "_metadata")

    def __init__(self, valid: bool = True):
        self.valid = valid
        self._values: dict[str, Any] = {}
        self._reasons: dict[str, EvaluationReason] = {}
        self._metadata: dict[str, dict[str, Any]] = {}

    def add_flag(self, flag: FeatureFlag, detail: EvaluationDetail, with_reasons: bool = False):
        self._values[flag.key] = detail.value
        meta: dict[str, Any] = {"version": flag.version}
        if detail.variation_index is not None:
            meta["variation"] = detail.variation_index
        if with_reasons:
            self._reasons[flag.key] = detail.reason
            meta["reason"] = detail.reason.to_dict()
        if flag.track_events:
            meta["trackEvents"] = True
        if flag.debug_events_until_date is not None:
            meta["debugEventsUntilDate"] = flag.debug_events_until_date
        self._metadata[flag.key] = meta

    def get_flag_value(self, key: str) -> Any:
        return self._values.get(key)

    def get_flag_reason(self, key: str) -> EvaluationReason | None:
        return self._reasons.get(key)

    def to_values_map(self) -> dict[str, Any]:
        return dict(self._values)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self._values,
            "$flagsState": {k: dict(m) for k, m in self._metadata.items()},
            "$valid": self.valid,
        }


_prom_labels = ["flag", "reason", "error_kind"]
_prom_eval_duration = Histogram(
    "featarget_evaluation_seconds",
    "Flag evaluation duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=_prom_labels,
)


_ValueType: TypeAlias = Literal["bool", "int", "float", "str"]

# Requested type -> (accepts value, converts value)
_value_types: dict[_ValueType, tuple[Callable[[Any], bool], Callable[[Any], Any]]] = {
    "bool": (lambda v: value_kind(v) == "bool", bool),
    "int": (lambda v: value_kind(v) == "number" and isinstance(v, int), int),
    "float": (lambda v: value_kind(v) == "number", float),
    "str": (lambda v: value_kind(v) == "string", str),
}


class Client:
    """
    Evaluates flags held in the store for users. Every method is thread-safe
    and none raises on bad flag data, unknown flags or missing users; the
    caller's default is returned instead and the reason tells why.
    """

    def __init__(self, store: InMemoryFeatureStore | None = None, config: Config | None = None):
        self._config = config or Config()
        self._logger = self._config.logger
        if store is None:
            store = InMemoryFeatureStore(self._config.store_lock_timeout, self._logger)
        self._store = store
        self._evaluator = Evaluator(
            lambda key: self._store.get(FEATURES, key),
            lambda key: self._store.get(SEGMENTS, key),
            self._logger,
        )

    @property
    def store(self) -> InMemoryFeatureStore:
        return self._store

    def is_initialized(self) -> bool:
        return self._store.initialized

    def _record_eval_metrics(self, key: str, detail: EvaluationDetail, dur: float):
        labels = {
            "flag": key,
            "reason": detail.reason.kind,
            "error_kind": detail.reason.error_kind or "",
        }
        _prom_eval_duration.labels(**labels).observe(dur)

    def _export(self, entries: list[FlagEvaluation]):
        exporter = self._config.exporter
        if exporter is None or not entries:
            return
        try:
            exporter.export(entries)
        except Exception:
            self._logger.exception("Error exporting evaluations")

    def _evaluate(self, key: str, user: User | None, default: Any, value_type: _ValueType | None) -> EvaluationDetail:
        start = time.perf_counter()
        if not self._store.initialized:
            self._logger.warning("evaluating flag %s before the store is initialized", key)

        flag = self._store.get(FEATURES, key)
        prereq_evals: list[FlagEvaluation] = []
        if flag is None:
            self._logger.info("unknown flag %s, returning default value", key)
            detail = EvaluationDetail(default, None, EvaluationReason.error("FLAG_NOT_FOUND"))
        elif user is None or user.key is None:
            self._logger.warning("user or user key is missing when evaluating flag %s, returning default value", key)
            detail = EvaluationDetail(default, None, EvaluationReason.error("USER_NOT_SPECIFIED"))
        else:
            result = self._evaluator.evaluate(flag, user)
            prereq_evals = result.prerequisite_evaluations
            detail = result.detail
            if detail.variation_index is None:
                detail = EvaluationDetail(default, None, detail.reason)
            elif value_type is not None:
                accepts, convert = _value_types[value_type]
                if accepts(detail.value):
                    detail = EvaluationDetail(convert(detail.value), detail.variation_index, detail.reason)
                else:
                    self._logger.error("flag %s evaluated to %r which is not a %s", key, detail.value, value_type)
                    detail = EvaluationDetail(default, None, EvaluationReason.error("WRONG_TYPE"))

        if self._config.record_metrics:
            self._record_eval_metrics(key, detail, time.perf_counter() - start)

        if user is not None and user.key is not None:
            self._export(prereq_evals + [FlagEvaluation.new(flag, key, user, detail, default)])

        return detail

    def variation_detail(self, key: str, user: User | None, default: Any) -> EvaluationDetail:
        """
        Evaluate the flag for the user and return the value, variation index
        and reason. The default is returned as value whenever no variation
        applies or evaluation fails.
        """
        return self._evaluate(key, user, default, None)

    def variation(self, key: str, user: User | None, default: Any) -> Any:
        return self.variation_detail(key, user, default).value

    def bool_variation_detail(self, key: str, user: User | None, default: bool) -> EvaluationDetail:
        return self._evaluate(key, user, default, "bool")

    def bool_variation(self, key: str, user: User | None, default: bool) -> bool:
        return self.bool_variation_detail(key, user, default).value

    def int_variation_detail(self, key: str, user: User | None, default: int) -> EvaluationDetail:
        return self._evaluate(key, user, default, "int")

    def int_variation(self, key: str, user: User | None, default: int) -> int:
        return self.int_variation_detail(key, user, default).value

    def float_variation_detail(self, key: str, user: User | None, default: float) -> EvaluationDetail:
        return self._evaluate(key, user, default, "float")

    def float_variation(self, key: str, user: User | None, default: float) -> float:
        return self.float_variation_detail(key, user, default).value

    def string_variation_detail(self, key: str, user: User | None, default: str) -> EvaluationDetail:
        return self._evaluate(key, user, default, "str")

    def string_variation(self, key: str, user: User | None, default: str) -> str:
        return self.string_variation_detail(key, user, default).value

    def json_variation_detail(self, key: str, user: User | None, default: Any) -> EvaluationDetail:
        return self._evaluate(key, user, default, None)

    def json_variation(self, key: str, user: User | None, default: Any) -> Any:
        return self.json_variation_detail(key, user, default).value

    def all_flags_state(self, user: User | None, with_reasons: bool = False, client_side_only: bool = False) -> FeatureFlagsState:
        """
        Evaluate every flag in the store for the user without exporting
        evaluation records.
        """
        if user is None or user.key is None:
            self._logger.warning("user or user key is missing in all_flags_state")
            return FeatureFlagsState(valid=False)
        if not self._store.initialized:
            self._logger.warning("all_flags_state called before the store is initialized")
            return FeatureFlagsState(valid=False)

        state = FeatureFlagsState()
        for flag in self._store.all(FEATURES).values():
            if client_side_only and not flag.client_side:
                continue
            state.add_flag(flag, self._evaluator.evaluate(flag, user).detail, with_reasons)
        return state
