import unittest
from unittest.mock import patch

from featarget import (
    FEATURES,
    SEGMENTS,
    DataSet,
    EvaluationDetail,
    EvaluationReason,
    Evaluator,
    FeatureFlag,
    InMemoryFeatureStore,
    User,
)


def _flag(key="feature", **kw):
    return FeatureFlag.from_dict({"key": key, "version": 1, "salt": "salty", **kw})


class TestEvaluator(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryFeatureStore()
        self.store.init({})
        self.evaluator = Evaluator(
            lambda key: self.store.get(FEATURES, key),
            lambda key: self.store.get(SEGMENTS, key),
        )

    def _load(self, d):
        DataSet.from_dict(d).load_into(self.store)

    def test_off(self):
        cases = [
            ("off variation", {"offVariation": 1}, EvaluationDetail("b", 1, EvaluationReason.off())),
            ("no off variation", {}, EvaluationDetail(None, None, EvaluationReason.off())),
            ("off variation too high", {"offVariation": 2}, EvaluationDetail(None, None, EvaluationReason.error("MALFORMED_FLAG"))),
            ("negative off variation", {"offVariation": -1}, EvaluationDetail(None, None, EvaluationReason.error("MALFORMED_FLAG"))),
        ]
        for name, extra, expected in cases:
            with self.subTest(name):
                f = _flag(on=False, fallthrough={"variation": 0}, variations=["a", "b"], **extra)
                result = self.evaluator.evaluate(f, User("u"))
                self.assertEqual(result.detail, expected)
                self.assertEqual(result.prerequisite_evaluations, [])

    def test_fallthrough(self):
        f = _flag(on=True, fallthrough={"variation": 0}, variations=["fall", "other"])
        result = self.evaluator.evaluate(f, User("u"))
        self.assertEqual(result.detail, EvaluationDetail("fall", 0, EvaluationReason.fallthrough()))

    def test_malformed_fallthrough(self):
        cases = [
            ("neither variation nor rollout", {}),
            ("variation out of range", {"variation": 5}),
            ("empty rollout", {"rollout": {"variations": []}}),
        ]
        for name, fallthrough in cases:
            with self.subTest(name):
                f = _flag(on=True, fallthrough=fallthrough, variations=["a", "b"])
                detail = self.evaluator.evaluate(f, User("u")).detail
                self.assertEqual(detail, EvaluationDetail(None, None, EvaluationReason.error("MALFORMED_FLAG")))

    def test_target_match(self):
        f = _flag(
            on=True,
            targets=[{"variation": 1, "values": ["userkey"]}],
            fallthrough={"variation": 0},
            variations=["fall", "on"],
        )
        self.assertEqual(
            self.evaluator.evaluate(f, User("userkey")).detail,
            EvaluationDetail("on", 1, EvaluationReason.target_match()),
        )
        self.assertEqual(
            self.evaluator.evaluate(f, User("other")).detail,
            EvaluationDetail("fall", 0, EvaluationReason.fallthrough()),
        )

    def test_target_variation_out_of_range(self):
        f = _flag(
            on=True,
            targets=[{"variation": 9, "values": ["userkey"]}],
            fallthrough={"variation": 0},
            variations=["fall", "on"],
        )
        detail = self.evaluator.evaluate(f, User("userkey")).detail
        self.assertEqual(detail.reason, EvaluationReason.error("MALFORMED_FLAG"))

    def test_rules(self):
        f = _flag(
            on=True,
            targets=[{"variation": 0, "values": ["targeted"]}],
            rules=[
                {
                    "id": "r0",
                    "clauses": [{"attribute": "email", "op": "endsWith", "values": ["@a.com"]}],
                    "variation": 1,
                },
                {
                    "id": "r1",
                    "clauses": [
                        {"attribute": "country", "op": "in", "values": ["au"]},
                        {"attribute": "name", "op": "in", "values": ["Bob"], "negate": True},
                    ],
                    "variation": 2,
                },
                {
                    "clauses": [{"attribute": "country", "op": "in", "values": ["nz"]}],
                    "variation": 7,
                },
            ],
            fallthrough={"variation": 0},
            variations=["zero", "one", "two"],
        )
        cases = [
            ("targets before rules", User("targeted", email="x@a.com"), EvaluationDetail("zero", 0, EvaluationReason.target_match())),
            ("first rule", User("u", email="x@a.com", country="au"), EvaluationDetail("one", 1, EvaluationReason.rule_match(0, "r0"))),
            ("second rule", User("u", country="au", name="Alice"), EvaluationDetail("two", 2, EvaluationReason.rule_match(1, "r1"))),
            ("negated clause fails", User("u", country="au", name="Bob"), EvaluationDetail("zero", 0, EvaluationReason.fallthrough())),
            ("malformed rule", User("u", country="nz"), EvaluationDetail(None, None, EvaluationReason.error("MALFORMED_FLAG"))),
            ("no rule", User("u"), EvaluationDetail("zero", 0, EvaluationReason.fallthrough())),
        ]
        for name, user, expected in cases:
            with self.subTest(name):
                self.assertEqual(self.evaluator.evaluate(f, user).detail, expected)

    def test_rule_with_rollout(self):
        f = _flag(
            on=True,
            rules=[
                {
                    "id": "r0",
                    "clauses": [{"attribute": "key", "op": "in", "values": ["u"]}],
                    "rollout": {"variations": [{"variation": 0, "weight": 50000}, {"variation": 1, "weight": 50000}]},
                }
            ],
            fallthrough={"variation": 0},
            variations=["a", "b"],
        )
        with patch("featarget._evaluator.bucket_user", return_value=0.5):
            detail = self.evaluator.evaluate(f, User("u")).detail
        self.assertEqual(detail, EvaluationDetail("b", 1, EvaluationReason.rule_match(0, "r0")))

    def test_segment_rule(self):
        self._load(
            {
                "segments": {
                    "beta": {"version": 1, "included": ["u1"], "excluded": ["u2"]},
                },
            }
        )
        f = _flag(
            on=True,
            rules=[
                {
                    "id": "in-beta",
                    "clauses": [{"attribute": "", "op": "segmentMatch", "values": ["beta", "missing"]}],
                    "variation": 1,
                }
            ],
            fallthrough={"variation": 0},
            variations=[False, True],
        )
        self.assertEqual(self.evaluator.evaluate(f, User("u1")).detail.value, True)
        self.assertEqual(self.evaluator.evaluate(f, User("u2")).detail.value, False)

    def test_user_not_specified(self):
        f = _flag(on=True, fallthrough={"variation": 0}, variations=["a"])
        for user in [None, User(None)]:
            with self.subTest(user=user):
                detail = self.evaluator.evaluate(f, user).detail
                self.assertEqual(detail, EvaluationDetail(None, None, EvaluationReason.error("USER_NOT_SPECIFIED")))

    def test_prerequisite_chain(self):
        self._load(
            {
                "flags": {
                    "a": {
                        "on": True,
                        "prerequisites": [{"key": "b", "variation": 1}],
                        "fallthrough": {"variation": 1},
                        "offVariation": 0,
                        "variations": ["off", "on"],
                    },
                    "b": {
                        "on": True,
                        "version": 2,
                        "prerequisites": [{"key": "c", "variation": 1}],
                        "fallthrough": {"variation": 1},
                        "offVariation": 0,
                        "variations": ["off", "on"],
                    },
                    "c": {
                        "on": True,
                        "version": 3,
                        "fallthrough": {"variation": 1},
                        "variations": ["off", "on"],
                    },
                }
            }
        )
        result = self.evaluator.evaluate(self.store.get(FEATURES, "a"), User("u"))
        self.assertEqual(result.detail, EvaluationDetail("on", 1, EvaluationReason.fallthrough()))
        evals = result.prerequisite_evaluations
        self.assertEqual([(e.flag, e.prereq_of, e.version, e.value) for e in evals], [("c", "b", 3, "on"), ("b", "a", 2, "on")])
        for e in evals:
            self.assertEqual(e.user_key, "u")
            self.assertEqual(e.reason, EvaluationReason.fallthrough())

    def test_prerequisite_failures(self):
        self._load(
            {
                "flags": {
                    "on-0": {"on": True, "fallthrough": {"variation": 0}, "variations": ["x", "y"]},
                    "on-1": {"on": True, "fallthrough": {"variation": 1}, "variations": ["x", "y"]},
                    "off-1": {"on": False, "offVariation": 1, "variations": ["x", "y"]},
                }
            }
        )
        cases = [
            ("wrong variation", [("on-0", 1), ("on-1", 1)], "on-0", ["on-0", "on-1"]),
            ("off prerequisite", [("on-1", 1), ("off-1", 1)], "off-1", ["on-1", "off-1"]),
            ("first failure is reported", [("off-1", 1), ("on-0", 1)], "off-1", ["off-1", "on-0"]),
            ("missing prerequisite stops", [("on-0", 1), ("missing", 1), ("on-1", 1)], "on-0", ["on-0"]),
            ("missing first", [("missing", 1), ("on-1", 1)], "missing", []),
        ]
        for name, prereqs, failed_key, recorded in cases:
            with self.subTest(name):
                f = _flag(
                    on=True,
                    prerequisites=[{"key": k, "variation": v} for k, v in prereqs],
                    fallthrough={"variation": 1},
                    offVariation=0,
                    variations=["off", "on"],
                )
                result = self.evaluator.evaluate(f, User("u"))
                self.assertEqual(result.detail, EvaluationDetail("off", 0, EvaluationReason.prerequisite_failed(failed_key)))
                self.assertEqual([e.flag for e in result.prerequisite_evaluations], recorded)
                for e in result.prerequisite_evaluations:
                    self.assertEqual(e.prereq_of, "feature")

    def test_off_prerequisite_record(self):
        self._load(
            {
                "flags": {
                    "off-with-value": {"version": 4, "on": False, "offVariation": 1, "variations": ["x", "y"]},
                    "off-without-value": {"version": 6, "on": False, "variations": ["x", "y"]},
                }
            }
        )
        cases = [
            ("off-with-value", "y", 1, 4),
            ("off-without-value", None, None, 6),
        ]
        for key, value, index, version in cases:
            with self.subTest(key):
                f = _flag(
                    on=True,
                    prerequisites=[{"key": key, "variation": 1}],
                    fallthrough={"variation": 1},
                    offVariation=0,
                    variations=["off", "on"],
                )
                result = self.evaluator.evaluate(f, User("u"))
                self.assertEqual(result.detail.reason, EvaluationReason.prerequisite_failed(key))
                (e,) = result.prerequisite_evaluations
                self.assertEqual((e.flag, e.value, e.variation_index, e.version), (key, value, index, version))
                self.assertEqual(e.reason, EvaluationReason.off())

    def test_prerequisite_cycle(self):
        self._load(
            {
                "flags": {
                    "a": {
                        "on": True,
                        "prerequisites": [{"key": "b", "variation": 0}],
                        "fallthrough": {"variation": 0},
                        "variations": ["x"],
                    },
                    "b": {
                        "on": True,
                        "prerequisites": [{"key": "a", "variation": 0}],
                        "fallthrough": {"variation": 0},
                        "variations": ["x"],
                    },
                    "self": {
                        "on": True,
                        "prerequisites": [{"key": "self", "variation": 0}],
                        "fallthrough": {"variation": 0},
                        "variations": ["x"],
                    },
                }
            }
        )
        for key in ["a", "b", "self"]:
            with self.subTest(key=key):
                with self.assertLogs("featarget._evaluator", level="ERROR"):
                    detail = self.evaluator.evaluate(self.store.get(FEATURES, key), User("u")).detail
                self.assertEqual(detail, EvaluationDetail(None, None, EvaluationReason.error("MALFORMED_FLAG")))

    def test_diamond_prerequisites_are_not_a_cycle(self):
        self._load(
            {
                "flags": {
                    "top": {
                        "on": True,
                        "prerequisites": [{"key": "left", "variation": 0}, {"key": "right", "variation": 0}],
                        "fallthrough": {"variation": 0},
                        "variations": ["x"],
                    },
                    "left": {
                        "on": True,
                        "prerequisites": [{"key": "bottom", "variation": 0}],
                        "fallthrough": {"variation": 0},
                        "variations": ["x"],
                    },
                    "right": {
                        "on": True,
                        "prerequisites": [{"key": "bottom", "variation": 0}],
                        "fallthrough": {"variation": 0},
                        "variations": ["x"],
                    },
                    "bottom": {"on": True, "fallthrough": {"variation": 0}, "variations": ["x"]},
                }
            }
        )
        result = self.evaluator.evaluate(self.store.get(FEATURES, "top"), User("u"))
        self.assertEqual(result.detail, EvaluationDetail("x", 0, EvaluationReason.fallthrough()))
        self.assertEqual(
            [(e.flag, e.prereq_of) for e in result.prerequisite_evaluations],
            [("bottom", "left"), ("left", "top"), ("bottom", "right"), ("right", "top")],
        )

    def test_unexpected_exception(self):
        f = _flag(on=True, fallthrough={"variation": 0}, variations=["a"])
        evaluator = Evaluator(lambda key: None, lambda key: None)
        with patch.object(Evaluator, "_variation_or_rollout", side_effect=RuntimeError("boom")):
            with self.assertLogs("featarget._evaluator", level="ERROR"):
                detail = evaluator.evaluate(f, User("u")).detail
        self.assertEqual(detail, EvaluationDetail(None, None, EvaluationReason.error("EXCEPTION")))

    def test_track_events(self):
        f = _flag(
            on=True,
            trackEventsFallthrough=True,
            rules=[
                {"id": "tracked", "clauses": [{"attribute": "key", "op": "in", "values": ["a"]}], "variation": 0, "trackEvents": True},
                {"id": "untracked", "clauses": [{"attribute": "key", "op": "in", "values": ["b"]}], "variation": 0},
            ],
            fallthrough={"variation": 0},
            variations=["x"],
        )
        self.store.upsert(FEATURES, _flag("parent", on=True, prerequisites=[{"key": "feature", "variation": 0}], fallthrough={"variation": 0}, variations=["x"]))
        self.store.upsert(FEATURES, f)
        parent = self.store.get(FEATURES, "parent")
        for key, tracked in [("a", True), ("b", False), ("c", True)]:
            with self.subTest(key=key):
                evals = self.evaluator.evaluate(parent, User(key)).prerequisite_evaluations
                self.assertEqual(len(evals), 1)
                self.assertEqual(evals[0].track_events, tracked)

    def test_round_trip(self):
        d = {
            "flags": {
                "f": {
                    "version": 4,
                    "on": True,
                    "salt": "s",
                    "targets": [{"variation": 0, "values": ["t"]}],
                    "rules": [
                        {
                            "id": "r",
                            "clauses": [{"attribute": "", "op": "segmentMatch", "values": ["seg"]}],
                            "rollout": {"variations": [{"variation": 0, "weight": 60000}, {"variation": 1, "weight": 40000}]},
                        }
                    ],
                    "fallthrough": {"rollout": {"variations": [{"variation": 1, "weight": 100000}], "bucketBy": "email"}},
                    "offVariation": 0,
                    "variations": ["a", "b"],
                }
            },
            "segments": {"seg": {"version": 1, "salt": "ss", "rules": [{"clauses": [], "weight": 50000}]}},
        }
        original = DataSet.from_dict(d)
        copies = [DataSet.from_dict(original.to_dict()), DataSet.from_bytes(original.to_bytes())]
        users = [User("t")] + [User(f"user-{i}", email=f"{i}@x.com") for i in range(50)]
        original.load_into(self.store)
        expected = [self.evaluator.evaluate(self.store.get(FEATURES, "f"), u).detail for u in users]
        for copy in copies:
            copy.load_into(self.store)
            actual = [self.evaluator.evaluate(self.store.get(FEATURES, "f"), u).detail for u in users]
            self.assertEqual(actual, expected)
