from __future__ import annotations
import os
import json
import dill
import jsonschema
from collections import defaultdict
from typing import TYPE_CHECKING, Any, TypeAlias

from ._operators import value_kind

if TYPE_CHECKING:
    from ._store import InMemoryFeatureStore


DictData: TypeAlias = dict[str, Any]


with open(os.path.join(os.path.dirname(__file__), "data_schema.json")) as f:
    _data_schema = json.load(f)


def _item_schema(name: str) -> DictData:
    return {
        "$schema": _data_schema["$schema"],
        "$defs": _data_schema["$defs"],
        "$ref": f"#/$defs/{name}",
    }


_flag_schema = _item_schema("flag")
_segment_schema = _item_schema("segment")


class User:
    """
    The subject of an evaluation. Only the key is mandatory. Built-in
    attributes are addressed in clauses by their camelCase JSON names, any
    other attribute name is looked up in custom.
    """

    __slots__ = (
        "key",
        "secondary",
        "ip",
        "country",
        "email",
        "first_name",
        "last_name",
        "avatar",
        "name",
        "anonymous",
        "custom",
    )
    key: str | None
    secondary: str | None
    ip: str | None
    country: str | None
    email: str | None
    first_name: str | None
    last_name: str | None
    avatar: str | None
    name: str | None
    anonymous: bool | None
    custom: dict[str, Any]

    # JSON attribute name -> slot name
    _builtin_attributes = {
        "key": "key",
        "secondary": "secondary",
        "ip": "ip",
        "country": "country",
        "email": "email",
        "firstName": "first_name",
        "lastName": "last_name",
        "avatar": "avatar",
        "name": "name",
        "anonymous": "anonymous",
    }

    def __init__(
        self,
        key: str | None,
        *,
        secondary: str | None = None,
        ip: str | None = None,
        country: str | None = None,
        email: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        avatar: str | None = None,
        name: str | None = None,
        anonymous: bool | None = None,
        custom: dict[str, Any] | None = None,
    ):
        for attr, v in [
            ("key", key),
            ("secondary", secondary),
            ("ip", ip),
            ("country", country),
            ("email", email),
            ("first_name", first_name),
            ("last_name", last_name),
            ("avatar", avatar),
            ("name", name),
        ]:
            if v is not None and not isinstance(v, str):
                raise TypeError(f"{attr} must be a string, not {type(v).__name__}")
        if anonymous is not None and not isinstance(anonymous, bool):
            raise TypeError(f"anonymous must be a bool, not {type(anonymous).__name__}")
        custom = {} if custom is None else dict(custom)
        self._validate_custom_attributes(custom)
        self.key = key
        self.secondary = secondary
        self.ip = ip
        self.country = country
        self.email = email
        self.first_name = first_name
        self.last_name = last_name
        self.avatar = avatar
        self.name = name
        self.anonymous = anonymous
        self.custom = custom

    @staticmethod
    def _validate_custom_attributes(custom: dict[str, Any]):
        for k, v in custom.items():
            if not isinstance(k, str):
                raise TypeError(f"attribute key must be a string, not {type(k).__name__}")
            # value_kind raises TypeError for anything that isn't a JSON value.
            if value_kind(v) == "array":
                for e in v:
                    value_kind(e)

    def get(self, attribute: str) -> Any:
        """
        Value of the given attribute for evaluation or None if the user has
        no value for it.
        """
        slot = self._builtin_attributes.get(attribute)
        if slot is not None:
            return getattr(self, slot)
        return self.custom.get(attribute)

    @staticmethod
    def from_dict(d: DictData) -> User:
        if not isinstance(d, dict):
            raise TypeError(f"user must be a dict, not {type(d).__name__}")
        kwargs = {slot: d.get(attr) for attr, slot in User._builtin_attributes.items() if attr != "key"}
        return User(d.get("key"), custom=d.get("custom"), **kwargs)

    def to_dict(self) -> DictData:
        d: DictData = {}
        for attr, slot in self._builtin_attributes.items():
            v = getattr(self, slot)
            if v is not None:
                d[attr] = v
        if self.custom:
            d["custom"] = dict(self.custom)
        return d

    def __repr__(self):
        return f"User({self.key!r})"


class Clause:
    __slots__ = ("attribute", "op", "values", "negate")
    attribute: str
    op: str
    values: tuple[Any, ...]
    negate: bool

    @staticmethod
    def from_dict(d: DictData) -> Clause:
        c = Clause()
        c.attribute = d["attribute"]
        c.op = d["op"]
        c.values = tuple(d.get("values") or ())
        c.negate = d.get("negate", False)
        return c

    def to_dict(self) -> DictData:
        return {
            "attribute": self.attribute,
            "op": self.op,
            "values": list(self.values),
            "negate": self.negate,
        }


class WeightedVariation:
    __slots__ = ("variation", "weight")
    variation: int
    # In hundred-thousandths, 100000 is 100%.
    weight: int

    @staticmethod
    def from_dict(d: DictData) -> WeightedVariation:
        wv = WeightedVariation()
        wv.variation = d["variation"]
        wv.weight = d["weight"]
        return wv

    def to_dict(self) -> DictData:
        return {"variation": self.variation, "weight": self.weight}


class Rollout:
    __slots__ = ("variations", "bucket_by")
    variations: tuple[WeightedVariation, ...]
    bucket_by: str | None

    @staticmethod
    def from_dict(d: DictData) -> Rollout:
        r = Rollout()
        r.variations = tuple(WeightedVariation.from_dict(v) for v in d.get("variations") or ())
        r.bucket_by = d.get("bucketBy")
        return r

    def to_dict(self) -> DictData:
        d: DictData = {"variations": [v.to_dict() for v in self.variations]}
        if self.bucket_by is not None:
            d["bucketBy"] = self.bucket_by
        return d


class VariationOrRollout:
    """
    Either a fixed variation index or a percentage rollout. Having neither is
    a malformed flag, reported at evaluation time.
    """

    __slots__ = ("variation", "rollout")
    variation: int | None
    rollout: Rollout | None

    def _load(self, d: DictData | None):
        d = d or {}
        self.variation = d.get("variation")
        self.rollout = Rollout.from_dict(d["rollout"]) if d.get("rollout") is not None else None

    @staticmethod
    def from_dict(d: DictData | None) -> VariationOrRollout:
        vr = VariationOrRollout()
        vr._load(d)
        return vr

    def to_dict(self) -> DictData:
        d: DictData = {}
        if self.variation is not None:
            d["variation"] = self.variation
        if self.rollout is not None:
            d["rollout"] = self.rollout.to_dict()
        return d


class Rule(VariationOrRollout):
    __slots__ = ("id", "clauses", "track_events")
    id: str | None
    clauses: tuple[Clause, ...]
    track_events: bool

    @staticmethod
    def from_dict(d: DictData) -> Rule:
        r = Rule()
        r._load(d)
        r.id = d.get("id")
        r.clauses = tuple(Clause.from_dict(c) for c in d.get("clauses") or ())
        r.track_events = d.get("trackEvents", False)
        return r

    def to_dict(self) -> DictData:
        d = super().to_dict()
        if self.id is not None:
            d["id"] = self.id
        d["clauses"] = [c.to_dict() for c in self.clauses]
        d["trackEvents"] = self.track_events
        return d


class Prerequisite:
    __slots__ = ("key", "variation")
    key: str
    variation: int

    @staticmethod
    def from_dict(d: DictData) -> Prerequisite:
        p = Prerequisite()
        p.key = d["key"]
        p.variation = d["variation"]
        return p

    def to_dict(self) -> DictData:
        return {"key": self.key, "variation": self.variation}


class Target:
    __slots__ = ("values", "variation")
    values: frozenset[str]
    variation: int

    @staticmethod
    def from_dict(d: DictData) -> Target:
        t = Target()
        t.values = frozenset(d.get("values") or ())
        t.variation = d["variation"]
        return t

    def to_dict(self) -> DictData:
        return {"values": sorted(self.values), "variation": self.variation}


class FeatureFlag:
    """
    A flag as delivered by the update processor. Instances are treated as
    immutable once they are stored.
    """

    __slots__ = (
        "key",
        "version",
        "on",
        "prerequisites",
        "salt",
        "targets",
        "rules",
        "fallthrough",
        "off_variation",
        "variations",
        "deleted",
        "track_events",
        "track_events_fallthrough",
        "debug_events_until_date",
        "client_side",
    )
    key: str
    version: int
    on: bool
    prerequisites: tuple[Prerequisite, ...]
    salt: str
    targets: tuple[Target, ...]
    rules: tuple[Rule, ...]
    fallthrough: VariationOrRollout
    off_variation: int | None
    variations: tuple[Any, ...]
    deleted: bool
    track_events: bool
    track_events_fallthrough: bool
    debug_events_until_date: int | None
    client_side: bool

    @staticmethod
    def from_dict(d: DictData, validate: bool = True) -> FeatureFlag:
        if validate:
            jsonschema.validate(d, _flag_schema)
        f = FeatureFlag()
        f.key = d["key"]
        f.version = d.get("version", 0)
        f.on = d.get("on", False)
        f.prerequisites = tuple(Prerequisite.from_dict(p) for p in d.get("prerequisites") or ())
        f.salt = d.get("salt") or ""
        f.targets = tuple(Target.from_dict(t) for t in d.get("targets") or ())
        f.rules = tuple(Rule.from_dict(r) for r in d.get("rules") or ())
        f.fallthrough = VariationOrRollout.from_dict(d.get("fallthrough"))
        f.off_variation = d.get("offVariation")
        f.variations = tuple(d.get("variations") or ())
        f.deleted = d.get("deleted", False)
        f.track_events = d.get("trackEvents", False)
        f.track_events_fallthrough = d.get("trackEventsFallthrough", False)
        f.debug_events_until_date = d.get("debugEventsUntilDate")
        f.client_side = d.get("clientSide", False)
        return f

    @staticmethod
    def tombstone(key: str, version: int) -> FeatureFlag:
        return FeatureFlag.from_dict({"key": key, "version": version, "deleted": True}, validate=False)

    def to_dict(self) -> DictData:
        return {
            "key": self.key,
            "version": self.version,
            "on": self.on,
            "prerequisites": [p.to_dict() for p in self.prerequisites],
            "salt": self.salt,
            "targets": [t.to_dict() for t in self.targets],
            "rules": [r.to_dict() for r in self.rules],
            "fallthrough": self.fallthrough.to_dict(),
            "offVariation": self.off_variation,
            "variations": list(self.variations),
            "deleted": self.deleted,
            "trackEvents": self.track_events,
            "trackEventsFallthrough": self.track_events_fallthrough,
            "debugEventsUntilDate": self.debug_events_until_date,
            "clientSide": self.client_side,
        }

    def __repr__(self):
        return f"FeatureFlag({self.key!r}, version={self.version})"


class SegmentRule:
    __slots__ = ("clauses", "weight", "bucket_by")
    clauses: tuple[Clause, ...]
    weight: int | None
    bucket_by: str | None

    @staticmethod
    def from_dict(d: DictData) -> SegmentRule:
        r = SegmentRule()
        r.clauses = tuple(Clause.from_dict(c) for c in d.get("clauses") or ())
        r.weight = d.get("weight")
        r.bucket_by = d.get("bucketBy")
        return r

    def to_dict(self) -> DictData:
        d: DictData = {"clauses": [c.to_dict() for c in self.clauses]}
        if self.weight is not None:
            d["weight"] = self.weight
        if self.bucket_by is not None:
            d["bucketBy"] = self.bucket_by
        return d


class Segment:
    __slots__ = ("key", "version", "included", "excluded", "salt", "rules", "deleted")
    key: str
    version: int
    included: frozenset[str]
    excluded: frozenset[str]
    salt: str
    rules: tuple[SegmentRule, ...]
    deleted: bool

    @staticmethod
    def from_dict(d: DictData, validate: bool = True) -> Segment:
        if validate:
            jsonschema.validate(d, _segment_schema)
        s = Segment()
        s.key = d["key"]
        s.version = d.get("version", 0)
        s.included = frozenset(d.get("included") or ())
        s.excluded = frozenset(d.get("excluded") or ())
        s.salt = d.get("salt") or ""
        s.rules = tuple(SegmentRule.from_dict(r) for r in d.get("rules") or ())
        s.deleted = d.get("deleted", False)
        return s

    @staticmethod
    def tombstone(key: str, version: int) -> Segment:
        return Segment.from_dict({"key": key, "version": version, "deleted": True}, validate=False)

    def to_dict(self) -> DictData:
        return {
            "key": self.key,
            "version": self.version,
            "included": sorted(self.included),
            "excluded": sorted(self.excluded),
            "salt": self.salt,
            "rules": [r.to_dict() for r in self.rules],
            "deleted": self.deleted,
        }

    def __repr__(self):
        return f"Segment({self.key!r}, version={self.version})"


VersionedItem: TypeAlias = FeatureFlag | Segment


class VersionedDataKind:
    """
    A namespace of versioned items in the store.
    """

    __slots__ = ("namespace", "item_type")
    namespace: str
    item_type: type[FeatureFlag] | type[Segment]

    def __init__(self, namespace: str, item_type: type[FeatureFlag] | type[Segment]):
        self.namespace = namespace
        self.item_type = item_type

    def from_dict(self, d: DictData) -> VersionedItem:
        return self.item_type.from_dict(d)

    def make_deleted_item(self, key: str, version: int) -> VersionedItem:
        return self.item_type.tombstone(key, version)

    def __repr__(self):
        return f"VersionedDataKind({self.namespace!r})"


FEATURES = VersionedDataKind("features", FeatureFlag)
SEGMENTS = VersionedDataKind("segments", Segment)


def merge_data(*data: DictData) -> DictData:
    """
    Merge the given data set dicts into one. Order is not important. Values
    are shallow copied. The same key defined twice within a namespace raises
    ValueError.

    Validity of the result is only checked when it's loaded with
    DataSet.from_dict.
    """
    merged = defaultdict(dict)
    for d in data:
        for namespace, items in d.items():
            m = merged[namespace]
            intersection = m.keys() & items.keys()
            if intersection:
                raise ValueError(f"Duplicate keys in {namespace}: {intersection}")
            m.update(items)
    return dict(merged)


def _flag_with_value(key: str, value: Any) -> DictData:
    return {
        "key": key,
        "version": 1,
        "on": True,
        "fallthrough": {"variation": 0},
        "variations": [value],
    }


class DataSet:
    """
    A full set of flags and segments, ready to be loaded into a store.
    """

    __slots__ = ("flags", "segments")
    flags: dict[str, FeatureFlag]
    segments: dict[str, Segment]

    @staticmethod
    def from_dict(d: DictData) -> DataSet:
        """
        Build a data set from a dict of the shape
        {"flags": {...}, "flagValues": {...}, "segments": {...}}. Keys of
        "flags" and "segments" name the items; an item's own "key", when
        present, must agree. "flagValues" maps a key to the constant value of
        a flag that is on.
        """
        jsonschema.validate(d, _data_schema)

        flags: dict[str, FeatureFlag] = {}
        for key, f in d.get("flags", {}).items():
            if f.get("key", key) != key:
                raise ValueError(f"flag {key} has mismatching key {f['key']}")
            flags[key] = FeatureFlag.from_dict({**f, "key": key}, validate=False)

        for key, v in d.get("flagValues", {}).items():
            if key in flags:
                raise ValueError(f"flag {key} defined in both flags and flagValues")
            value_kind(v)
            flags[key] = FeatureFlag.from_dict(_flag_with_value(key, v), validate=False)

        segments: dict[str, Segment] = {}
        for key, s in d.get("segments", {}).items():
            if s.get("key", key) != key:
                raise ValueError(f"segment {key} has mismatching key {s['key']}")
            segments[key] = Segment.from_dict({**s, "key": key}, validate=False)

        ds = DataSet()
        ds.flags = flags
        ds.segments = segments
        return ds

    def to_dict(self) -> DictData:
        return {
            "flags": {k: f.to_dict() for k, f in self.flags.items()},
            "segments": {k: s.to_dict() for k, s in self.segments.items()},
        }

    @staticmethod
    def from_bytes(b: bytes) -> DataSet:
        obj = dill.loads(b)
        assert isinstance(obj, DataSet)
        return obj

    def to_bytes(self) -> bytes:
        return dill.dumps(self)

    def all_data(self) -> dict[VersionedDataKind, dict[str, VersionedItem]]:
        return {FEATURES: dict(self.flags), SEGMENTS: dict(self.segments)}

    def load_into(self, store: InMemoryFeatureStore):
        """
        Replace the entire content of the store with this data set.
        """
        store.init(self.all_data())
