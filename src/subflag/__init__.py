from __future__ import annotations
import re
import logging
import dill
import os
import time
import json
import jsonschema
import mmh3
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias
from copy import deepcopy
from hashlib import sha256

from prometheus_client import Counter, Histogram


logger = logging.getLogger(__name__)

Value: TypeAlias = bool | str | int | float | dict[str, Any]
ValueType: TypeAlias = Literal["boolean", "string", "integer", "float", "object"]
Reason: TypeAlias = Literal[
    "DEFAULT",
    "OVERRIDE",
    "SEGMENT_MATCH",
    "PERCENTAGE_ROLLOUT",
    "TARGETING_MATCH",
    "ERROR",
]
FlagStatus: TypeAlias = Literal["ACTIVE", "DEPRECATED"]
ErrorCode: TypeAlias = Literal[
    "FLAG_NOT_FOUND",
    "TYPE_MISMATCH",
    "PARSE_ERROR",
    "INVALID_CONTEXT",
    "GENERAL",
]
Attributes: TypeAlias = dict[str, Any]
DictConfig: TypeAlias = dict[str, Any]
ContextLike: TypeAlias = "EvaluationContext | Mapping[str, Any] | None"
KeyGenerator: TypeAlias = Callable[[str, "EvaluationContext | None"], str]

VALUE_TYPES = ("boolean", "string", "integer", "float", "object")
REASONS = (
    "DEFAULT",
    "OVERRIDE",
    "SEGMENT_MATCH",
    "PERCENTAGE_ROLLOUT",
    "TARGETING_MATCH",
    "ERROR",
)
FLAG_STATUSES = ("ACTIVE", "DEPRECATED")
DEFAULT_TTL_SECONDS = 60
NO_CONTEXT = "no_context"

_flag_key_re = re.compile(r"^[a-z0-9\-]+$")


# Errors


class SubflagError(Exception):
    """
    Base class of all errors raised by subflag. Each error carries the
    OpenFeature error code it is reported as when a flag resolution fails.
    """

    error_code: ErrorCode = "GENERAL"


class FlagNotFoundError(SubflagError):
    error_code = "FLAG_NOT_FOUND"

    def __init__(self, flag_key: str, details: str | None = None):
        self.flag_key = flag_key
        msg = f"Flag not found: {flag_key}"
        if details:
            msg += f": {details}"
        super().__init__(msg)


class TypeMismatchError(SubflagError):
    error_code = "TYPE_MISMATCH"

    def __init__(self, expected_type: str, actual_type: str):
        self.expected_type = expected_type
        self.actual_type = actual_type
        super().__init__(f"Expected {expected_type} but got {actual_type}")


class ConfigurationError(SubflagError):
    """
    Raised for malformed stored values, malformed evaluation responses and
    misuse of the client such as prefetching without a cache.
    """

    error_code = "PARSE_ERROR"


class ApiError(SubflagError):
    """
    Raised by transports when the remote flag service answers with an error.
    """

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"{status_code}: {message}")

    @property
    def error_code(self) -> ErrorCode:  # type: ignore[override]
        if self.status_code in (401, 403):
            return "INVALID_CONTEXT"
        if self.status_code == 404:
            return "FLAG_NOT_FOUND"
        return "GENERAL"


# Evaluation context and results


@dataclass(slots=True)
class EvaluationContext:
    """
    The context a flag is evaluated for. targeting_key identifies the
    user/session/device and drives percentage rollouts. attributes are
    matched by targeting rule conditions.
    """

    targeting_key: str | None = None
    kind: str | None = "user"
    attributes: Attributes = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        """
        A context without a targeting key and without attributes carries no
        targeting information. The kind alone is not meaningful.
        """
        return not self.targeting_key and not self.attributes

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> EvaluationContext:
        """
        Build a context from a flat OpenFeature style mapping. targeting_key
        (or targetingKey) and kind are lifted out, everything else becomes an
        attribute. A nested "attributes" mapping is merged in as well.
        """
        attributes = {str(k): v for k, v in d.items() if k not in ("targeting_key", "targetingKey", "kind", "attributes")}
        nested = d.get("attributes")
        if isinstance(nested, Mapping):
            attributes.update({str(k): v for k, v in nested.items()})
        targeting_key = d.get("targeting_key", d.get("targetingKey"))
        return EvaluationContext(
            targeting_key=None if targeting_key is None else str(targeting_key),
            kind=d.get("kind", "user"),
            attributes=attributes,
        )

    def to_dict(self) -> dict[str, Any]:
        """
        The camelCase wire form sent to the remote flag service.
        """
        d: dict[str, Any] = {}
        if self.targeting_key:
            d["targetingKey"] = self.targeting_key
        if self.kind:
            d["kind"] = self.kind
        if self.attributes:
            d["attributes"] = dict(self.attributes)
        return d


def _coerce_context(context: ContextLike) -> EvaluationContext | None:
    if context is None or isinstance(context, EvaluationContext):
        return context
    if isinstance(context, Mapping):
        return EvaluationContext.from_dict(context)
    raise TypeError(f"context must be an EvaluationContext or a mapping, not {type(context).__name__}")


@dataclass(frozen=True, slots=True)
class EvaluationResult:
    """
    The outcome of evaluating a single flag. Results are never mutated after
    they are created, so they are safe to share through caches.
    """

    flag_key: str
    value: Any
    variant: str
    reason: Reason
    flag_status: FlagStatus | None = None

    @property
    def is_deprecated(self) -> bool:
        return self.flag_status == "DEPRECATED"

    def to_dict(self) -> dict[str, Any]:
        d = {
            "flagKey": self.flag_key,
            "value": self.value,
            "variant": self.variant,
            "reason": self.reason,
        }
        if self.flag_status is not None:
            d["flagStatus"] = self.flag_status
        return d

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> EvaluationResult:
        reason = d["reason"]
        if reason not in REASONS:
            raise ValueError(f"unknown evaluation reason {reason!r}")
        status = d.get("flagStatus")
        if isinstance(status, str):
            status = status.upper()
        if status is not None and status not in FLAG_STATUSES:
            # Unknown statuses from newer services are dropped rather than rejected.
            status = None
        return EvaluationResult(
            flag_key=str(d["flagKey"]),
            value=d.get("value"),
            variant=str(d.get("variant") or "default"),
            reason=reason,
            flag_status=status,
        )


@dataclass(frozen=True, slots=True)
class ResolutionDetails:
    """
    Typed resolution handed back to OpenFeature style callers. On any failure
    value is the caller supplied default and error_code says why.
    """

    value: Any
    variant: str | None = None
    reason: Reason = "DEFAULT"
    error_code: ErrorCode | None = None
    error_message: str | None = None
    flag_status: FlagStatus | None = None


# Conditions and rule trees


def _scalar(v: Any) -> tuple[str, Any]:
    """
    Normalize a value for equality tests. Booleans only equal booleans,
    numbers compare numerically and everything else compares as a string.
    """
    if isinstance(v, bool):
        return ("b", v)
    if isinstance(v, (int, float)):
        return ("n", v)
    return ("s", str(v))


def _text(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def _to_number(v: Any) -> int | float | None:
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return v
    if isinstance(v, str):
        try:
            return float(v) if "." in v else int(v)
        except ValueError:
            return None
    return None


def _op_equals(actual, expected, _pattern) -> bool:
    return _scalar(actual) == _scalar(expected)


def _op_in(actual, expected, _pattern) -> bool:
    if not isinstance(expected, (list, tuple, set, frozenset)):
        return False
    a = _scalar(actual)
    return any(_scalar(e) == a for e in expected)


def _op_not_in(actual, expected, _pattern) -> bool:
    # A non-list operand is undecidable so both IN and NOT_IN fail.
    if not isinstance(expected, (list, tuple, set, frozenset)):
        return False
    return not _op_in(actual, expected, _pattern)


def _op_contains(actual, expected, _pattern) -> bool:
    if isinstance(actual, (list, tuple, set, frozenset)):
        e = _scalar(expected)
        return any(_scalar(a) == e for a in actual)
    return _text(expected) in _text(actual)


def _op_starts_with(actual, expected, _pattern) -> bool:
    return _text(actual).startswith(_text(expected))


def _op_ends_with(actual, expected, _pattern) -> bool:
    return _text(actual).endswith(_text(expected))


def _numeric(cmp: Callable[[Any, Any], bool]):
    def op(actual, expected, _pattern) -> bool:
        a = _to_number(actual)
        e = _to_number(expected)
        if a is None or e is None:
            return False
        return cmp(a, e)

    return op


def _op_matches(actual, _expected, pattern: re.Pattern | None) -> bool:
    if pattern is None:
        return False
    return pattern.search(_text(actual)) is not None


_operators: dict[str, Callable[[Any, Any, re.Pattern | None], bool]] = {
    "EQUALS": _op_equals,
    "NOT_EQUALS": lambda a, e, p: not _op_equals(a, e, p),
    "IN": _op_in,
    "NOT_IN": _op_not_in,
    "CONTAINS": _op_contains,
    "NOT_CONTAINS": lambda a, e, p: not _op_contains(a, e, p),
    "STARTS_WITH": _op_starts_with,
    "ENDS_WITH": _op_ends_with,
    "GREATER_THAN": _numeric(lambda a, e: a > e),
    "LESS_THAN": _numeric(lambda a, e: a < e),
    "GREATER_THAN_OR_EQUAL": _numeric(lambda a, e: a >= e),
    "LESS_THAN_OR_EQUAL": _numeric(lambda a, e: a <= e),
    "MATCHES": _op_matches,
}
OPERATORS = tuple(_operators)


class Condition:
    """
    A single predicate over one context attribute. MATCHES patterns are
    compiled once up front. An invalid pattern is kept as None so the
    condition never matches instead of raising on every evaluation.
    """

    __slots__ = ("attribute", "operator", "value", "_pattern")
    attribute: str
    operator: str
    value: Any
    _pattern: re.Pattern | None

    def __init__(self, attribute: str, operator: str, value: Any = None):
        self.attribute = attribute
        self.operator = operator.upper()
        self.value = value
        self._pattern = None
        if self.operator == "MATCHES":
            try:
                self._pattern = re.compile(_text(value))
            except re.error:
                logger.warning("Invalid MATCHES pattern %r on attribute %s", value, attribute)

    def __repr__(self):
        return f"Condition({self.attribute!r}, {self.operator!r}, {self.value!r})"

    def eval(self, context: EvaluationContext) -> bool:
        actual = context.attributes.get(self.attribute)
        if actual is None:
            if self.attribute in ("targetingKey", "targeting_key"):
                actual = context.targeting_key
            elif self.attribute == "kind":
                actual = context.kind
        # Conditions never match on missing data.
        if actual is None:
            return False
        op = _operators.get(self.operator)
        if op is None:
            return False
        return op(actual, self.value, self._pattern)


class RuleNode:
    """
    AND/OR node over conditions and nested nodes. An empty AND is true and
    an empty OR is false. Unknown node types never match.
    """

    __slots__ = ("type", "children")
    type: str
    children: list[Condition | RuleNode]

    def __init__(self, type: str = "AND", children: list[Condition | RuleNode] | None = None):
        self.type = type.upper()
        self.children = list(children or [])

    def __repr__(self):
        return f"RuleNode({self.type!r}, {self.children!r})"

    def eval(self, context: EvaluationContext) -> bool:
        match self.type:
            case "AND":
                return all(c.eval(context) for c in self.children)
            case "OR":
                return any(c.eval(context) for c in self.children)
            case _:
                return False


def evaluate_condition(condition: Condition, context: ContextLike) -> bool:
    """
    Evaluate one condition against the context. Never raises; anything that
    can't be decided evaluates to False.
    """
    ctx = _coerce_context(context)
    if ctx is None:
        return False
    return condition.eval(ctx)


def evaluate_rule_node(node: RuleNode, context: ContextLike) -> bool:
    ctx = _coerce_context(context) or EvaluationContext()
    return node.eval(ctx)


def _compile_condition(d: Mapping[str, Any]) -> Condition:
    operator = str(d["operator"]).upper()
    if operator not in _operators:
        raise ValueError(f"unknown operator {d['operator']!r}")
    return Condition(d["attribute"], operator, d.get("value"))


def _compile_node(d: Mapping[str, Any] | None) -> RuleNode | None:
    """
    Compile an AND/OR block. Returns None for absent or empty blocks which
    are unconditional segment matches.
    """
    if not d:
        return None
    node_type = str(d.get("type") or "AND").upper()
    if node_type not in ("AND", "OR"):
        raise ValueError(f"unknown rule node type {d.get('type')!r}")
    children: list[Condition | RuleNode] = []
    for c in d.get("conditions") or []:
        if "attribute" in c:
            children.append(_compile_condition(c))
        else:
            children.append(_compile_node(c) or RuleNode("AND"))
    return RuleNode(node_type, children)


# Percentage rollouts


def bucket_of(targeting_key: str, flag_key: str) -> int:
    """
    Map the targeting key and flag key to a bucket in [0, 100).

    Stability of this hash is crucial. It decides which targeting keys fall
    into a percentage rollout, so changing it reshuffles every rollout. The
    bucket is the low 32 bits of the x64 128-bit MurmurHash3 (seed 0) read
    as a signed integer, which keeps assignments identical to the other
    subflag SDKs.
    """
    h = mmh3.hash128(f"{targeting_key}:{flag_key}", seed=0, x64arch=True, signed=False) & 0xFFFFFFFF
    if h >= 1 << 31:
        h -= 1 << 32
    return abs(h) % 100


def _percentage(p: Any) -> int:
    if isinstance(p, bool):
        raise ValueError("percentage must be a number")
    if isinstance(p, (int, float)):
        return int(p)
    return int(float(str(p).strip()))


def in_bucket(targeting_key: str, flag_key: str, percentage: int | float | str) -> bool:
    try:
        p = _percentage(percentage)
    except ValueError:
        return False
    if p <= 0:
        return False
    if p >= 100:
        return True
    return bucket_of(targeting_key, flag_key) < p


# Flags


_true_strings = {"true", "1", "t", "yes", "y", "on"}
_false_strings = {"false", "0", "f", "no", "n", "off"}


def _cast_value(raw: Any, value_type: ValueType) -> Value:
    """
    Cast a stored value to the declared flag type. Raises ValueError when
    the value can't be represented as that type.
    """
    match value_type:
        case "boolean":
            if isinstance(raw, bool):
                return raw
            if isinstance(raw, int) and raw in (0, 1):
                return bool(raw)
            if isinstance(raw, str):
                s = raw.strip().lower()
                if s in _true_strings:
                    return True
                if s in _false_strings:
                    return False
            raise ValueError(f"cannot cast {raw!r} to boolean")
        case "string":
            if isinstance(raw, (dict, list)):
                return json.dumps(raw)
            return _text(raw)
        case "integer":
            if isinstance(raw, bool):
                raise ValueError(f"cannot cast {raw!r} to integer")
            if isinstance(raw, int):
                return raw
            if isinstance(raw, float) and raw.is_integer():
                return int(raw)
            if isinstance(raw, str):
                return int(raw.strip())
            raise ValueError(f"cannot cast {raw!r} to integer")
        case "float":
            if isinstance(raw, bool):
                raise ValueError(f"cannot cast {raw!r} to float")
            if isinstance(raw, (int, float)):
                return float(raw)
            if isinstance(raw, str):
                return float(raw.strip())
            raise ValueError(f"cannot cast {raw!r} to float")
        case "object":
            if isinstance(raw, dict):
                return deepcopy(raw)
            if isinstance(raw, str):
                obj = json.loads(raw)
                if isinstance(obj, dict):
                    return obj
            raise ValueError(f"cannot cast {raw!r} to object")
        case _:
            raise ValueError(f"unknown value type {value_type!r}")


class TargetingRule:
    """
    A rule is a segment (conditions) with an optional percentage gate applied
    after the segment matches. Absent conditions match every context.
    """

    __slots__ = ("value", "conditions", "percentage", "variant")
    value: Any
    conditions: RuleNode | None
    percentage: int | None
    variant: str | None

    def __init__(
        self,
        value: Any,
        conditions: RuleNode | None = None,
        percentage: int | float | str | None = None,
        variant: str | None = None,
    ):
        self.value = value
        self.conditions = conditions
        self.percentage = None if percentage is None else _percentage(percentage)
        self.variant = variant

    def __repr__(self):
        return f"TargetingRule({self.value!r}, {self.conditions!r}, percentage={self.percentage!r})"

    def segment_matches(self, context: EvaluationContext) -> bool:
        if self.conditions is None:
            return True
        return self.conditions.eval(context)


class Flag:
    """
    A compiled feature flag. The default is cast to value_type when the flag
    is built so a flag with an unusable default never reaches evaluation.
    Rule values are cast lazily at evaluation.
    """

    __slots__ = (
        "key",
        "value_type",
        "default",
        "enabled",
        "status",
        "metadata",
        "rules",
    )
    key: str
    value_type: ValueType
    default: Value
    enabled: bool
    status: FlagStatus
    metadata: dict[str, Any]
    rules: list[TargetingRule]

    def __init__(
        self,
        key: str,
        value_type: ValueType,
        default: Any,
        enabled: bool = True,
        rules: list[TargetingRule] | None = None,
        status: FlagStatus = "ACTIVE",
        metadata: dict[str, Any] | None = None,
    ):
        if not _flag_key_re.match(key):
            raise ValueError(f"invalid flag key {key!r}: only lowercase letters, numbers, and dashes")
        if value_type not in VALUE_TYPES:
            raise ValueError(f"invalid value type {value_type!r}")
        if status not in FLAG_STATUSES:
            raise ValueError(f"invalid flag status {status!r}")
        try:
            self.default = _cast_value(default, value_type)
        except ValueError as e:
            raise ValueError(f"flag {key} default is not a valid {value_type}: {e}") from e
        self.key = key
        self.value_type = value_type
        self.enabled = enabled
        self.status = status
        self.metadata = metadata or {}
        self.rules = list(rules or [])

    def __repr__(self):
        return f"Flag({self.key!r}, {self.value_type!r}, {self.default!r}, enabled={self.enabled!r})"

    @staticmethod
    def from_dict(key: str, f: DictConfig) -> Flag:
        """
        Compile a single flag definition as it appears under "flags" in a
        config.
        """
        jsonschema.validate({"flags": {key: f}}, _config_schema)
        rules = [
            TargetingRule(
                value=r["value"],
                conditions=_compile_node(r.get("conditions")),
                percentage=r.get("percentage"),
                variant=r.get("variant"),
            )
            for r in f.get("rules", [])
        ]
        return Flag(
            key=key,
            value_type=f["value_type"],
            default=f["default"],
            enabled=f.get("enabled", True),
            rules=rules,
            status=f.get("status", "ACTIVE"),
            metadata=f.get("metadata"),
        )


_prom_eval_duration = Histogram(
    "subflag_evaluation_seconds",
    "Flag evaluation duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=["flag", "reason"],
)


class TargetingEngine:
    """
    Evaluates a flag's targeting rules against a context. Rules are checked
    in declaration order and the first matching rule wins. The engine holds
    no state and is safe to share between threads.
    """

    __slots__ = ()

    def evaluate(self, flag: Flag, context: ContextLike = None) -> EvaluationResult:
        start = time.perf_counter()
        result = self._evaluate(flag, _coerce_context(context))
        _prom_eval_duration.labels(flag=flag.key, reason=result.reason).observe(time.perf_counter() - start)
        return result

    def _evaluate(self, flag: Flag, context: EvaluationContext | None) -> EvaluationResult:
        if not flag.enabled or not flag.rules or context is None or context.is_empty:
            return self._default(flag)

        for index, rule in enumerate(flag.rules):
            if not rule.segment_matches(context):
                continue
            if rule.percentage is not None:
                if not context.targeting_key:
                    continue
                if not in_bucket(context.targeting_key, flag.key, rule.percentage):
                    continue
                reason = "PERCENTAGE_ROLLOUT"
            else:
                reason = "TARGETING_MATCH"
            variant = rule.variant or f"rule-{index}"
            try:
                value = _cast_value(rule.value, flag.value_type)
            except ValueError as e:
                logger.warning("Flag %s rule %d value %r is not a valid %s: %s", flag.key, index, rule.value, flag.value_type, e)
                return EvaluationResult(flag.key, flag.default, variant, "ERROR", flag.status)
            return EvaluationResult(flag.key, value, variant, reason, flag.status)

        return self._default(flag)

    @staticmethod
    def _default(flag: Flag) -> EvaluationResult:
        return EvaluationResult(flag.key, deepcopy(flag.default), "default", "DEFAULT", flag.status)


# Cache keys


def _canonical(v: Any) -> Any:
    """
    Reduce a context value to plain JSON data with a fixed order. Mapping
    keys are JSON encoded so mixed key types sort without comparing them.
    """
    if isinstance(v, Mapping):
        items = sorted(((_canonical_json(k), _canonical(x)) for k, x in v.items()), key=lambda i: i[0])
        return [[k, x] for k, x in items]
    if isinstance(v, (list, tuple)):
        return [_canonical(x) for x in v]
    if isinstance(v, (set, frozenset)):
        return sorted((_canonical(x) for x in v), key=_canonical_json)
    if v is None or isinstance(v, (bool, int, float, str)):
        return v
    return str(v)


def _canonical_json(v: Any) -> str:
    return json.dumps(_canonical(v), separators=(",", ":"))


class ContextKeyBuilder:
    """
    Derives cache keys of the form "<namespace>:<flag_key>:<fingerprint>".
    Contexts that carry no targeting information share the "no_context"
    fingerprint. A custom key_generator replaces the default scheme entirely.
    """

    __slots__ = ("namespace", "key_generator")

    def __init__(self, namespace: str = "subflag", key_generator: KeyGenerator | None = None):
        self.namespace = namespace
        self.key_generator = key_generator

    def build_key(self, flag_key: str, context: ContextLike = None) -> str:
        ctx = _coerce_context(context)
        if self.key_generator is not None:
            return self.key_generator(flag_key, ctx)
        return f"{self.namespace}:{flag_key}:{self.context_fingerprint(ctx)}"

    @staticmethod
    def context_fingerprint(context: ContextLike) -> str:
        """
        Attribute order does not matter. The targeting key, kind, attribute
        names and values are all JSON encoded, so separators inside them can't
        make two contexts collide, and nested mappings hash the same however
        they were built. The SHA-256 digest is truncated to 16 hex characters
        to bound key length.
        """
        ctx = _coerce_context(context)
        if ctx is None or ctx.is_empty:
            return NO_CONTEXT
        parts = []
        if ctx.targeting_key is not None:
            parts.append(f"tk={_canonical_json(ctx.targeting_key)}|")
        if ctx.kind is not None:
            parts.append(f"k={_canonical_json(ctx.kind)}|")
        for name, value in sorted(((_canonical_json(k), v) for k, v in ctx.attributes.items()), key=lambda i: i[0]):
            parts.append(f"{name}={_canonical_json(value)}|")
        return sha256("".join(parts).encode("utf-8")).hexdigest()[:16]


# Caches


@dataclass(slots=True)
class CacheEntry:
    key: str
    value: EvaluationResult
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class Cache(ABC):
    """
    Key/value store for evaluation results. Caches know nothing about flags
    or contexts, everything that matters is encoded in the key.
    """

    @abstractmethod
    def get(self, key: str) -> EvaluationResult | None: ...

    @abstractmethod
    def set(self, key: str, value: EvaluationResult, ttl_seconds: float) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def clear(self) -> None: ...


class InMemoryCache(Cache):
    """
    Thread-safe in-memory cache. Expired entries are dropped when read and a
    background thread sweeps the rest every cleanup_interval_seconds. Pass
    cleanup_interval_seconds=None to rely on expiry at read time only.
    """

    def __init__(self, cleanup_interval_seconds: float | None = 60):
        self._mu = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}
        self._stop_wait = threading.Event()
        if cleanup_interval_seconds:
            self._cleanup_interval = cleanup_interval_seconds
            self._start_sweeper()

    def _start_sweeper(self):
        def _worker():
            while not self._stop_wait.is_set():
                self._stop_wait.wait(self._cleanup_interval)
                if self._stop_wait.is_set():
                    break
                try:
                    removed = self.cleanup()
                except Exception:
                    logger.exception("Error sweeping expired cache entries")
                    continue
                if removed:
                    logger.debug("Swept %d expired cache entries", removed)

        threading.Thread(target=_worker, name="subflag-cache-cleanup", daemon=True).start()

    def get(self, key: str) -> EvaluationResult | None:
        now = time.monotonic()
        with self._mu:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: EvaluationResult, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> None:
        if ttl_seconds <= 0:
            return
        entry = CacheEntry(key, value, time.monotonic() + ttl_seconds)
        with self._mu:
            self._entries[key] = entry

    def delete(self, key: str) -> None:
        with self._mu:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._mu:
            self._entries.clear()

    def cleanup(self) -> int:
        """
        Remove all expired entries and return how many were removed.
        """
        now = time.monotonic()
        with self._mu:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for k in expired:
                del self._entries[k]
        return len(expired)

    @property
    def size(self) -> int:
        """
        Number of entries held, including expired ones not yet swept.
        """
        with self._mu:
            return len(self._entries)

    @property
    def stopped(self) -> bool:
        return self._stop_wait.is_set()

    def stop(self):
        self._stop_wait.set()

    def destroy(self):
        self.stop()
        self.clear()


class SerializingCache(Cache):
    """
    Stores results in an external key/value store such as Redis as JSON.
    The client needs get, set(name, value, px=...), delete and scan_iter,
    which is the redis-py client interface. clear removes keys under prefix,
    so give each client its own prefix when the store is shared.
    """

    def __init__(self, client: Any, prefix: str = ""):
        self._client = client
        self._prefix = prefix

    def get(self, key: str) -> EvaluationResult | None:
        raw = self._client.get(self._prefix + key)
        if raw is None:
            return None
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            return EvaluationResult.from_dict(json.loads(raw))
        except (ValueError, TypeError, KeyError):
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    def set(self, key: str, value: EvaluationResult, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> None:
        if ttl_seconds <= 0:
            return
        payload = json.dumps(value.to_dict())
        self._client.set(self._prefix + key, payload, px=max(1, int(ttl_seconds * 1000)))

    def delete(self, key: str) -> None:
        self._client.delete(self._prefix + key)

    def clear(self) -> None:
        keys = list(self._client.scan_iter(match=f"{self._prefix}*"))
        if keys:
            self._client.delete(*keys)


class RequestCache:
    """
    Memo of evaluation results for the lifetime of one request. Create one
    per request and pass it to the client; it is not shared between threads
    and entries never expire.
    """

    __slots__ = ("_values",)

    def __init__(self):
        self._values: dict[str, EvaluationResult] = {}

    def get(self, key: str) -> EvaluationResult | None:
        return self._values.get(key)

    def set(self, key: str, value: EvaluationResult):
        self._values[key] = value

    def fetch(self, key: str, compute: Callable[[], EvaluationResult]) -> EvaluationResult:
        if key in self._values:
            return self._values[key]
        value = compute()
        self._values[key] = value
        return value

    def clear(self):
        self._values.clear()

    def stats(self) -> dict[str, Any]:
        return {"size": len(self._values), "keys": list(self._values)}


@dataclass(slots=True)
class CacheConfig:
    cache: Cache
    ttl_seconds: float = DEFAULT_TTL_SECONDS
    key_builder: ContextKeyBuilder | None = None


# Flag stores and providers


with open(os.path.join(os.path.dirname(__file__), "config_schema.json")) as f:
    _config_schema = json.load(f)

with open(os.path.join(os.path.dirname(__file__), "configuration_schema.json")) as f:
    _configuration_schema = json.load(f)


def merge_configs(*configs: DictConfig) -> DictConfig:
    """
    Merge flag configs split across files into one. Order is not important
    and flag definitions are shallow copied. A flag key defined in more than
    one config is an error.

    Flag definitions are not validated here, compile the result with
    CompiledConfig.from_dict for that.
    """
    flags: dict[str, Any] = {}
    for config in configs:
        config_flags = config.get("flags", {})
        duplicates = flags.keys() & config_flags.keys()
        if duplicates:
            raise ValueError(f"Duplicate flag keys: {sorted(duplicates)}")
        flags.update(config_flags)
    return {"flags": flags}


class FlagStore(ABC):
    """
    Source of flag definitions, typically a database table or a compiled
    config.
    """

    __slots__ = ()

    @abstractmethod
    def get_flag(self, key: str) -> Flag | None: ...

    @abstractmethod
    def get_all_enabled_flags(self) -> list[Flag]: ...


class CompiledConfig(FlagStore):
    """
    Compiled set of flags, usable as a flag store.
    """

    __slots__ = ("flags",)
    flags: dict[str, Flag]

    @staticmethod
    def from_bytes(b: bytes) -> CompiledConfig:
        obj = dill.loads(b)
        assert isinstance(obj, CompiledConfig)
        return obj

    def to_bytes(self) -> bytes:
        return dill.dumps(self)

    @staticmethod
    def from_dict(c: DictConfig) -> CompiledConfig:
        """
        Validate the config against the schema and compile every flag.
        """
        jsonschema.validate(c, _config_schema)
        cc = CompiledConfig()
        cc.flags = {}
        for key, f in c.get("flags", {}).items():
            cc.flags[key] = Flag.from_dict(key, f)
        return cc

    def get_flag(self, key: str) -> Flag | None:
        return self.flags.get(key)

    def get_all_enabled_flags(self) -> list[Flag]:
        return [f for f in self.flags.values() if f.enabled]


class FlagProvider(ABC):
    """
    Produces evaluation results. Implementations raise FlagNotFoundError for
    unknown flags; every other failure is translated by FlagClient.
    """

    name: str = "subflag"

    @abstractmethod
    def evaluate(self, flag_key: str, context: ContextLike = None) -> EvaluationResult: ...

    @abstractmethod
    def evaluate_all(self, context: ContextLike = None) -> list[EvaluationResult]: ...


class LocalFlagProvider(FlagProvider):
    """
    Evaluates flags locally against a flag store.
    """

    name = "subflag-local"

    def __init__(self, store: FlagStore, engine: TargetingEngine | None = None):
        self._store = store
        self._engine = engine or TargetingEngine()

    def evaluate(self, flag_key: str, context: ContextLike = None) -> EvaluationResult:
        flag = self._store.get_flag(flag_key)
        if flag is None:
            raise FlagNotFoundError(flag_key)
        return self._engine.evaluate(flag, context)

    def evaluate_all(self, context: ContextLike = None) -> list[EvaluationResult]:
        ctx = _coerce_context(context)
        return [self._engine.evaluate(flag, ctx) for flag in self._store.get_all_enabled_flags()]


class Transport(ABC):
    """
    Talks to the remote flag service. Contexts are passed in their wire form
    (EvaluationContext.to_dict) and responses are evaluation result dicts.
    Service errors must be raised as ApiError.
    """

    @abstractmethod
    def evaluate(self, flag_key: str, context: dict[str, Any] | None) -> dict[str, Any]: ...

    @abstractmethod
    def evaluate_all(self, context: dict[str, Any] | None) -> list[dict[str, Any]]: ...


class RemoteFlagProvider(FlagProvider):
    name = "subflag-remote"

    def __init__(self, transport: Transport):
        self._transport = transport

    @staticmethod
    def _wire_context(context: ContextLike) -> dict[str, Any] | None:
        ctx = _coerce_context(context)
        return None if ctx is None else ctx.to_dict()

    @staticmethod
    def _parse(d: Any) -> EvaluationResult:
        try:
            return EvaluationResult.from_dict(d)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ConfigurationError(f"malformed evaluation response: {e}") from e

    def evaluate(self, flag_key: str, context: ContextLike = None) -> EvaluationResult:
        try:
            d = self._transport.evaluate(flag_key, self._wire_context(context))
        except ApiError as e:
            if e.status_code == 404:
                raise FlagNotFoundError(flag_key, str(e)) from e
            raise
        return self._parse(d)

    def evaluate_all(self, context: ContextLike = None) -> list[EvaluationResult]:
        response = self._transport.evaluate_all(self._wire_context(context))
        if not isinstance(response, list):
            raise ConfigurationError("malformed bulk evaluation response: expected a list")
        return [self._parse(d) for d in response]


def _normalize_flag_key(key: str) -> str:
    return str(key).replace("_", "-")


class InMemoryFlagProvider(FlagProvider):
    """
    Flags held in a dict, for tests and local development. Keys are
    normalized so new_checkout and new-checkout are the same flag.
    Disabled flags resolve to the caller's default.
    """

    name = "subflag-memory"

    def __init__(self):
        self._mu = threading.Lock()
        self._flags: dict[str, tuple[Any, bool]] = {}

    def set(self, key: str, value: Any, enabled: bool = True):
        with self._mu:
            self._flags[_normalize_flag_key(key)] = (value, enabled)

    def clear(self):
        with self._mu:
            self._flags.clear()

    def all(self) -> dict[str, tuple[Any, bool]]:
        with self._mu:
            return dict(self._flags)

    def evaluate(self, flag_key: str, context: ContextLike = None) -> EvaluationResult:
        key = _normalize_flag_key(flag_key)
        with self._mu:
            entry = self._flags.get(key)
        if entry is None:
            raise FlagNotFoundError(key)
        value, enabled = entry
        if not enabled:
            return EvaluationResult(key, None, "default", "DEFAULT")
        return EvaluationResult(key, deepcopy(value), "default", "OVERRIDE")

    def evaluate_all(self, context: ContextLike = None) -> list[EvaluationResult]:
        with self._mu:
            items = list(self._flags.items())
        return [EvaluationResult(k, deepcopy(v), "default", "OVERRIDE") for k, (v, enabled) in items if enabled]


# Configuration


_log_levels = {"debug": logging.DEBUG, "info": logging.INFO, "warning": logging.WARNING}


@dataclass(frozen=True, slots=True)
class Configuration:
    """
    Client configuration. Build it once at startup and hand it to
    FlagClient.from_configuration.

    backend selects the provider: "remote" for the flag service, "local" to
    evaluate against a flag store and "memory" for tests. A cache_ttl_seconds
    of None disables the evaluation cache.
    """

    backend: Literal["local", "remote", "memory"] = "remote"
    cache_ttl_seconds: float | None = DEFAULT_TTL_SECONDS
    cache_namespace: str = "subflag"
    logging_enabled: bool = False
    log_level: Literal["debug", "info", "warning"] = "debug"

    def __post_init__(self):
        if self.backend not in ("local", "remote", "memory"):
            raise ValueError(f"Invalid backend: {self.backend}. Use one of: local, remote, memory")
        if self.log_level not in _log_levels:
            raise ValueError(f"Invalid log level: {self.log_level}")

    @staticmethod
    def from_dict(d: DictConfig) -> Configuration:
        jsonschema.validate(d, _configuration_schema)
        return Configuration(**d)


# Client


_prom_cache_requests = Counter(
    "subflag_cache_requests_total",
    "Evaluation cache lookups",
    labelnames=["result"],
)


def _check_boolean(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    raise TypeMismatchError("boolean", type(v).__name__)


def _check_string(v: Any) -> str:
    if isinstance(v, str):
        return v
    raise TypeMismatchError("string", type(v).__name__)


def _check_integer(v: Any) -> int:
    if isinstance(v, int) and not isinstance(v, bool):
        return v
    if isinstance(v, float) and v.is_integer():
        return int(v)
    raise TypeMismatchError("integer", type(v).__name__)


def _check_float(v: Any) -> float:
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return float(v)
    raise TypeMismatchError("float", type(v).__name__)


def _check_object(v: Any) -> dict[str, Any]:
    if isinstance(v, dict):
        return v
    raise TypeMismatchError("object", type(v).__name__)


_type_checks: dict[ValueType, Callable[[Any], Any]] = {
    "boolean": _check_boolean,
    "string": _check_string,
    "integer": _check_integer,
    "float": _check_float,
    "object": _check_object,
}


class FlagClient:
    """
    OpenFeature style client. Resolutions go through the per-request cache,
    then the evaluation cache and finally the provider. Resolution never
    raises: every failure resolves to the caller's default with an error
    code. FlagClient is thread-safe as long as its cache is.
    """

    def __init__(
        self,
        provider: FlagProvider,
        cache_config: CacheConfig | None = None,
        logging_enabled: bool = False,
        log_level: int = logging.DEBUG,
    ):
        self.provider = provider
        self._cache_config = cache_config
        self._key_builder = (cache_config and cache_config.key_builder) or ContextKeyBuilder()
        self._logging_enabled = logging_enabled
        self._log_level = log_level
        self._owned_cache: InMemoryCache | None = None

    @staticmethod
    def from_configuration(
        configuration: Configuration,
        store: FlagStore | None = None,
        transport: Transport | None = None,
    ) -> FlagClient:
        provider: FlagProvider
        match configuration.backend:
            case "local":
                if store is None:
                    raise ConfigurationError("the local backend requires a flag store")
                provider = LocalFlagProvider(store)
            case "remote":
                if transport is None:
                    raise ConfigurationError("the remote backend requires a transport")
                provider = RemoteFlagProvider(transport)
            case _:
                provider = InMemoryFlagProvider()
        cache_config = None
        if configuration.cache_ttl_seconds:
            cache_config = CacheConfig(
                cache=InMemoryCache(),
                ttl_seconds=configuration.cache_ttl_seconds,
                key_builder=ContextKeyBuilder(namespace=configuration.cache_namespace),
            )
        client = FlagClient(
            provider,
            cache_config=cache_config,
            logging_enabled=configuration.logging_enabled,
            log_level=_log_levels[configuration.log_level],
        )
        if cache_config is not None:
            client._owned_cache = cache_config.cache
        return client

    def shutdown(self):
        """
        Stop the cache sweeper of a cache built by from_configuration and drop
        its entries. Caches passed in through CacheConfig are left alone.
        """
        if self._owned_cache is not None:
            self._owned_cache.destroy()
            logger.debug("Stopped evaluation cache")

    @property
    def cache_config(self) -> CacheConfig | None:
        return self._cache_config

    def prefetch_all(self, context: ContextLike = None, request_cache: RequestCache | None = None) -> list[EvaluationResult]:
        """
        Evaluate every flag for the context in one bulk call and store each
        result under the same key a single flag lookup would use, so later
        lookups for this context are cache hits. Returns all results.
        ERROR results are returned but not cached.

        Raises ConfigurationError when neither an evaluation cache is
        configured nor a request cache is given.
        """
        if self._cache_config is None and request_cache is None:
            raise ConfigurationError("prefetch_all requires caching to be enabled. Configure the client with a CacheConfig or pass a RequestCache.")
        ctx = _coerce_context(context)
        results = self.provider.evaluate_all(ctx)
        for result in results:
            if result.reason == "ERROR":
                continue
            key = self._key_builder.build_key(result.flag_key, ctx)
            if self._cache_config is not None:
                self._cache_config.cache.set(key, result, self._cache_config.ttl_seconds)
            if request_cache is not None:
                request_cache.set(key, result)
        logger.debug("Prefetched %d flags", len(results))
        return results

    def evaluate(self, flag_key: str, context: ContextLike = None, request_cache: RequestCache | None = None) -> EvaluationResult:
        """
        Get the untyped evaluation result, from cache when possible. Unlike
        the resolve_* methods this raises provider errors.
        """
        ctx = _coerce_context(context)
        key = self._key_builder.build_key(flag_key, ctx)

        if request_cache is not None:
            cached = request_cache.get(key)
            if cached is not None:
                return cached

        if self._cache_config is not None:
            cached = self._cache_config.cache.get(key)
            if cached is not None:
                _prom_cache_requests.labels(result="hit").inc()
                if request_cache is not None:
                    request_cache.set(key, cached)
                return cached
            _prom_cache_requests.labels(result="miss").inc()

        result = self.provider.evaluate(flag_key, ctx)

        # Errors are not cached so a fixed flag takes effect immediately.
        if result.reason != "ERROR":
            if self._cache_config is not None:
                self._cache_config.cache.set(key, result, self._cache_config.ttl_seconds)
            if request_cache is not None:
                request_cache.set(key, result)
        return result

    def _resolve(
        self,
        value_type: ValueType,
        flag_key: str,
        default: Any,
        context: ContextLike,
        request_cache: RequestCache | None,
    ) -> ResolutionDetails:
        try:
            result = self.evaluate(flag_key, context, request_cache)
        except SubflagError as e:
            return self._log(flag_key, default, ResolutionDetails(default, reason="ERROR", error_code=e.error_code, error_message=str(e)))
        except Exception as e:
            logger.exception("Error evaluating flag %s", flag_key)
            return self._log(flag_key, default, ResolutionDetails(default, reason="ERROR", error_code="GENERAL", error_message=str(e)))

        if result.is_deprecated:
            logger.warning('Flag "%s" is deprecated and scheduled for removal. Please migrate away from this flag.', flag_key)

        if result.reason == "ERROR":
            details = ResolutionDetails(
                default,
                variant=result.variant,
                reason="ERROR",
                error_code="PARSE_ERROR",
                error_message=f"flag {flag_key} has a malformed value",
                flag_status=result.flag_status,
            )
            return self._log(flag_key, default, details)

        if result.value is None:
            return self._log(flag_key, default, ResolutionDetails(default, result.variant, result.reason, flag_status=result.flag_status))

        try:
            value = _type_checks[value_type](result.value)
        except TypeMismatchError as e:
            return self._log(flag_key, default, ResolutionDetails(default, reason="ERROR", error_code=e.error_code, error_message=str(e)))

        return self._log(flag_key, default, ResolutionDetails(value, result.variant, result.reason, flag_status=result.flag_status))

    def _log(self, flag_key: str, default: Any, details: ResolutionDetails) -> ResolutionDetails:
        if self._logging_enabled:
            suffix = " (default)" if details.value == default else ""
            logger.log(self._log_level, "%s = %r%s", flag_key, details.value, suffix)
        return details

    def resolve_boolean_evaluation(
        self, flag_key: str, default: bool, context: ContextLike = None, request_cache: RequestCache | None = None
    ) -> ResolutionDetails:
        return self._resolve("boolean", flag_key, default, context, request_cache)

    def resolve_string_evaluation(
        self, flag_key: str, default: str, context: ContextLike = None, request_cache: RequestCache | None = None
    ) -> ResolutionDetails:
        return self._resolve("string", flag_key, default, context, request_cache)

    def resolve_integer_evaluation(
        self, flag_key: str, default: int, context: ContextLike = None, request_cache: RequestCache | None = None
    ) -> ResolutionDetails:
        return self._resolve("integer", flag_key, default, context, request_cache)

    def resolve_float_evaluation(
        self, flag_key: str, default: float, context: ContextLike = None, request_cache: RequestCache | None = None
    ) -> ResolutionDetails:
        return self._resolve("float", flag_key, default, context, request_cache)

    def resolve_object_evaluation(
        self, flag_key: str, default: dict[str, Any], context: ContextLike = None, request_cache: RequestCache | None = None
    ) -> ResolutionDetails:
        return self._resolve("object", flag_key, default, context, request_cache)

    def flags(self, context: ContextLike = None, request_cache: RequestCache | None = None) -> FlagAccessor:
        """
        Typed accessor bound to a context and, optionally, a request cache.
        """
        return FlagAccessor(self, _coerce_context(context), request_cache)


def _value_type_of(default: Any) -> ValueType:
    # bool must be checked before int.
    if isinstance(default, bool):
        return "boolean"
    if isinstance(default, int):
        return "integer"
    if isinstance(default, float):
        return "float"
    if isinstance(default, str):
        return "string"
    if isinstance(default, dict):
        return "object"
    if default is None:
        raise TypeError("default is required (it determines the expected type)")
    raise TypeError(f"Unsupported default type: {type(default).__name__}. Use str, int, float, bool, or dict.")


class FlagAccessor:
    """
    Typed flag access for one context. Every getter takes an explicit
    default which is returned whenever the flag can't be resolved.
    Underscores in flag keys are converted to dashes, so get_bool("new_checkout", False)
    reads the new-checkout flag.
    """

    __slots__ = ("_client", "_context", "_request_cache")

    def __init__(self, client: FlagClient, context: EvaluationContext | None = None, request_cache: RequestCache | None = None):
        self._client = client
        self._context = context
        self._request_cache = request_cache

    def get_bool(self, flag_key: str, default: bool) -> bool:
        return self._client.resolve_boolean_evaluation(_normalize_flag_key(flag_key), default, self._context, self._request_cache).value

    def get_string(self, flag_key: str, default: str) -> str:
        return self._client.resolve_string_evaluation(_normalize_flag_key(flag_key), default, self._context, self._request_cache).value

    def get_int(self, flag_key: str, default: int) -> int:
        return self._client.resolve_integer_evaluation(_normalize_flag_key(flag_key), default, self._context, self._request_cache).value

    def get_float(self, flag_key: str, default: float) -> float:
        return self._client.resolve_float_evaluation(_normalize_flag_key(flag_key), default, self._context, self._request_cache).value

    def get_object(self, flag_key: str, default: dict[str, Any]) -> dict[str, Any]:
        return self._client.resolve_object_evaluation(_normalize_flag_key(flag_key), default, self._context, self._request_cache).value

    def evaluate(self, flag_key: str, default: Any) -> ResolutionDetails:
        """
        Full resolution details; the expected type is inferred from default.
        """
        value_type = _value_type_of(default)
        return self._client._resolve(value_type, _normalize_flag_key(flag_key), default, self._context, self._request_cache)
