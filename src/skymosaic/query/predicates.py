"""
Filter parsing and compilation.

A query's filter is parsed once into a small tree of frozen nodes,
validated against the survey schema, canonicalized so equivalent filters
compare (and hash) equal, and compiled to a parameterized DuckDB WHERE
clause. User values never reach the SQL text; field names do, but only
after they have been matched against the declared schema.

Filter grammar (JSON):

    {"op": "and" | "or", "args": [<node>, ...]}
    {"op": "not", "arg": <node>}
    {"op": "=" | "!=" | "<" | "<=" | ">" | ">=", "field": f, "value": v}
    {"op": "in", "field": f, "values": [v, ...]}
    {"op": "between", "field": f, "min": v | null, "max": v | null}
"""

import dataclasses
import json
import math
import re
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import ValidationError

from ..errors import QueryError
from .models import Aggregation, Constraint, FieldSpec, QueryRequest, SurveyConfig

COMPARISON_OPS = ("=", "!=", "<", "<=", ">", ">=")

MAX_FILTER_DEPTH = 32
MAX_FILTER_ARGS = 256
MAX_IN_VALUES = 1024

_FORBIDDEN_KEYWORDS = re.compile(
    r"\b(DROP|DELETE|INSERT|UPDATE|CREATE|ALTER|EXEC|EXECUTE|UNION|"
    r"TRUNCATE|GRANT|REVOKE|MERGE|CALL|COPY|ATTACH|DETACH|PRAGMA|"
    r"INSTALL|LOAD|EXPORT|IMPORT)\b",
    re.IGNORECASE,
)

_FORBIDDEN_PATTERNS = re.compile(r"(--|/\*|\*/|;)")

# Operations and the field types they accept (None: no field)
_AGGREGATION_TYPES = {
    "COUNT": None,
    "IDS": None,
    "VALUES_AND_COUNT": {"string", "number", "date", "boolean"},
    "MIN_MAX": {"string", "number", "date"},
    "NUMBER_HISTOGRAM": {"number"},
    "SUM": {"number"},
    "AVG": {"number"},
    "DATE_HISTOGRAM": {"date"},
}


def sanitize_sql_expression(expression: str) -> str:
    """
    Screen a SQL scalar expression taken from configuration.

    Uses a conservative allowlist approach:
    - Reject forbidden keywords (DDL, DML, extension loading)
    - Reject dangerous patterns (comments, semicolons)
    - Reject subqueries
    """
    if not expression or expression.strip() == "":
        raise ValueError("Empty expression")

    if _FORBIDDEN_PATTERNS.search(expression):
        raise ValueError(f"Forbidden pattern in expression: {expression}")

    if _FORBIDDEN_KEYWORDS.search(expression):
        raise ValueError(f"Forbidden keyword in expression: {expression}")

    if re.search(r"\bSELECT\b", expression, re.IGNORECASE):
        raise ValueError(f"Subqueries not allowed in expression: {expression}")

    return expression


def parse_datetime(value) -> datetime:
    """Parse an ISO-8601 string or epoch milliseconds into naive UTC."""
    if isinstance(value, bool):
        raise ValueError("boolean is not a date")
    if isinstance(value, (int, float)):
        try:
            parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(f"date out of range: {value}") from e
        return parsed.replace(tzinfo=None)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    raise ValueError(f"cannot interpret {value!r} as a date")


def coerce_value(spec: FieldSpec, value):
    """Convert ``value`` to the Python type of ``spec``; ValueError if it cannot."""
    if spec.type == "number":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"expected a number, got {value!r}")
        if not math.isfinite(value):
            raise ValueError(f"non-finite number {value!r}")
        return float(value)
    if spec.type == "string":
        if not isinstance(value, str):
            raise ValueError(f"expected a string, got {value!r}")
        return value
    if spec.type == "boolean":
        if not isinstance(value, bool):
            raise ValueError(f"expected a boolean, got {value!r}")
        return value
    return parse_datetime(value)


def _json_value(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _quote(field: str) -> str:
    return f'"{field}"'


@dataclasses.dataclass(frozen=True)
class Comparison:
    field: str
    op: str
    value: Any

    def to_json(self) -> dict:
        return {"op": self.op, "field": self.field, "value": _json_value(self.value)}

    def to_sql(self, params: list) -> str:
        params.append(self.value)
        return f"{_quote(self.field)} {self.op} ?"


@dataclasses.dataclass(frozen=True)
class Range:
    field: str
    low: Any = None
    high: Any = None

    def to_json(self) -> dict:
        return {
            "op": "between",
            "field": self.field,
            "min": _json_value(self.low),
            "max": _json_value(self.high),
        }

    def to_sql(self, params: list) -> str:
        clauses = []
        if self.low is not None:
            params.append(self.low)
            clauses.append(f"{_quote(self.field)} >= ?")
        if self.high is not None:
            params.append(self.high)
            clauses.append(f"{_quote(self.field)} <= ?")
        return "(" + " AND ".join(clauses) + ")"


@dataclasses.dataclass(frozen=True)
class Membership:
    field: str
    values: tuple

    def to_json(self) -> dict:
        return {
            "op": "in",
            "field": self.field,
            "values": [_json_value(v) for v in self.values],
        }

    def to_sql(self, params: list) -> str:
        params.extend(self.values)
        placeholders = ", ".join("?" for _ in self.values)
        return f"{_quote(self.field)} IN ({placeholders})"


@dataclasses.dataclass(frozen=True)
class BoolOp:
    op: str  # "and" | "or"
    args: tuple

    def to_json(self) -> dict:
        return {"op": self.op, "args": [arg.to_json() for arg in self.args]}

    def to_sql(self, params: list) -> str:
        joiner = f" {self.op.upper()} "
        return "(" + joiner.join(arg.to_sql(params) for arg in self.args) + ")"


@dataclasses.dataclass(frozen=True)
class Not:
    arg: Any

    def to_json(self) -> dict:
        return {"op": "not", "arg": self.arg.to_json()}

    def to_sql(self, params: list) -> str:
        # Two-valued logic: a negated test matches rows whose field is null
        return f"(NOT COALESCE({self.arg.to_sql(params)}, FALSE))"


Predicate = Union[Comparison, Range, Membership, BoolOp, Not]


def _canonical_key(node) -> str:
    return json.dumps(node.to_json(), sort_keys=True, separators=(",", ":"))


def _lookup_field(config: SurveyConfig, field_id) -> FieldSpec:
    if not isinstance(field_id, str):
        raise QueryError(f"Filter field must be a string, got {field_id!r}")
    spec = config.field(field_id)
    if spec is None:
        raise QueryError(f"Unknown field: {field_id}")
    return spec


def _coerce(spec: FieldSpec, value):
    try:
        return coerce_value(spec, value)
    except ValueError as e:
        raise QueryError(f"Invalid value for field {spec.id}: {e}") from e


def parse_filter(node, config: SurveyConfig, depth: int = 0) -> Predicate:
    """Parse a filter JSON node into a predicate tree.

    Nesting deeper than MAX_FILTER_DEPTH, combinators with more than
    MAX_FILTER_ARGS arguments and memberships with more than MAX_IN_VALUES
    values are rejected with QueryError.
    """
    if depth > MAX_FILTER_DEPTH:
        raise QueryError(f"Filter nested deeper than {MAX_FILTER_DEPTH} levels")
    if not isinstance(node, dict):
        raise QueryError(f"Filter node must be an object, got {type(node).__name__}")
    op = node.get("op")

    if op in ("and", "or"):
        args = node.get("args")
        if not isinstance(args, list) or not args:
            raise QueryError(f"'{op}' needs a non-empty 'args' list")
        if len(args) > MAX_FILTER_ARGS:
            raise QueryError(f"'{op}' accepts at most {MAX_FILTER_ARGS} args")
        return BoolOp(op, tuple(parse_filter(arg, config, depth + 1) for arg in args))

    if op == "not":
        return Not(parse_filter(node.get("arg"), config, depth + 1))

    if op in COMPARISON_OPS:
        spec = _lookup_field(config, node.get("field"))
        if "value" not in node:
            raise QueryError(f"'{op}' on {spec.id} needs a 'value'")
        if spec.type == "boolean" and op not in ("=", "!="):
            raise QueryError(f"Boolean field {spec.id} only supports = and !=")
        return Comparison(spec.id, op, _coerce(spec, node["value"]))

    if op == "in":
        spec = _lookup_field(config, node.get("field"))
        values = node.get("values")
        if not isinstance(values, list) or not values:
            raise QueryError(f"'in' on {spec.id} needs a non-empty 'values' list")
        _check_values_count(spec, values)
        return Membership(spec.id, tuple(_coerce(spec, v) for v in values))

    if op == "between":
        spec = _lookup_field(config, node.get("field"))
        return _make_range(spec, node.get("min"), node.get("max"))

    raise QueryError(f"Unknown filter operation: {op!r}")


def _check_values_count(spec: FieldSpec, values: list):
    if len(values) > MAX_IN_VALUES:
        raise QueryError(f"IN on {spec.id} accepts at most {MAX_IN_VALUES} values")


def _make_range(spec: FieldSpec, low, high) -> Range:
    if spec.type not in ("number", "date"):
        raise QueryError(f"Range filter not supported on {spec.type} field {spec.id}")
    if low is None and high is None:
        raise QueryError(f"Range filter on {spec.id} needs a min or a max")
    low = None if low is None else _coerce(spec, low)
    high = None if high is None else _coerce(spec, high)
    return Range(spec.id, low, high)


def constraints_to_predicate(
    constraints: list[Constraint], config: SurveyConfig
) -> Predicate:
    """Translate the legacy constraint list.

    Constraints on the same field are OR-ed, different fields AND-ed.
    """
    by_field: dict[str, list] = {}
    for constraint in constraints:
        spec = _lookup_field(config, constraint.field)
        expression = constraint.expression
        operation = constraint.operation

        if operation in ("STRING_EQUAL", "EQUAL"):
            if operation == "STRING_EQUAL" and spec.type != "string":
                raise QueryError(f"STRING_EQUAL on non-string field {spec.id}")
            node = Comparison(spec.id, "=", _coerce(spec, expression))
        elif operation in ("NUMBER_RANGE", "DATE_RANGE"):
            expected = "number" if operation == "NUMBER_RANGE" else "date"
            if spec.type != expected:
                raise QueryError(f"{operation} on {spec.type} field {spec.id}")
            if not isinstance(expression, (list, tuple)) or len(expression) != 2:
                raise QueryError(f"{operation} expects [min, max]")
            node = _make_range(spec, expression[0], expression[1])
        else:
            if not isinstance(expression, list) or not expression:
                raise QueryError(f"IN on {spec.id} expects a non-empty list")
            _check_values_count(spec, expression)
            node = Membership(spec.id, tuple(_coerce(spec, v) for v in expression))

        if constraint.negate:
            node = Not(node)
        by_field.setdefault(spec.id, []).append(node)

    groups = [
        nodes[0] if len(nodes) == 1 else BoolOp("or", tuple(nodes))
        for nodes in by_field.values()
    ]
    return groups[0] if len(groups) == 1 else BoolOp("and", tuple(groups))


def canonicalize(node: Predicate) -> Predicate:
    """Rewrite ``node`` into its canonical form.

    Nested and/or are flattened, their arguments de-duplicated and sorted,
    single-argument combinators collapsed, double negations removed and
    membership values sorted.
    """
    if isinstance(node, BoolOp):
        flat = []
        for arg in node.args:
            arg = canonicalize(arg)
            if isinstance(arg, BoolOp) and arg.op == node.op:
                flat.extend(arg.args)
            else:
                flat.append(arg)
        unique = {_canonical_key(arg): arg for arg in flat}
        args = tuple(unique[key] for key in sorted(unique))
        if len(args) == 1:
            return args[0]
        return BoolOp(node.op, args)

    if isinstance(node, Not):
        inner = canonicalize(node.arg)
        if isinstance(inner, Not):
            return inner.arg
        return Not(inner)

    if isinstance(node, Membership):
        values = tuple(sorted(set(node.values)))
        if len(values) == 1:
            return Comparison(node.field, "=", values[0])
        return Membership(node.field, values)

    return node


def _canonical_aggregation(agg: Aggregation, config: SurveyConfig) -> Aggregation:
    allowed = _AGGREGATION_TYPES[agg.operation]
    if allowed is None:
        return Aggregation(out=agg.out, operation=agg.operation)
    if agg.field is None:
        raise QueryError(f"Aggregation {agg.out} ({agg.operation}) needs a field")
    spec = _lookup_field(config, agg.field)
    if spec.type not in allowed:
        raise QueryError(
            f"Aggregation {agg.operation} not supported on {spec.type} field {spec.id}"
        )
    params = {"out": agg.out, "operation": agg.operation, "field": spec.id}
    if agg.operation == "NUMBER_HISTOGRAM":
        params["bins"] = agg.bins
    if agg.operation == "DATE_HISTOGRAM":
        params["step"] = agg.step
    return Aggregation(**params)


def _aggregation_json(agg: Aggregation) -> dict:
    data = {"out": agg.out, "operation": agg.operation}
    if agg.field is not None:
        data["field"] = agg.field
    if agg.operation == "NUMBER_HISTOGRAM":
        data["bins"] = agg.bins
    if agg.operation == "DATE_HISTOGRAM":
        data["step"] = agg.step
    return data


@dataclasses.dataclass(frozen=True)
class CompiledQuery:
    """A validated, canonical query ready for execution."""

    predicate: Optional[Predicate]
    aggregations: tuple
    properties: tuple
    database_hash: Optional[str] = None

    def where(self) -> tuple[str, list]:
        """SQL boolean expression and its parameters."""
        if self.predicate is None:
            return "TRUE", []
        params: list = []
        return self.predicate.to_sql(params), params

    def canonical(self) -> dict:
        """JSON-compatible canonical form; re-parses to an equal query."""
        return {
            "filter": None if self.predicate is None else self.predicate.to_json(),
            "aggregations": [_aggregation_json(a) for a in self.aggregations],
            "properties": list(self.properties),
        }


def compile_query(spec, config: SurveyConfig) -> CompiledQuery:
    """Parse, validate and canonicalize a query request."""
    if isinstance(spec, QueryRequest):
        request = spec
    else:
        if not isinstance(spec, dict):
            raise QueryError("Query must be a JSON object")
        try:
            request = QueryRequest.model_validate(spec)
        except ValidationError as e:
            raise QueryError(f"Invalid query: {e}") from e

    parts = []
    if request.filter is not None:
        parts.append(parse_filter(request.filter, config))
    if request.constraints:
        parts.append(constraints_to_predicate(request.constraints, config))
    predicate = None
    if parts:
        predicate = canonicalize(parts[0] if len(parts) == 1 else BoolOp("and", tuple(parts)))

    aggregations = {}
    for agg in request.aggregations:
        if agg.out in aggregations:
            raise QueryError(f"Duplicate aggregation output: {agg.out}")
        aggregations[agg.out] = _canonical_aggregation(agg, config)

    properties = {_lookup_field(config, field_id).id for field_id in request.properties}

    return CompiledQuery(
        predicate=predicate,
        aggregations=tuple(aggregations[out] for out in sorted(aggregations)),
        properties=tuple(sorted(properties)),
        database_hash=request.database_hash,
    )
