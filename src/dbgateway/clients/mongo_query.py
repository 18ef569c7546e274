"""Parser for the MongoDB query text accepted by the gateway.

Two shapes are understood:

* shell style, ``db.users.find({"age": {"$gt": 30}}).sort({"age": -1}).limit(5)``
  (the leading ``db.`` is optional);
* a JSON document, ``{"collection": "users", "operation": "find", "filter": {...}}``.

Arguments are strict JSON. MongoDB extended JSON (``{"$oid": ...}``,
``{"$date": ...}``) is decoded through ``bson.json_util``.
"""
from __future__ import annotations

import dataclasses
import re
from typing import Any, Dict, List, Optional, Tuple

from bson import json_util

OPERATIONS = {
    "find": "find",
    "findOne": "findOne",
    "aggregate": "aggregate",
    "count": "countDocuments",
    "countDocuments": "countDocuments",
    "distinct": "distinct",
}

_MODIFIERS = {
    "find": {"limit", "skip", "sort", "explain"},
    "aggregate": {"explain"},
}

_HEAD = re.compile(r"^\s*(?:db\.)?([A-Za-z_$][\w$-]*)\s*\.")
_CALL = re.compile(r"\s*\.?\s*([A-Za-z_]\w*)\s*\(")


class MongoQueryParseError(ValueError):
    """The query text is not a recognised MongoDB operation."""


@dataclasses.dataclass
class MongoQuery:
    collection: str
    operation: str = "find"
    filter: Dict[str, Any] = dataclasses.field(default_factory=dict)
    projection: Optional[Dict[str, Any]] = None
    pipeline: List[Dict[str, Any]] = dataclasses.field(default_factory=list)
    distinct_field: Optional[str] = None
    sort: Optional[Dict[str, Any]] = None
    limit: Optional[int] = None
    skip: Optional[int] = None
    explain: bool = False

    @property
    def is_find(self) -> bool:
        return self.operation == "find"


def parse_mongo_query(text: str) -> MongoQuery:
    """Parses query text into a MongoQuery.

    Raises:
        MongoQueryParseError: If the text is malformed or names an unsupported operation.
    """
    text = (text or "").strip().rstrip(";").strip()
    if not text:
        raise MongoQueryParseError("empty query")
    if text.startswith("{"):
        return _parse_document(text)
    return _parse_shell(text)


def _loads(raw: str) -> Any:
    try:
        return json_util.loads(raw)
    except (ValueError, TypeError) as e:
        raise MongoQueryParseError(f"invalid JSON: {e}") from e


def _parse_document(text: str) -> MongoQuery:
    doc = _loads(text)
    if not isinstance(doc, dict):
        raise MongoQueryParseError("query document must be a JSON object")

    collection = doc.get("collection")
    if not isinstance(collection, str) or not collection:
        raise MongoQueryParseError("query document needs a 'collection'")

    operation = OPERATIONS.get(doc.get("operation", "find"))
    if operation is None:
        raise MongoQueryParseError(f"unsupported operation '{doc.get('operation')}'")

    query = MongoQuery(collection=collection, operation=operation)
    query.filter = _expect_dict(doc.get("filter", {}), "filter")
    if doc.get("projection") is not None:
        query.projection = _expect_dict(doc["projection"], "projection")
    if operation == "aggregate":
        query.pipeline = _expect_pipeline(doc.get("pipeline", []))
    if operation == "distinct":
        query.distinct_field = _expect_str(doc.get("field"), "field")
    if doc.get("sort") is not None:
        query.sort = _expect_dict(doc["sort"], "sort")
    if doc.get("limit") is not None:
        query.limit = _expect_count(doc["limit"], "limit")
    if doc.get("skip") is not None:
        query.skip = _expect_count(doc["skip"], "skip")
    query.explain = bool(doc.get("explain", False))
    return query


def _parse_shell(text: str) -> MongoQuery:
    head = _HEAD.match(text)
    if not head:
        raise MongoQueryParseError("expected <collection>.<operation>(...)")
    collection = head.group(1)

    calls = _split_calls(text, head.end() - 1)
    if not calls:
        raise MongoQueryParseError("missing operation call")

    name, args = calls[0]
    operation = OPERATIONS.get(name)
    if operation is None:
        raise MongoQueryParseError(f"unsupported operation '{name}'")

    query = MongoQuery(collection=collection, operation=operation)
    _apply_operation_args(query, args)

    allowed = _MODIFIERS.get(operation, set())
    for modifier, margs in calls[1:]:
        if modifier not in allowed:
            raise MongoQueryParseError(f"'{modifier}' cannot follow '{name}'")
        if modifier == "explain":
            query.explain = True
        elif modifier == "sort":
            query.sort = _expect_dict(_single(margs, modifier), modifier)
        else:
            setattr(query, modifier, _expect_count(_single(margs, modifier), modifier))
    return query


def _apply_operation_args(query: MongoQuery, args: List[Any]) -> None:
    op = query.operation
    if op in ("find", "findOne"):
        if len(args) > 2:
            raise MongoQueryParseError(f"{op} takes at most a filter and a projection")
        if args:
            query.filter = _expect_dict(args[0], "filter")
        if len(args) == 2:
            query.projection = _expect_dict(args[1], "projection")
    elif op == "aggregate":
        if len(args) != 1:
            raise MongoQueryParseError("aggregate takes one pipeline array")
        query.pipeline = _expect_pipeline(args[0])
    elif op == "countDocuments":
        if len(args) > 1:
            raise MongoQueryParseError("count takes at most a filter")
        if args:
            query.filter = _expect_dict(args[0], "filter")
    elif op == "distinct":
        if not 1 <= len(args) <= 2:
            raise MongoQueryParseError("distinct takes a field name and an optional filter")
        query.distinct_field = _expect_str(args[0], "field")
        if len(args) == 2:
            query.filter = _expect_dict(args[1], "filter")


def _split_calls(text: str, pos: int) -> List[Tuple[str, List[Any]]]:
    """Splits ``.name(args).name(args)...`` into (name, parsed args) pairs."""
    calls = []
    while pos < len(text):
        if text[pos:].strip() == "":
            break
        match = _CALL.match(text, pos)
        if not match or (calls and "." not in text[pos:match.start(1)]):
            raise MongoQueryParseError(f"unexpected text at position {pos}")
        close = _find_closing_paren(text, match.end() - 1)
        raw_args = text[match.end():close].strip()
        args = _loads(f"[{raw_args}]") if raw_args else []
        calls.append((match.group(1), args))
        pos = close + 1
    return calls


def _find_closing_paren(text: str, open_pos: int) -> int:
    depth = 0
    quote = None
    escaped = False
    for i in range(open_pos, len(text)):
        ch = text[i]
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in "\"'":
            quote = ch
        elif ch in "([{":
            depth += 1
        elif ch in ")]}":
            depth -= 1
            if depth == 0:
                if ch != ")":
                    break
                return i
    raise MongoQueryParseError("unbalanced parentheses")


def _single(args: List[Any], name: str) -> Any:
    if len(args) != 1:
        raise MongoQueryParseError(f"{name} takes exactly one argument")
    return args[0]


def _expect_dict(value: Any, name: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise MongoQueryParseError(f"{name} must be a JSON object")
    return value


def _expect_str(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value:
        raise MongoQueryParseError(f"{name} must be a non-empty string")
    return value


def _expect_count(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MongoQueryParseError(f"{name} must be a non-negative integer")
    return value


def _expect_pipeline(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list) or not all(isinstance(stage, dict) for stage in value):
        raise MongoQueryParseError("pipeline must be an array of stage objects")
    return value
