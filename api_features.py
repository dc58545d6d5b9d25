"""
Generic list-endpoint features: filter, sort, field selection and pagination
over a PendingQuery, driven by the raw query string.

    features = (
        APIFeatures(tours.query(), parse_query_params(request.query_params), TOUR_FIELD_TYPES)
        .filter()
        .sort()
        .limit_fields()
        .paginate()
    )
    docs = features.query.all()
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from pymongo import ASCENDING, DESCENDING

from database import PendingQuery, VERSION_KEY
from errors import AppError

RESERVED_PARAMS = ("page", "sort", "limit", "fields")
DEFAULT_SORT = "-created_at"
DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10

_BRACKET_KEY = re.compile(r"^(\w+)\[(\w+)\]$")


class ComparisonOperator(str, Enum):
    GTE = "gte"
    GT = "gt"
    LTE = "lte"
    LT = "lt"

    @property
    def mongo(self) -> str:
        return f"${self.value}"


def parse_query_params(params: Iterable[Tuple[str, str]]) -> Dict[str, Any]:
    """Turn `price[lt]=500&difficulty=easy` pairs into {"price": {"lt": "500"}, "difficulty": "easy"}.

    Accepts a starlette QueryParams or any iterable of (key, value) pairs. The
    last value wins for repeated keys.
    """
    items = params.multi_items() if hasattr(params, "multi_items") else params
    parsed: Dict[str, Any] = {}
    for key, value in items:
        match = _BRACKET_KEY.match(key)
        if match:
            field, op = match.groups()
            current = parsed.get(field)
            if not isinstance(current, dict):
                current = parsed[field] = {}
            current[op] = value
        else:
            parsed[key] = value
    return parsed


def _cast(field: str, value: Any, types: Mapping[str, type]) -> Any:
    target = types.get(field)
    if target is None or not isinstance(value, str):
        return value
    try:
        if target is bool:
            if value.lower() not in ("true", "false", "1", "0"):
                raise ValueError(value)
            return value.lower() in ("true", "1")
        if target is datetime:
            return datetime.fromisoformat(value)
        return target(value)
    except ValueError:
        raise AppError(f"Invalid {field}: {value}", 400)


def _to_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


class APIFeatures:
    """Applies request-driven transformations to a pending query.

    Each step mutates `self.query` and returns self, so steps chain in any
    order. The query is not executed here.
    """

    def __init__(self, query: PendingQuery, query_string: Mapping[str, Any], field_types: Optional[Mapping[str, type]] = None):
        self.query = query
        self.query_string = dict(query_string)
        self.field_types = field_types or {}

    def _is_hidden(self, field: str) -> bool:
        return field.split(".")[0] in getattr(self.query, "hidden", ())

    def build_conditions(self) -> Dict[str, Any]:
        """The filter condition set, with reserved and hidden keys dropped and comparison operators mapped."""
        conditions: Dict[str, Any] = {}
        for field, value in self.query_string.items():
            if field in RESERVED_PARAMS or self._is_hidden(field):
                continue
            if isinstance(value, Mapping):
                ops: Dict[str, Any] = {}
                for op, operand in value.items():
                    try:
                        operator = ComparisonOperator(op)
                    except ValueError:
                        raise AppError(f"Invalid query operator: {op}", 400)
                    ops[operator.mongo] = _cast(field, operand, self.field_types)
                conditions[field] = ops
            else:
                conditions[field] = _cast(field, value, self.field_types)
        return conditions

    def filter(self) -> "APIFeatures":
        self.query = self.query.find(self.build_conditions())
        return self

    def sort(self) -> "APIFeatures":
        sort_by = self.query_string.get("sort") or DEFAULT_SORT
        keys = []
        for field in str(sort_by).split(","):
            field = field.strip()
            name = field.lstrip("-")
            if not name or self._is_hidden(name):
                continue
            keys.append((name, DESCENDING if field.startswith("-") else ASCENDING))
        if not keys:
            keys = [(DEFAULT_SORT[1:], DESCENDING)]
        self.query = self.query.sort(keys)
        return self

    def limit_fields(self) -> "APIFeatures":
        fields = self.query_string.get("fields")
        if fields:
            projection = {}
            for field in str(fields).split(","):
                field = field.strip()
                if field.startswith("-"):
                    projection[field[1:]] = 0
                elif field:
                    projection[field] = 1
            # mongo rejects mixed inclusion/exclusion
            if any(projection.values()):
                projection = {k: v for k, v in projection.items() if v}
            self.query = self.query.select(projection)
        else:
            self.query = self.query.select({VERSION_KEY: 0})
        return self

    def paginate(self) -> "APIFeatures":
        page = _to_int(self.query_string.get("page"), DEFAULT_PAGE)
        limit = _to_int(self.query_string.get("limit"), DEFAULT_LIMIT)
        self.query = self.query.skip((page - 1) * limit).limit(limit)
        return self
