"""
Database access

MongoDB connection, document helpers and the lazily-resolved query object the
rest of the app builds on. Collections are named after the lowercased schema
class (Tour -> "tour", User -> "user", Review -> "review").

Default visibility (secret tours, deactivated users) is not a global hook: each
Repository carries its own `scope` filter, and every read takes an explicit
`include_hidden_docs` flag to bypass it.
"""

import os
import time
import logging
import functools
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from bson import ObjectId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument

from errors import AppError

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]

VERSION_KEY = "__v"
# written by create_document/update, never taken from request bodies
SYSTEM_FIELDS = ("_id", VERSION_KEY, "created_at", "updated_at")


def get_collection(name: str):
    if db is None:
        raise AppError("Database not configured", 500)
    return db[name]


def _as_dict(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump(exclude_none=True)
    return dict(data)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with timestamps and a revision counter; return its id."""
    doc = _as_dict(data)
    now = datetime.utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    doc[VERSION_KEY] = 0
    result = get_collection(collection_name).insert_one(doc)
    return str(result.inserted_id)


def serialize(value: Any) -> Any:
    """Make a stored document JSON-friendly: ObjectIds become strings, recursively."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize(v) for v in value]
    return value


def timed(fn):
    """Log how long resolving a query took."""

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        start = time.perf_counter()
        result = fn(self, *args, **kwargs)
        logger.debug(
            "%s.%s took %.1f ms",
            self.collection.name,
            fn.__name__,
            (time.perf_counter() - start) * 1000,
        )
        return result

    return wrapper


class PendingQuery:
    """A find() that has not hit the database yet.

    Conditions, sort keys, projection, skip and limit accumulate through
    chainable calls; nothing is sent until `all()`, `first()` or `count()`.
    Fields listed in `hidden` are never returned unless `include_hidden()`
    names them.
    """

    def __init__(self, collection, conditions: Optional[Dict[str, Any]] = None, hidden: Iterable[str] = ()):
        self.collection = collection
        self.conditions: List[Dict[str, Any]] = []
        self.sort_keys: List[Tuple[str, int]] = []
        self.projection: Optional[Dict[str, int]] = None
        self.skip_count = 0
        self.limit_count = 0
        self.hidden = set(hidden)
        if conditions:
            self.conditions.append(conditions)

    def find(self, conditions: Dict[str, Any]) -> "PendingQuery":
        if conditions:
            self.conditions.append(conditions)
        return self

    def sort(self, keys: Union[str, List[Tuple[str, int]]]) -> "PendingQuery":
        """Accepts a list of (field, direction) pairs or a "-price name" string."""
        if isinstance(keys, str):
            keys = [
                (k[1:], DESCENDING) if k.startswith("-") else (k, ASCENDING)
                for k in keys.split()
            ]
        self.sort_keys = list(keys)
        return self

    def select(self, projection: Dict[str, int]) -> "PendingQuery":
        self.projection = dict(projection)
        return self

    def skip(self, count: int) -> "PendingQuery":
        self.skip_count = count
        return self

    def limit(self, count: int) -> "PendingQuery":
        self.limit_count = count
        return self

    def include_hidden(self, *fields: str) -> "PendingQuery":
        self.hidden.difference_update(fields)
        return self

    @property
    def filter(self) -> Dict[str, Any]:
        if not self.conditions:
            return {}
        if len(self.conditions) == 1:
            return self.conditions[0]
        return {"$and": self.conditions}

    def _projection(self) -> Optional[Dict[str, int]]:
        projection = dict(self.projection or {})
        inclusive = any(v for k, v in projection.items() if k != "_id")
        if inclusive:
            for field in self.hidden:
                projection.pop(field, None)
            if any(v for k, v in projection.items() if k != "_id"):
                return projection
            projection = {}
        for field in self.hidden:
            projection[field] = 0
        return projection or None

    def cursor(self):
        cursor = self.collection.find(self.filter, self._projection())
        if self.sort_keys:
            cursor = cursor.sort(self.sort_keys)
        if self.skip_count:
            cursor = cursor.skip(self.skip_count)
        if self.limit_count:
            cursor = cursor.limit(self.limit_count)
        return cursor

    @timed
    def all(self) -> List[Dict[str, Any]]:
        return list(self.cursor())

    @timed
    def first(self) -> Optional[Dict[str, Any]]:
        return self.collection.find_one(self.filter, self._projection())

    @timed
    def count(self) -> int:
        return self.collection.count_documents(self.filter)


class Repository:
    """Collection access with an explicit default visibility scope."""

    collection_name: str = ""
    scope: Dict[str, Any] = {}
    hidden_fields: Tuple[str, ...] = ()

    @property
    def collection(self):
        return get_collection(self.collection_name)

    def _scoped(self, conditions: Optional[Dict[str, Any]], include_hidden_docs: bool) -> Dict[str, Any]:
        parts = [c for c in (conditions, None if include_hidden_docs else self.scope) if c]
        if not parts:
            return {}
        if len(parts) == 1:
            return parts[0]
        return {"$and": parts}

    def query(self, conditions: Optional[Dict[str, Any]] = None, include_hidden_docs: bool = False) -> PendingQuery:
        return PendingQuery(
            self.collection,
            self._scoped(conditions, include_hidden_docs),
            hidden=self.hidden_fields + (VERSION_KEY,),
        )

    def get(self, doc_id: Union[str, ObjectId], include_hidden_docs: bool = False) -> Optional[Dict[str, Any]]:
        return self.query({"_id": ObjectId(doc_id)}, include_hidden_docs).first()

    def create(self, data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
        doc_id = create_document(self.collection_name, data)
        return self.get(doc_id, include_hidden_docs=True)

    def update(
        self,
        doc_id: Union[str, ObjectId],
        fields: Dict[str, Any],
        unset: Iterable[str] = (),
        include_hidden_docs: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Apply a partial update and return the updated document, or None."""
        change: Dict[str, Any] = {
            "$set": dict(fields, updated_at=datetime.utcnow()),
            "$inc": {VERSION_KEY: 1},
        }
        unset = list(unset)
        if unset:
            change["$unset"] = {field: "" for field in unset}
        projection = {field: 0 for field in self.hidden_fields + (VERSION_KEY,)}
        return self.collection.find_one_and_update(
            self._scoped({"_id": ObjectId(doc_id)}, include_hidden_docs),
            change,
            projection=projection,
            return_document=ReturnDocument.AFTER,
        )

    def delete(self, doc_id: Union[str, ObjectId]) -> bool:
        result = self.collection.delete_one({"_id": ObjectId(doc_id)})
        return result.deleted_count > 0

    @timed
    def aggregate(self, pipeline: List[Dict[str, Any]], include_hidden_docs: bool = False) -> List[Dict[str, Any]]:
        if not include_hidden_docs and self.scope:
            pipeline = [{"$match": self.scope}] + list(pipeline)
        return list(self.collection.aggregate(pipeline))


class TourRepository(Repository):
    collection_name = "tour"
    scope = {"secret_tour": {"$ne": True}}


class UserRepository(Repository):
    collection_name = "user"
    scope = {"active": {"$ne": False}}
    hidden_fields = ("password", "active")


class ReviewRepository(Repository):
    collection_name = "review"


tours = TourRepository()
users = UserRepository()
reviews = ReviewRepository()
