"""
MongoDB access for the store.

``db`` is the configured database (``None`` when DATABASE_URL/DATABASE_NAME are
not set). ``DocumentStore`` is the generic gateway every service goes through:
create / get_by_id / get_all / query / update / delete against one collection.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

import config
from errors import ServiceUnavailable

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]


def utcnow() -> datetime:
    # Mongo hands datetimes back naive, so keep everything naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(ObjectId())


def serialize_doc(doc):
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


_OPERATORS = {
    "==": None,
    "!=": "$ne",
    "<": "$lt",
    "<=": "$lte",
    ">": "$gt",
    ">=": "$gte",
    "in": "$in",
}

Where = Tuple[str, str, Any]
OrderBy = Tuple[str, str]


def _predicate(where: Where) -> Dict[str, Any]:
    field, op, value = where
    if op not in _OPERATORS:
        raise ValueError(f"Unsupported operator: {op}")
    if field == "id":
        field = "_id"
    mongo_op = _OPERATORS[op]
    return {field: value if mongo_op is None else {mongo_op: value}}


class DocumentStore:
    """Generic CRUD over a pymongo database."""

    def __init__(self, database):
        self.db = database

    def create(self, collection: str, data, doc_id: Optional[str] = None) -> str:
        if isinstance(data, BaseModel):
            data = data.model_dump()
        now = utcnow()
        doc = {**data, "created_at": now, "updated_at": now}
        doc.pop("id", None)
        doc["_id"] = doc_id or new_id()
        self.db[collection].insert_one(doc)
        logger.debug("created %s/%s", collection, doc["_id"])
        return doc["_id"]

    def get_by_id(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return serialize_doc(self.db[collection].find_one({"_id": doc_id}))

    def get_all(
        self,
        collection: str,
        where: Optional[Where] = None,
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        clauses: List[Tuple[str, Any]] = []
        if where:
            clauses.append(("where", where))
        if order_by:
            clauses.append(("order_by", order_by))
        if limit:
            clauses.append(("limit", limit))
        return self.query(collection, clauses)

    def query(self, collection: str, clauses: Sequence[Tuple[str, Any]], skip: int = 0) -> List[Dict[str, Any]]:
        filt: Dict[str, Any] = {}
        sort: List[Tuple[str, int]] = []
        limit = 0
        for kind, value in clauses:
            if kind == "where":
                for field, cond in _predicate(value).items():
                    if field in filt and isinstance(filt[field], dict) and isinstance(cond, dict):
                        filt[field] = {**filt[field], **cond}
                    else:
                        filt[field] = cond
            elif kind == "order_by":
                field, direction = value
                sort.append((field, DESCENDING if direction == "desc" else ASCENDING))
            elif kind == "limit":
                limit = int(value)
            else:
                raise ValueError(f"Unknown query clause: {kind}")
        cursor = self.db[collection].find(filt)
        if sort:
            cursor = cursor.sort(sort)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return [serialize_doc(d) for d in cursor]

    def count(self, collection: str, where: Optional[Where] = None) -> int:
        return self.db[collection].count_documents(_predicate(where) if where else {})

    def update(
        self,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
        expect: Optional[Dict[str, Any]] = None,
        push: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Set ``data`` on one document; ``expect`` makes the write conditional."""
        changes = {k: v for k, v in data.items() if k not in ("id", "_id", "created_at")}
        changes["updated_at"] = utcnow()
        operation: Dict[str, Any] = {"$set": changes}
        if push:
            operation["$push"] = push
        filt = {"_id": doc_id, **(expect or {})}
        res = self.db[collection].update_one(filt, operation)
        return res.matched_count > 0

    def delete(self, collection: str, doc_id: str) -> bool:
        res = self.db[collection].delete_one({"_id": doc_id})
        return res.deleted_count > 0


_store: Optional[DocumentStore] = DocumentStore(db) if db is not None else None


def get_store() -> DocumentStore:
    if _store is None:
        raise ServiceUnavailable("Database not configured")
    return _store
