"""
MongoDB access helpers.

`db` is None when DATABASE_URL is not configured; request handlers receive the
handle through the `get_db` dependency in main.py, so tests can substitute an
in-memory database.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

from config import DATABASE_NAME, DATABASE_URL
from errors import AppError, ValidationError

logger = logging.getLogger(__name__)

db: Optional[Database] = None

if DATABASE_URL:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]
    logger.info("MongoDB configured, database=%s", DATABASE_NAME)
else:
    logger.warning("DATABASE_URL not set, database unavailable")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form BSON round-trips."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def obj_id(id_str: Union[str, ObjectId], field: str = "id") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError("Invalid id", errors=[{"field": field, "message": "Invalid id"}])


def create_document(database: Database, collection: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection].insert_one(doc)
    return str(result.inserted_id)


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Make a Mongo document JSON friendly: `_id` -> `id`, ObjectIds -> str, datetimes -> ISO."""
    if not doc:
        return doc
    d = {}
    for k, v in doc.items():
        if k == "_id":
            k = "id"
        d[k] = _serialize_value(v)
    d.pop("password_hash", None)
    return d


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize_list(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [serialize_doc(d) for d in docs]


def collection_name(model_cls) -> str:
    return model_cls.__name__.lower()


def get_db() -> Database:
    """FastAPI dependency yielding the configured database."""
    if db is None:
        raise AppError("Database not available")
    return db
