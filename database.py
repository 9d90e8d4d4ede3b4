"""
MongoDB access for the Canvas Store.

`db` is None when DATABASE_URL is not configured; endpoints then answer 503
through get_db(). Collections are named after the lowercased schema class.
"""
import os
from datetime import datetime, timezone
from enum import Enum

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient

from errors import NotFoundError, UpstreamError

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "canvas_store")

client = MongoClient(DATABASE_URL) if DATABASE_URL else None
db = client[DATABASE_NAME] if client is not None else None


class DatabaseUnavailable(UpstreamError):
    status_code = 503


def get_db():
    if db is None:
        raise DatabaseUnavailable("Database not configured")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _bsonable(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _bsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_bsonable(v) for v in value]
    return value


def to_document(data) -> dict:
    """Pydantic model or dict -> plain dict that pymongo can encode."""
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude={"id"})
    return _bsonable(dict(data))


def to_str_id(doc: dict) -> dict:
    if not doc:
        return doc
    d = dict(doc)
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    return d


def ensure_object_id(id_str: str, what: str = "Record") -> ObjectId:
    # a malformed id can't match any record, so it reads as missing
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise NotFoundError(f"{what} not found")


def create_document(database, collection_name: str, data) -> str:
    doc = to_document(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    inserted_id = database[collection_name].insert_one(doc).inserted_id
    return str(inserted_id)


def get_documents(database, collection_name: str, filter_dict: dict = None, limit: int = None, sort=None):
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
