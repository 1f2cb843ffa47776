"""
Database Helper Functions

MongoDB helpers for the dashboard collections. Documents are schema-less and
shared with the mobile clients, so keys stay camelCase and ids are strings:
store-generated ids are ObjectIds, externally keyed documents
(driverLocations/<driverId>, staffSessions/<email>) use the key itself.
"""

from datetime import datetime, timezone
from typing import Union, Optional, List

from bson import ObjectId
from pymongo import MongoClient
from pymongo.errors import PyMongoError
from pydantic import BaseModel

from config import settings

_client = None
db = None

if settings.database_url and settings.database_name:
    _client = MongoClient(settings.database_url, tz_aware=True)
    db = _client[settings.database_name]


class DatabaseUnavailable(Exception):
    """Raised when the store is not configured or a call to it fails."""


def _ensure_db():
    if db is None:
        raise DatabaseUnavailable("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def _to_dict(data: Union[BaseModel, dict]) -> dict:
    if isinstance(data, BaseModel):
        return data.model_dump(by_alias=True)
    return dict(data)


def _id_query(_id: str) -> dict:
    if ObjectId.is_valid(_id):
        return {"_id": {"$in": [ObjectId(_id), _id]}}
    return {"_id": _id}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# CRUD helpers

def create_document(collection_name: str, data: Union[BaseModel, dict], doc_id: Optional[str] = None) -> str:
    store = _ensure_db()
    payload = _to_dict(data)
    payload.setdefault("createdAt", utcnow())
    if doc_id is not None:
        payload["_id"] = doc_id
    try:
        result = store[collection_name].insert_one(payload)
    except PyMongoError as exc:
        raise DatabaseUnavailable(str(exc)) from exc
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, sort: Optional[list] = None) -> List[dict]:
    store = _ensure_db()
    try:
        cursor = store[collection_name].find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(int(limit))
        return [serialize_doc(doc) for doc in cursor]
    except PyMongoError as exc:
        raise DatabaseUnavailable(str(exc)) from exc


def get_document_by_id(collection_name: str, _id: str) -> Optional[dict]:
    store = _ensure_db()
    try:
        doc = store[collection_name].find_one(_id_query(_id))
    except PyMongoError as exc:
        raise DatabaseUnavailable(str(exc)) from exc
    return serialize_doc(doc) if doc else None


def update_document(collection_name: str, _id: str, update_data: Union[BaseModel, dict]) -> bool:
    """Merge fields into an existing document. Returns False when it does not exist."""
    store = _ensure_db()
    update = {"$set": _to_dict(update_data)}
    update["$set"]["updatedAt"] = utcnow()
    try:
        result = store[collection_name].update_one(_id_query(_id), update)
    except PyMongoError as exc:
        raise DatabaseUnavailable(str(exc)) from exc
    return result.matched_count > 0


def set_document(collection_name: str, _id: str, data: Union[BaseModel, dict]) -> None:
    """Merge fields into the document keyed by `_id`, creating it if needed."""
    store = _ensure_db()
    try:
        store[collection_name].update_one({"_id": _id}, {"$set": _to_dict(data)}, upsert=True)
    except PyMongoError as exc:
        raise DatabaseUnavailable(str(exc)) from exc


def delete_document(collection_name: str, _id: str) -> bool:
    store = _ensure_db()
    try:
        result = store[collection_name].delete_one(_id_query(_id))
    except PyMongoError as exc:
        raise DatabaseUnavailable(str(exc)) from exc
    return result.deleted_count > 0


def list_collection_names() -> List[str]:
    return _ensure_db().list_collection_names()


# Utility

def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d
