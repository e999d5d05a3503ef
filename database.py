"""
MongoDB access for the campus content hub.

The client is created once at import time from DATABASE_URL/DATABASE_NAME.
Routes receive the database through the ``get_db`` dependency so tests can
swap in another database with ``app.dependency_overrides``.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

from settings import DATABASE_NAME, DATABASE_URL

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured. Please set DATABASE_URL and DATABASE_NAME.")
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes that are already UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def oid(id_str: Any) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(str(id_str))
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail=f"Invalid id: {id_str}")


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> ObjectId:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    data_dict["created_at"] = now()
    data_dict["updated_at"] = now()
    result = database[collection_name].insert_one(data_dict)
    return result.inserted_id


def get_or_404(database: Database, collection_name: str, doc_id: Any, label: Optional[str] = None) -> dict:
    doc = database[collection_name].find_one({"_id": oid(doc_id)})
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label or collection_name.capitalize()} not found with id of {doc_id}")
    return doc


def clean(doc: Any):
    """Make a Mongo document JSON-friendly: ``_id`` becomes ``id``, ObjectIds and datetimes become strings."""
    if isinstance(doc, list):
        return [clean(d) for d in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    if not isinstance(doc, dict):
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        else:
            out[k] = clean(v)
    return out


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["subject"].create_index("code", unique=True)
    database["chat"].create_index("users")
    database["message"].create_index([("chat", 1), ("created_at", -1)])
    database["notification"].create_index([("user", 1), ("created_at", -1)])
