"""
MongoDB access for the shop.

The connection is configured from DATABASE_URL / DATABASE_NAME. When either is
missing ``db`` stays None and store-backed routes report the store as
unavailable.
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import MongoClient

from errors import StoreUnavailableError, ValidationError

load_dotenv()

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")


def ensure_indexes(database):
    database["user"].create_index("email", unique=True)


if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]
    ensure_indexes(db)


def get_db():
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise StoreUnavailableError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def to_object_id(value: Any) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise ValidationError(f"Invalid id: {value!r}")
    return ObjectId(value)


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> ObjectId:
    """Insert a document with created/updated timestamps and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()

    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now

    result = database[collection_name].insert_one(data_dict)
    return result.inserted_id


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None):
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def populate(database, doc: Optional[dict], field: str, collection_name: str, projection: Optional[dict] = None):
    """Replace the id(s) stored under ``field`` with the referenced documents.

    A single reference that cannot be found becomes None; references inside a
    list that cannot be found are dropped. The list order is preserved.
    """
    if not doc or doc.get(field) is None:
        return doc
    ref = doc[field]
    if isinstance(ref, list):
        found = {d["_id"]: d for d in database[collection_name].find({"_id": {"$in": ref}}, projection)}
        doc[field] = [found[r] for r in ref if r in found]
    else:
        doc[field] = database[collection_name].find_one({"_id": ref}, projection)
    return doc


def serialize_doc(doc):
    """Make a stored document JSON friendly: _id -> id, ObjectId -> str, datetime -> ISO."""
    if isinstance(doc, list):
        return [serialize_doc(d) for d in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    if not isinstance(doc, dict):
        return doc

    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif k == "password_hash":
            continue
        else:
            out[k] = serialize_doc(v)
    return out
