"""
MongoDB access helpers.

The connection is opened once at import time when DATABASE_URL and
DATABASE_NAME are set. Route handlers receive the database through the
`get_db` dependency so tests can swap in another one.
"""

from datetime import datetime, timezone
from typing import Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from config import DATABASE_NAME, DATABASE_URL

_client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid id")


def create_document(database, collection_name: str, data: Union[BaseModel, dict], _id: Optional[ObjectId] = None) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    if _id is not None:
        data_dict["_id"] = _id
    stamp = now_utc()
    data_dict.setdefault("created_at", stamp)
    data_dict["updated_at"] = stamp
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def serialize(doc: Optional[dict]) -> Optional[dict]:
    """Replace Mongo's _id with a string id for JSON responses."""
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    return out


def ensure_indexes(database) -> None:
    database["ledger"].create_index([("key", ASCENDING)], unique=True)
    database["ledger"].create_index([("entity_type", ASCENDING), ("entity_id", ASCENDING), ("created_at", ASCENDING)])
    database["cod_ledger"].create_index([("order_id", ASCENDING)], unique=True)
    database["restaurant_wallet"].create_index([("restaurant_id", ASCENDING)], unique=True)
    database["rider"].create_index([("user_id", ASCENDING)], unique=True)
    database["order"].create_index([("rider_id", ASCENDING), ("status", ASCENDING)])
    database["order"].create_index([("restaurant_id", ASCENDING)])
    database["order"].create_index([("customer_id", ASCENDING)])
