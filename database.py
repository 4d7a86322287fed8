"""
Database helpers

MongoDB access shared by every service. Collections follow the schema
convention: the collection name is the lowercase of the schema class name
(Recipe -> "recipe").
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient

from config import Config

logger = logging.getLogger(__name__)

DATABASE_URL = Config.DATABASE_URL
DATABASE_NAME = Config.DATABASE_NAME

client = None
db = None


def init_db(mongo_client=None, name: Optional[str] = None, url: Optional[str] = None):
    """Bind the module level database handle. Tests pass a mongomock client."""
    global client, db
    client = mongo_client if mongo_client is not None else MongoClient(url or DATABASE_URL, connect=False)
    db = client[name or DATABASE_NAME]
    return db


def get_db():
    if db is None:
        init_db()
    return db


def utcnow() -> datetime:
    # Mongo hands datetimes back naive, so store them naive in UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    """Convert a stored document into a JSON friendly dict with a string id."""
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for k, v in list(d.items()):
        if isinstance(v, ObjectId):
            d[k] = str(v)
    return d


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database=None) -> str:
    database = database if database is not None else get_db()
    if isinstance(data, BaseModel):
        payload = data.model_dump()
    else:
        payload = dict(data)
    now = utcnow()
    payload.setdefault("created_at", now)
    payload.setdefault("updated_at", now)
    result = database[collection_name].insert_one(payload)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  sort: Optional[list] = None, skip: int = 0, database=None) -> List[dict]:
    database = database if database is not None else get_db()
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
