"""
Database helpers

MongoDB connection shared by the API. Collections are named after the
lowercase schema class: "user", "product", "order".
"""

import logging
import os
from datetime import datetime
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from errors import StoreFailure

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def get_db():
    if db is None:
        raise StoreFailure("Database not configured")
    return db


def create_document(collection_name: str, data, database=None) -> str:
    """Insert a model or dict with timestamps and return the new id."""
    database = database if database is not None else get_db()
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, database=None):
    database = database if database is not None else get_db()
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database):
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["order"].create_index(
        [("user_id", ASCENDING), ("idempotency_key", ASCENDING)], unique=True
    )
    database["order"].create_index([("points_credited", ASCENDING)])
    logger.info("Indexes ensured on %s", getattr(database, "name", "database"))


def serialize_doc(doc: Optional[dict]):
    if not doc:
        return None
    out = dict(doc)
    if "_id" in out:
        out["_id"] = str(out["_id"])
    for k, v in out.items():
        if isinstance(v, datetime):
            out[k] = v.isoformat()
    for review in out.get("reviews", []) or []:
        if isinstance(review.get("created_at"), datetime):
            review["created_at"] = review["created_at"].isoformat()
    return out
