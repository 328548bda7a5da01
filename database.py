"""
MongoDB access.

The client is created lazily by pymongo, so importing this module never
opens a connection. `db` stays None when DATABASE_URL / DATABASE_NAME are
not configured; routes obtain it through main.get_db which reports that
as a 503.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.errors import DuplicateKeyError

import config

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL)
    db = _client[config.DATABASE_NAME]
else:
    logger.warning("DATABASE_URL or DATABASE_NAME not set; database is unavailable")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, dict], database=None) -> ObjectId:
    """Insert a document, stamping created_at/updated_at. Returns the new id."""
    target = database if database is not None else db
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc.setdefault("updated_at", now)
    return target[collection_name].insert_one(doc).inserted_id


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, database=None) -> List[Dict[str, Any]]:
    target = database if database is not None else db
    cursor = target[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


# One record per (video, user) like and per (channel, subscriber) pair
UNIQUE_INDEXES = [
    ("like", [("video", ASCENDING), ("liked_by", ASCENDING)]),
    ("subscription", [("channel", ASCENDING), ("subscriber", ASCENDING)]),
    ("user", [("email", ASCENDING)]),
    ("user", [("username", ASCENDING)]),
]


def ensure_indexes(database=None) -> None:
    target = database if database is not None else db
    if target is None:
        return
    for collection_name, keys in UNIQUE_INDEXES:
        target[collection_name].create_index(keys, unique=True)


def toggle_document(collection_name: str, key: dict, data: BaseModel, database=None) -> bool:
    """
    Delete the document matching key, or create it when there is none.

    Both branches are single atomic writes, and the unique indexes keep
    concurrent creates from producing duplicates. Returns True when the
    document exists afterwards.
    """
    target = database if database is not None else db
    collection = target[collection_name]
    if collection.delete_one(key).deleted_count:
        return False

    now = utcnow()
    fields = {k: v for k, v in data.model_dump().items() if k not in key}
    fields.setdefault("created_at", now)
    fields.setdefault("updated_at", now)
    try:
        collection.update_one(key, {"$setOnInsert": fields}, upsert=True)
    except DuplicateKeyError:
        # A concurrent request created the same document first
        logger.info(f"{collection_name} {key} already created by a concurrent request")
    return True
