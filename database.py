"""
MongoDB connection and document helpers

`db` is None when the service runs on the in-memory session store, so callers
(and the /test endpoint) must check it before use.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

from config import settings

logger = logging.getLogger(__name__)

db: Optional[Database] = None

if settings.SESSION_STORE == "mongo" and settings.DATABASE_URL:
    # tz_aware keeps stored datetimes comparable with timezone-aware "now"
    _client = MongoClient(
        settings.DATABASE_URL,
        tz_aware=True,
        serverSelectionTimeoutMS=5000,
    )
    db = _client[settings.DATABASE_NAME]
    logger.info(f"Using MongoDB database: {settings.DATABASE_NAME}")


def _require_db() -> Database:
    if db is None:
        raise RuntimeError("Database not available, set DATABASE_URL and SESSION_STORE=mongo")
    return db


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document and return its id as a string"""
    database = _require_db()
    if isinstance(data, BaseModel):
        doc = data.model_dump(mode="python")
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Return documents matching filter_dict, up to limit"""
    database = _require_db()
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
