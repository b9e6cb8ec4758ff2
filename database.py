"""
MongoDB access.

`db` is the process-wide database handle (None when DATABASE_URL or
DATABASE_NAME is not configured). Route handlers receive it through the
`get_db` dependency so tests can swap in another database.
"""
import logging
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo import MongoClient
from pymongo.database import Database

from config import DATABASE_URL, DATABASE_NAME

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000)
    db = _client[DATABASE_NAME]


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    return db


def ping(database: Optional[Database]) -> None:
    """Round-trip to the server. Raises when the database is unreachable."""
    if database is None:
        raise RuntimeError("DATABASE_URL and DATABASE_NAME must be set")
    database.command("ping")
    logger.info("MongoDB connected: %s", database.name)


def parse_object_id(value: Any) -> Optional[ObjectId]:
    """Return an ObjectId for `value`, or None when it is not a valid id."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc
