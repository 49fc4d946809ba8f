"""
Database access for the Community Savings admin API

Owns the MongoDB client and a couple of small helpers shared by the
endpoints. When DATABASE_URL / DATABASE_NAME are not configured `db` stays
None and callers answer with a 500.
"""
import logging
import os
from datetime import datetime, timezone
from typing import List, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# Compound index the annual report range queries are hinted to.
RECORD_INDEX_NAME = "user_id_1_timestamp_-1"
RECORD_INDEX_KEYS = [("user_id", ASCENDING), ("timestamp", DESCENDING)]

_client: Optional[MongoClient] = None
db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document and return its id as a string."""
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")

    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()

    data_dict.setdefault("created_at", datetime.now(timezone.utc))
    data_dict["updated_at"] = datetime.now(timezone.utc)

    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None,
                  sort: Optional[list] = None, limit: Optional[int] = None) -> List[dict]:
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")

    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes() -> None:
    """Create the indexes the report queries rely on.

    Failures are only logged: reports fall back to unindexed queries.
    """
    if db is None:
        return
    for name in ("deposits", "loans"):
        try:
            db[name].create_index(RECORD_INDEX_KEYS, name=RECORD_INDEX_NAME)
        except PyMongoError as e:
            logger.warning("Could not create %s on %s: %s", RECORD_INDEX_NAME, name, e)
    try:
        db["sessions"].create_index("token", unique=True)
        db["interest"].create_index([("timestamp", DESCENDING)])
    except PyMongoError as e:
        logger.warning("Could not create auxiliary indexes: %s", e)
