"""
Database Helper Functions

MongoDB helpers shared by the API handlers. Configure the connection with the
DATABASE_URL and DATABASE_NAME environment variables (a .env file is loaded
if present).
"""

import logging
import os
from datetime import datetime, timezone
from typing import Optional, Union, List, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import MongoClient, ASCENDING, DESCENDING

load_dotenv()

logger = logging.getLogger(__name__)

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]


class DatabaseUnavailable(RuntimeError):
    pass


def _require_db():
    if db is None:
        raise DatabaseUnavailable("Database not configured. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a single document stamped with created_at/updated_at"""
    database = _require_db()

    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()

    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now

    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    sort: Optional[List[Tuple[str, int]]] = None,
) -> list:
    """Get documents from a collection"""
    database = _require_db()

    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)

    return list(cursor)


def ensure_indexes() -> None:
    database = _require_db()
    database["order"].create_index("orderId", unique=True)
    database["order"].create_index([("userId", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index("status")
    database["reservation"].create_index("reservationId", unique=True)
    database["reservation"].create_index([("userId", ASCENDING), ("date", DESCENDING)])
    database["reservation"].create_index([("date", ASCENDING), ("status", ASCENDING)])
    database["user"].create_index("email", unique=True)
    database["loginlog"].create_index([("created_at", DESCENDING)])
    database["notification"].create_index([("userId", ASCENDING), ("created_at", DESCENDING)])
    database["feedback"].create_index([("userId", ASCENDING), ("created_at", DESCENDING)])
    logger.info("Database indexes ensured")
