"""
MongoDB access helpers.

Collections are named after the lowercase record kind: user, employee,
department, leave, salary.
"""
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import Settings

logger = logging.getLogger(__name__)


def connect(settings: Settings) -> Database:
    client = MongoClient(settings.database_url)
    logger.info("Using database %s", settings.database_name)
    return client[settings.database_name]


def ensure_indexes(db: Database) -> None:
    db['user'].create_index([("email", ASCENDING)], unique=True)
    db['department'].create_index([("name", ASCENDING)], unique=True)
    db['employee'].create_index([("userId", ASCENDING)])
    db['leave'].create_index([("employeeId", ASCENDING)])
    db['salary'].create_index([("employeeId", ASCENDING), ("payDate", ASCENDING)])


def to_bson(value: Any) -> Any:
    # BSON has no plain date type
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, dict):
        return {k: to_bson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_bson(v) for v in value]
    return value


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    doc = data.model_dump(by_alias=True) if isinstance(data, BaseModel) else dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("createdAt", now)
    doc["updatedAt"] = now
    result = db[collection_name].insert_one(to_bson(doc))
    return str(result.inserted_id)


def get_documents(db: Database, collection_name: str,
                  filter_dict: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    return list(db[collection_name].find(filter_dict or {}))


def find_by_ids(db: Database, collection_name: str, ids: List[ObjectId],
                projection: Optional[Dict[str, int]] = None) -> Dict[str, Dict[str, Any]]:
    """Fetch documents by _id in one query, keyed by the string form of the id."""
    wanted = [i for i in set(ids) if i is not None]
    if not wanted:
        return {}
    return {str(d['_id']): d for d in db[collection_name].find({"_id": {"$in": wanted}}, projection)}
