from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from bson import ObjectId
from bson.decimal128 import Decimal128
from bson.errors import InvalidId
from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

from config import get_settings

_client: Optional[MongoClient] = None


def get_client() -> MongoClient:
    global _client
    if _client is None:
        settings = get_settings()
        _client = MongoClient(settings.database_url, tz_aware=True)
    return _client


def get_db() -> Database:
    return get_client()[get_settings().database_name]


def close_client() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None


# -----------------------------
# Document helpers
# -----------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def oid(obj: Optional[str]) -> Optional[ObjectId]:
    if obj is None:
        return None
    if isinstance(obj, ObjectId):
        return obj
    try:
        return ObjectId(obj)
    except (InvalidId, TypeError):
        return None


def encode(value: Any) -> Any:
    """Convert python values into something BSON can store."""
    if isinstance(value, Decimal):
        return Decimal128(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode(v) for v in value]
    return value


def decode(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, dict):
        return {k: decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode(v) for v in value]
    return value


def to_str_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return decode(d)


def lookup_map(db: Database, collection: str, ids: Iterable[Optional[str]],
               fields: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    """Fetch ``fields`` of the referenced documents, keyed by string id."""
    object_ids = [oid(x) for x in set(ids) if x and oid(x)]
    if not object_ids:
        return {}
    projection = {f: 1 for f in fields}
    return {
        str(d["_id"]): to_str_id(d)
        for d in db[collection].find({"_id": {"$in": object_ids}}, projection)
    }


# -----------------------------
# Indexes & counters
# -----------------------------

IDENTITY_COLLECTIONS = ("wholesaler", "retailer", "salesman")


def ensure_indexes(db: Database) -> None:
    db["connection"].create_index(
        [("wholesaler_id", ASCENDING), ("retailer_id", ASCENDING)], unique=True
    )
    db["connection"].create_index([("wholesaler_id", ASCENDING), ("status", ASCENDING)])
    db["connection"].create_index([("retailer_id", ASCENDING), ("status", ASCENDING)])
    db["order"].create_index("order_number", unique=True)
    db["order"].create_index("retailer_id")
    db["order"].create_index("wholesaler_id")
    db["cart"].create_index(
        [("retailer_id", ASCENDING), ("salesman_id", ASCENDING)], unique=True
    )
    db["product"].create_index("wholesaler_id")
    db["product"].create_index("category")
    db["brand"].create_index([("wholesaler_id", ASCENDING), ("name", ASCENDING)], unique=True)
    db["category"].create_index("name", unique=True)
    db["salesman"].create_index("wholesaler_id")
    for collection in IDENTITY_COLLECTIONS:
        db[collection].create_index("phone", unique=True)
        for field in ("email", "gst_number"):
            # optional identifiers are stored as null when absent
            db[collection].create_index(
                field, unique=True, partialFilterExpression={field: {"$type": "string"}}
            )


def next_sequence(db: Database, key: str) -> int:
    """Atomically increment and return the counter stored under ``key``."""
    doc = db["counter"].find_one_and_update(
        {"_id": key},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int(doc["seq"])
