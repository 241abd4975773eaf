"""MongoDB access helpers.

The connection is opened once at import from ``DATABASE_URL``. Routers receive
the database through the ``get_db`` dependency so that tests can swap it.
"""
import logging
from datetime import datetime
from typing import Iterable, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import DATABASE_URL, DATABASE_NAME
from errors import DatabaseUnavailableError, InvalidInputError, NotFoundError

log = logging.getLogger("shop.database")

_client = MongoClient(DATABASE_URL) if DATABASE_URL else None
db: Optional[Database] = _client[DATABASE_NAME] if _client is not None else None


def get_db() -> Database:
    if db is None:
        raise DatabaseUnavailableError()
    return db


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["category"].create_index("slug", unique=True)
    database["cart"].create_index("user_id", unique=True)
    database["coupon"].create_index("code", unique=True)
    database["product"].create_index([("category_id", ASCENDING), ("is_active", ASCENDING)])
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["promotion"].create_index([("target_type", ASCENDING), ("target_id", ASCENDING)])
    database["promotion"].create_index([("starts_at", ASCENDING), ("ends_at", ASCENDING)])
    log.info("Indexes ensured on %s", database.name)


def to_obj_id(id_str: str) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    if not id_str or not ObjectId.is_valid(id_str):
        raise InvalidInputError("Invalid id format")
    return ObjectId(id_str)


def serialize(doc: Optional[dict], exclude: Iterable[str] = ()) -> Optional[dict]:
    """Return a JSON friendly copy of a document with ``_id`` exposed as ``id``."""
    if not doc:
        return doc
    out = {k: v for k, v in doc.items() if k not in exclude}
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    return out


def find_by_id(database: Database, collection_name: str, id_str: str, entity: str) -> dict:
    doc = database[collection_name].find_one({"_id": to_obj_id(id_str)})
    if not doc:
        raise NotFoundError(entity, id_str)
    return doc


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = datetime.utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    inserted_id = database[collection_name].insert_one(doc).inserted_id
    return str(inserted_id)
