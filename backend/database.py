"""
MongoDB access for the marketplace.

Database wraps a pymongo database handle together with the change feed its
writes are published to, so every insert/update/delete made through it reaches
live subscribers. Rows leave this module as plain dicts with ``_id`` rendered as
a string ``id``.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from errors import NotFound, RemoteOperationFailed
from realtime import DELETE, INSERT, UPDATE, ChangeEvent, ChangeFeed

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")


def connect(url: Optional[str] = DATABASE_URL, name: Optional[str] = DATABASE_NAME):
    if not url or not name:
        logger.warning("DATABASE_URL/DATABASE_NAME not set, running without a database")
        return None
    client = MongoClient(url)
    return client[name]


def to_object_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise NotFound(f"Invalid ID: {id_str}")


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Database:
    def __init__(self, db, feed: Optional[ChangeFeed] = None):
        self.db = db
        self.feed = feed or ChangeFeed()

    @property
    def available(self) -> bool:
        return self.db is not None

    @property
    def name(self) -> Optional[str]:
        return getattr(self.db, "name", None)

    def collection(self, name: str):
        if self.db is None:
            raise RemoteOperationFailed("Database not configured")
        return self.db[name]

    def list_collection_names(self) -> List[str]:
        if self.db is None:
            raise RemoteOperationFailed("Database not configured")
        try:
            return self.db.list_collection_names()
        except PyMongoError as e:
            raise RemoteOperationFailed(str(e))

    def publish(self, table: str, event_type: str, new: Optional[dict] = None, old: Optional[dict] = None):
        self.feed.publish(ChangeEvent(table=table, event_type=event_type, new=new or {}, old=old or {}))

    def create_document(self, collection_name: str, data: Union[BaseModel, Dict[str, Any]], publish: bool = True) -> dict:
        if isinstance(data, BaseModel):
            data = data.model_dump()
        doc = dict(data)
        now = _now()
        doc.setdefault("created_at", now)
        doc["updated_at"] = now
        try:
            result = self.collection(collection_name).insert_one(doc)
        except PyMongoError as e:
            logger.error(f"Insert into {collection_name} failed: {e}")
            raise RemoteOperationFailed(str(e))
        doc["_id"] = result.inserted_id
        row = serialize(doc)
        if publish:
            self.publish(collection_name, INSERT, new=row)
        return row

    def get_documents(self, collection_name: str, filter_dict: Optional[dict] = None, sort: Optional[list] = None, limit: Optional[int] = None) -> List[dict]:
        try:
            cursor = self.collection(collection_name).find(filter_dict or {})
            if sort:
                cursor = cursor.sort(sort)
            if limit:
                cursor = cursor.limit(limit)
            return [serialize(d) for d in cursor]
        except PyMongoError as e:
            logger.error(f"Query on {collection_name} failed: {e}")
            raise RemoteOperationFailed(str(e))

    def get_document(self, collection_name: str, doc_id: str) -> dict:
        try:
            doc = self.collection(collection_name).find_one({"_id": to_object_id(doc_id)})
        except PyMongoError as e:
            logger.error(f"Lookup in {collection_name} failed: {e}")
            raise RemoteOperationFailed(str(e))
        if not doc:
            raise NotFound(f"{collection_name[:-1].capitalize()} not found")
        return serialize(doc)

    def update_document(self, collection_name: str, doc_id: str, updates: dict, publish: bool = True) -> dict:
        updates = {**updates, "updated_at": _now()}
        updates.pop("id", None)
        updates.pop("_id", None)
        try:
            res = self.collection(collection_name).update_one({"_id": to_object_id(doc_id)}, {"$set": updates})
        except PyMongoError as e:
            logger.error(f"Update on {collection_name} failed: {e}")
            raise RemoteOperationFailed(str(e))
        if res.matched_count == 0:
            raise NotFound(f"{collection_name[:-1].capitalize()} not found")
        row = self.get_document(collection_name, doc_id)
        if publish:
            self.publish(collection_name, UPDATE, new=row)
        return row

    def update_documents(self, collection_name: str, doc_ids: List[str], updates: dict) -> List[dict]:
        ids = [to_object_id(i) for i in doc_ids]
        updates = {**updates, "updated_at": _now()}
        try:
            self.collection(collection_name).update_many({"_id": {"$in": ids}}, {"$set": updates})
        except PyMongoError as e:
            logger.error(f"Bulk update on {collection_name} failed: {e}")
            raise RemoteOperationFailed(str(e))
        rows = self.get_documents(collection_name, {"_id": {"$in": ids}})
        for row in rows:
            self.publish(collection_name, UPDATE, new=row)
        return rows

    def delete_document(self, collection_name: str, doc_id: str) -> dict:
        old = self.get_document(collection_name, doc_id)
        try:
            self.collection(collection_name).delete_one({"_id": to_object_id(doc_id)})
        except PyMongoError as e:
            logger.error(f"Delete on {collection_name} failed: {e}")
            raise RemoteOperationFailed(str(e))
        self.publish(collection_name, DELETE, old=old)
        return old

    def delete_documents(self, collection_name: str, filter_dict: dict) -> int:
        """Bulk delete for platform-owned collections; nothing is published."""
        try:
            return self.collection(collection_name).delete_many(filter_dict).deleted_count
        except PyMongoError as e:
            logger.error(f"Delete on {collection_name} failed: {e}")
            raise RemoteOperationFailed(str(e))
