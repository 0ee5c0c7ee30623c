"""Document store abstraction and MongoDB connection manager."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING

from mailsync.core.config import settings

logger = logging.getLogger(__name__)

Filter = Dict[str, Any]
Sort = List[Tuple[str, int]]


class DocumentCollection(ABC):
    """
    A keyed collection of documents.

    Documents are plain dicts carrying a string "id". Every call is atomic
    per document; nothing assumes multi-document transactions. Filters use
    MongoDB syntax (equality, $in, $ne, $lt, $lte).
    """

    @abstractmethod
    async def upsert(self, doc: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def find(
        self,
        filter: Optional[Filter] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def count(self, filter: Optional[Filter] = None) -> int:
        pass

    @abstractmethod
    async def delete(self, doc_id: str) -> bool:
        pass

    @abstractmethod
    async def delete_many(self, filter: Filter) -> int:
        pass


class DocumentStore(ABC):
    """Named collections of documents."""

    @abstractmethod
    def collection(self, name: str) -> DocumentCollection:
        pass


class MongoDocumentCollection(DocumentCollection):
    """DocumentCollection backed by a Motor collection; `id` is stored as `_id`."""

    def __init__(self, collection):
        self._collection = collection

    @staticmethod
    def _from_mongo(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if doc is None:
            return None
        doc = dict(doc)
        doc["id"] = doc.pop("_id")
        return doc

    async def upsert(self, doc: Dict[str, Any]) -> None:
        body = {k: v for k, v in doc.items() if k != "id"}
        await self._collection.replace_one({"_id": doc["id"]}, body, upsert=True)

    async def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        return self._from_mongo(await self._collection.find_one({"_id": doc_id}))

    async def find(
        self,
        filter: Optional[Filter] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        cursor = self._collection.find(self._translate(filter or {}))
        if sort:
            cursor = cursor.sort([(k, ASCENDING if d >= 0 else DESCENDING) for k, d in sort])
        if limit:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=limit)
        return [self._from_mongo(d) for d in docs]

    async def count(self, filter: Optional[Filter] = None) -> int:
        return await self._collection.count_documents(self._translate(filter or {}))

    async def delete(self, doc_id: str) -> bool:
        result = await self._collection.delete_one({"_id": doc_id})
        return result.deleted_count > 0

    async def delete_many(self, filter: Filter) -> int:
        result = await self._collection.delete_many(self._translate(filter))
        return result.deleted_count

    @staticmethod
    def _translate(filter: Filter) -> Filter:
        if "id" in filter:
            filter = dict(filter)
            filter["_id"] = filter.pop("id")
        return filter


class DatabaseManager(DocumentStore):
    """Async MongoDB connection manager."""

    def __init__(self, uri: Optional[str] = None, database: Optional[str] = None):
        self.client: Optional[AsyncIOMotorClient] = None
        self.db = None
        self._uri = uri or settings.mongodb_uri
        self._database = database or settings.mongodb_database

    async def connect(self):
        """Establish database connection."""
        try:
            if self.client is None:
                # tz_aware keeps stored datetimes comparable with aware UTC times
                self.client = AsyncIOMotorClient(self._uri, tz_aware=True)
                await self.client.admin.command('ping')

            self.db = self.client[self._database]
            logger.info(f"Connected to MongoDB: {self._database}")

        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def disconnect(self):
        """Close database connection."""
        if self.client:
            self.client.close()
            self.client = None
            logger.info("MongoDB connection closed")

    def collection(self, name: str) -> DocumentCollection:
        if self.db is None:
            raise RuntimeError("Database not connected")
        return MongoDocumentCollection(self.db[name])
