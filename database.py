"""
Persistent state store.

The tracker keeps four records (medications, taken log, temporary reschedules,
last reset date) and reads/writes each as a whole by key. MongoDB is used when
DATABASE_URL and DATABASE_NAME are set; otherwise state lives in memory for the
lifetime of the process.
"""
import copy
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pymongo import MongoClient
from pymongo.errors import PyMongoError

load_dotenv()

logger = logging.getLogger(__name__)

STATE_COLLECTION = "state"


class StoreError(Exception):
    pass


class KeyValueStore(ABC):
    name = "abstract"

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def ping(self) -> bool:
        return True


class MemoryKeyValueStore(KeyValueStore):
    """Process-local store. Values are copied in and out so callers never share state with it."""
    name = "memory"

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})

    def get(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self._data.get(key))

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)


class MongoKeyValueStore(KeyValueStore):
    """One document per key: {"_id": key, "value": ...}."""
    name = "mongodb"

    def __init__(self, database, collection: str = STATE_COLLECTION):
        self.db = database
        self.collection = database[collection]

    def get(self, key: str) -> Optional[Any]:
        try:
            doc = self.collection.find_one({"_id": key})
        except PyMongoError as e:
            raise StoreError(f"read of {key} failed: {e}") from e
        if doc is None:
            return None
        return doc.get("value")

    def set(self, key: str, value: Any) -> None:
        try:
            self.collection.replace_one({"_id": key}, {"_id": key, "value": value}, upsert=True)
        except PyMongoError as e:
            raise StoreError(f"write of {key} failed: {e}") from e

    def ping(self) -> bool:
        try:
            self.db.command("ping")
            return True
        except PyMongoError as e:
            logger.warning("MongoDB ping failed: %s", e)
            return False


def get_store() -> KeyValueStore:
    database_url = os.getenv("DATABASE_URL")
    database_name = os.getenv("DATABASE_NAME")
    if database_url and database_name:
        client = MongoClient(database_url)
        logger.info("Using MongoDB database %s", database_name)
        return MongoKeyValueStore(client[database_name])
    logger.warning("DATABASE_URL/DATABASE_NAME not set, state will not survive a restart")
    return MemoryKeyValueStore()
