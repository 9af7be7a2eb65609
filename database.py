"""
MongoDB access for the portal.

Every read and write goes through DocumentStore. Writes made through the
store mark their collection dirty, and each live query watching that
collection re-runs and receives its whole result set again. Live queries
only see writes issued by this process.
"""
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.errors import ConnectionFailure, PyMongoError

import config
from errors import PlatformError

logger = logging.getLogger(__name__)

# Collections owned by the portal itself
COLLECTIONS = ["users", "classes", "meetings", "chats", "messages", "notifications"]
# Collections owned by the identity provider
IDENTITY_COLLECTIONS = ["accounts", "sessions"]

Sort = Sequence[Tuple[str, int]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(ObjectId())


def _as_utc(value):
    # pymongo hands back naive UTC datetimes unless the client is tz aware
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, dict):
        return {k: _as_utc(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_as_utc(v) for v in value]
    return value


def to_public(doc: dict):
    if not doc:
        return doc
    d = {**doc}
    d["id"] = str(d.pop("_id"))
    d.pop("password_hash", None)
    return d


def get_database(url: str = config.DATABASE_URL, name: str = config.DATABASE_NAME):
    client = MongoClient(url, serverSelectionTimeoutMS=config.STORE_TIMEOUT_MS)
    return client[name]


class Subscription:
    """A live query: `callback` gets the full result list on every change."""

    def __init__(self, hub: "LiveQueryHub", store: "DocumentStore", collection: str,
                 filter: Dict[str, Any], sort: Optional[Sort],
                 callback: Callable[[List[dict]], None],
                 on_error: Optional[Callable[[PlatformError], None]] = None):
        self.collection = collection
        self.filter = filter
        self.sort = sort
        self.active = True
        self._hub = hub
        self._store = store
        self._callback = callback
        self._on_error = on_error

    def refresh(self):
        if not self.active:
            return
        try:
            docs = self._store.get_documents(self.collection, self.filter, sort=self.sort)
        except PlatformError as exc:
            if self._on_error is None:
                raise
            self._on_error(exc)
            return
        self._callback(docs)

    def cancel(self):
        self._hub.remove(self)


class LiveQueryHub:
    """Serializes delivery of live query results.

    A write made by a listener while a dispatch is running is queued and
    delivered once the current round finishes.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._dirty: deque = deque()
        self._dispatching = False

    def start(self, sub: Subscription):
        with self._lock:
            self._subscriptions.setdefault(sub.collection, []).append(sub)
            if self._dispatching:
                self._deliver(sub)
                return
            self._dispatching = True
            try:
                self._deliver(sub)
                self._drain()
            finally:
                self._dispatching = False

    def remove(self, sub: Subscription):
        with self._lock:
            sub.active = False
            subs = self._subscriptions.get(sub.collection, [])
            if sub in subs:
                subs.remove(sub)

    def count(self, collection: Optional[str] = None) -> int:
        with self._lock:
            if collection is not None:
                return len(self._subscriptions.get(collection, []))
            return sum(len(subs) for subs in self._subscriptions.values())

    def publish(self, collection: str):
        with self._lock:
            self._dirty.append(collection)
            if self._dispatching:
                return
            self._dispatching = True
            try:
                self._drain()
            finally:
                self._dispatching = False

    def _drain(self):
        while self._dirty:
            name = self._dirty.popleft()
            for sub in list(self._subscriptions.get(name, [])):
                self._deliver(sub)

    def _deliver(self, sub: Subscription):
        try:
            sub.refresh()
        except Exception:
            # a broken listener must not fail the write that triggered it
            logger.exception("Live query on %s failed", sub.collection)


class DocumentStore:
    """Thin wrapper around a pymongo database with live queries.

    Ids are stored as strings (generated ObjectIds unless the caller
    provides one). Timestamps come from `clock` so the server, not the
    client, decides ordering.
    """

    def __init__(self, database, clock: Callable[[], datetime] = utcnow,
                 retries: int = config.STORE_RETRIES):
        self.db = database
        self.clock = clock
        self.retries = retries
        self._hub = LiveQueryHub()

    @property
    def name(self):
        return getattr(self.db, "name", None)

    def now(self) -> datetime:
        return self.clock()

    def _run(self, action: str, fn: Callable[[], Any]):
        attempt = 0
        while True:
            try:
                return fn()
            except ConnectionFailure as exc:
                if attempt < self.retries:
                    attempt += 1
                    logger.warning("%s failed (%s), retry %d/%d", action, exc, attempt, self.retries)
                    continue
                logger.error("%s failed: %s", action, exc)
                raise PlatformError(f"{action} failed") from exc
            except PyMongoError as exc:
                logger.error("%s failed: %s", action, exc)
                raise PlatformError(f"{action} failed") from exc

    # -----------------------------
    # Writes
    # -----------------------------
    def create_document(self, collection: str, data, doc_id: Optional[str] = None) -> str:
        if isinstance(data, BaseModel):
            data = data.model_dump()
        doc = dict(data)
        doc["_id"] = doc_id or doc.pop("id", None) or new_id()
        now = self.now()
        doc.setdefault("created_at", now)
        doc["updated_at"] = now
        self._run(f"insert into {collection}", lambda: self.db[collection].insert_one(doc))
        self._hub.publish(collection)
        return str(doc["_id"])

    def update_document(self, collection: str, doc_id: str, values: Optional[Dict[str, Any]] = None,
                        add_to_set: Optional[Dict[str, Any]] = None,
                        pull: Optional[Dict[str, Any]] = None) -> bool:
        update: Dict[str, Any] = {"$set": {**(values or {}), "updated_at": self.now()}}
        if add_to_set:
            update["$addToSet"] = add_to_set
        if pull:
            update["$pull"] = pull
        res = self._run(
            f"update {collection}/{doc_id}",
            lambda: self.db[collection].update_one({"_id": doc_id}, update),
        )
        if res.matched_count:
            self._hub.publish(collection)
        return res.matched_count > 0

    def update_documents(self, collection: str, filter: Dict[str, Any], values: Dict[str, Any]) -> int:
        update = {"$set": {**values, "updated_at": self.now()}}
        res = self._run(f"update {collection}", lambda: self.db[collection].update_many(filter, update))
        if res.modified_count:
            self._hub.publish(collection)
        return res.modified_count

    def delete_document(self, collection: str, doc_id: str) -> bool:
        res = self._run(f"delete {collection}/{doc_id}", lambda: self.db[collection].delete_one({"_id": doc_id}))
        if res.deleted_count:
            self._hub.publish(collection)
        return res.deleted_count > 0

    def delete_documents(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> int:
        res = self._run(f"delete from {collection}", lambda: self.db[collection].delete_many(filter or {}))
        if res.deleted_count:
            self._hub.publish(collection)
        return res.deleted_count

    # -----------------------------
    # Reads
    # -----------------------------
    def get_document(self, collection: str, doc_id: str) -> Optional[dict]:
        return self.find_one(collection, {"_id": doc_id})

    def find_one(self, collection: str, filter: Dict[str, Any]) -> Optional[dict]:
        doc = self._run(f"read {collection}", lambda: self.db[collection].find_one(filter))
        return _as_utc(doc) if doc else None

    def get_documents(self, collection: str, filter: Optional[Dict[str, Any]] = None,
                      limit: int = 0, sort: Optional[Sort] = None) -> List[dict]:
        def query():
            cursor = self.db[collection].find(filter or {})
            if sort:
                cursor = cursor.sort(list(sort))
            if limit:
                cursor = cursor.limit(limit)
            return list(cursor)

        return [_as_utc(doc) for doc in self._run(f"read {collection}", query)]

    def count_documents(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> int:
        return self._run(f"count {collection}", lambda: self.db[collection].count_documents(filter or {}))

    def list_collection_names(self) -> List[str]:
        return self._run("list collections", self.db.list_collection_names)

    # -----------------------------
    # Live queries
    # -----------------------------
    def watch(self, collection: str, filter: Dict[str, Any], callback: Callable[[List[dict]], None],
              sort: Optional[Sort] = None,
              on_error: Optional[Callable[[PlatformError], None]] = None) -> Subscription:
        """Push the current result set now and again after every change."""
        sub = Subscription(self._hub, self, collection, filter, sort, callback, on_error)
        self._hub.start(sub)
        return sub

    def live_query_count(self, collection: Optional[str] = None) -> int:
        return self._hub.count(collection)

    def ensure_indexes(self):
        try:
            self._run("create indexes", self._create_indexes)
        except PlatformError:
            # Do not crash on startup if indexes fail
            logger.warning("Index creation skipped")

    def _create_indexes(self):
        self.db["accounts"].create_index("email", unique=True)
        self.db["sessions"].create_index("token", unique=True)
        self.db["users"].create_index("email")
        self.db["classes"].create_index("instructor_id")
        self.db["classes"].create_index("enrolled_students")
        self.db["meetings"].create_index([("student_id", 1), ("created_at", -1)])
        self.db["meetings"].create_index([("professor_id", 1), ("created_at", -1)])
        self.db["chats"].create_index("participants")
        self.db["messages"].create_index([("chat_id", 1), ("timestamp", 1)])
        self.db["notifications"].create_index([("user_id", 1), ("timestamp", -1)])
