"""
MongoDB access for the marketplace.

`get_database()` opens the shared client, `Storage` pairs a database handle
with unit-of-work creation. Timestamps are stored as naive UTC datetimes,
which is what pymongo hands back without tz_aware.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId as BsonInvalidId
from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import Settings
from errors import ConcurrentUpdate, InvalidId

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None


def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (BsonInvalidId, TypeError):
        raise InvalidId(str(id_str))


def get_database(settings: Settings) -> Database:
    global _client
    if _client is None:
        _client = MongoClient(settings.database_url)
    return _client[settings.database_name]


def close_database() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None


def ensure_indexes(db: Database) -> None:
    db["order"].create_index("invoice_code", unique=True)
    db["order"].create_index([("user_id", 1), ("created_at", -1)])
    db["order"].create_index([("status", 1), ("created_at", 1)])
    db["line_item"].create_index("order_id")
    db["price_snapshot"].create_index("product_id")
    db["product"].create_index([("category_id", 1), ("status", 1)])
    db["store"].create_index("owner_id")
    db["payment_intent"].create_index([("status", 1), ("expires_at", 1)])
    # One pending intent per order; concurrent creates collide here.
    db["payment_intent"].create_index(
        "order_id",
        unique=True,
        partialFilterExpression={"status": "pending"},
        name="one_pending_intent_per_order",
    )


def create_document(db: Database, collection_name: str, data: Dict[str, Any], uow: "UnitOfWork" = None) -> str:
    """Insert a document with created/updated stamps and return its id."""
    doc = dict(data)
    stamp = now_utc()
    doc.setdefault("created_at", stamp)
    doc.setdefault("updated_at", stamp)
    collection = db[collection_name]
    res = collection.insert_one(doc, **session_kwargs(uow))
    if uow is not None:
        inserted = res.inserted_id
        uow.on_rollback(lambda: collection.delete_one({"_id": inserted}))
    return str(res.inserted_id)


def get_documents(db: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def session_kwargs(uow: Optional["UnitOfWork"]) -> Dict[str, Any]:
    if uow is not None and uow.session is not None:
        return {"session": uow.session}
    return {}


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, PyMongoError) and exc.has_error_label("TransientTransactionError")


class UnitOfWork:
    """All-or-nothing scope for one operation's writes.

    With transactions enabled (the default) every statement runs inside a
    client session transaction, so nothing is visible to other readers
    before commit. A transaction aborted by a write conflict surfaces as
    `ConcurrentUpdate`; nothing is retried here.

    Without transactions (standalone mongod, development only) repositories
    register a compensating action for each write and rollback replays them
    newest first. Writes are visible to other readers before commit and a
    crash mid-operation leaves them in place.

    Callbacks registered with `after_commit` run only once the work is
    committed.
    """

    def __init__(self, client: Optional[MongoClient] = None, transactional: bool = False):
        self._client = client
        self.transactional = bool(transactional and client is not None)
        self.session = None
        self._undo: List[Callable[[], Any]] = []
        self._after_commit: List[Callable[[], Any]] = []
        self._closed = False

    def __enter__(self) -> "UnitOfWork":
        if self.transactional:
            self.session = self._client.start_session()
            self.session.start_transaction()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if not self._closed:
                if exc_type is None:
                    self.commit()
                else:
                    self.rollback()
        except PyMongoError as e:
            if _is_transient(e):
                raise ConcurrentUpdate() from e
            raise
        finally:
            if self.session is not None:
                self.session.end_session()
                self.session = None
        if exc is not None and _is_transient(exc):
            raise ConcurrentUpdate() from exc
        return False

    def on_rollback(self, undo: Callable[[], Any]) -> None:
        if not self.transactional:
            self._undo.append(undo)

    def after_commit(self, callback: Callable[[], Any]) -> None:
        self._after_commit.append(callback)

    def commit(self) -> None:
        self._closed = True
        callbacks, self._after_commit = self._after_commit, []
        if self.session is not None and self.session.in_transaction:
            self.session.commit_transaction()
        self._undo.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("after-commit callback failed")

    def rollback(self) -> None:
        self._closed = True
        self._after_commit.clear()
        if self.session is not None:
            if self.session.in_transaction:
                self.session.abort_transaction()
            return
        undo, self._undo = self._undo, []
        for action in reversed(undo):
            try:
                action()
            except Exception:
                logger.exception("compensating write failed during rollback")


class Storage:
    """Database handle plus the unit-of-work policy chosen at startup."""

    def __init__(self, db: Database, transactional: bool = True):
        self.db = db
        self.transactional = transactional

    def unit_of_work(self) -> UnitOfWork:
        return UnitOfWork(self.db.client, self.transactional)
