"""
Mongo repositories.

Users, addresses, stores, categories and products belong to collaborating
services; only the narrow operations the order engine needs are exposed for
them. Orders, line items, price snapshots and payment intents are owned here
and are written exclusively through insert and compare-and-set transitions.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type

from bson.errors import InvalidId as BsonInvalidId
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

import errors
from database import UnitOfWork, create_document, get_documents, oid, session_kwargs
from schemas import (
    Address, Category, Document, LineItem, Order, PaymentIntent, PriceSnapshot, Product, Store, User,
)

logger = logging.getLogger(__name__)


class MongoRepository:
    collection_name = ""
    model: Type[Document] = Document
    not_found: Type[errors.NotFoundError] = errors.NotFoundError

    def __init__(self, db: Database):
        self.db = db
        self.collection = db[self.collection_name]

    def find(self, entity_id: str, uow: Optional[UnitOfWork] = None) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"_id": oid(entity_id)}, **session_kwargs(uow))

    def get(self, entity_id: str, uow: Optional[UnitOfWork] = None):
        doc = self.find(entity_id, uow)
        if not doc:
            raise self.not_found(entity_id)
        return self.model.from_doc(doc)

    def insert(self, data: Dict[str, Any], uow: Optional[UnitOfWork] = None):
        doc_id = create_document(self.db, self.collection_name, data, uow)
        return self.get(doc_id, uow)

    def transition(self, entity_id: str, expected: Iterable[str], changes: Dict[str, Any],
                   uow: Optional[UnitOfWork] = None, field: str = "status") -> bool:
        """Compare-and-set on `field`: apply `changes` only if it holds one of `expected`."""
        before = self.collection.find_one_and_update(
            {"_id": oid(entity_id), field: {"$in": list(expected)}},
            {"$set": changes},
            return_document=ReturnDocument.BEFORE,
            **session_kwargs(uow),
        )
        if before is None:
            return False
        if uow is not None:
            restore = {key: before.get(key) for key in changes}
            uow.on_rollback(lambda: self.collection.update_one({"_id": before["_id"]}, {"$set": restore}))
        return True


# --- Collaborators ---


class UserRepository(MongoRepository):
    collection_name = "user"
    model = User
    not_found = errors.UserNotFound


class AddressRepository(MongoRepository):
    collection_name = "address"
    model = Address

    def is_owned_by(self, address_id: str, user_id: str) -> bool:
        try:
            address_oid = ObjectId(address_id)
        except (BsonInvalidId, TypeError):
            return False
        return self.collection.count_documents({"_id": address_oid, "user_id": user_id}) > 0


class StoreRepository(MongoRepository):
    collection_name = "store"
    model = Store
    not_found = errors.StoreNotFound

    def get_by_owner(self, user_id: str, uow: Optional[UnitOfWork] = None) -> Store:
        doc = self.collection.find_one({"owner_id": user_id}, **session_kwargs(uow))
        if not doc:
            raise errors.OwnerHasNoStore(user_id)
        return Store.from_doc(doc)


class CategoryRepository(MongoRepository):
    collection_name = "category"
    model = Category
    not_found = errors.CategoryNotFound

    def leaf_ids(self) -> List[str]:
        return [str(doc["_id"]) for doc in get_documents(self.db, self.collection_name, {"is_leaf": True})]

    def refresh_has_active_product(self, category_id: str) -> bool:
        """Overwrite the derived flag with a freshly computed value."""
        has_active = self.db["product"].count_documents({"category_id": category_id, "status": "active"}) > 0
        self.collection.update_one({"_id": oid(category_id)}, {"$set": {"has_active_product": has_active}})
        return has_active


class ProductRepository(MongoRepository):
    collection_name = "product"
    model = Product
    not_found = errors.ProductNotFound

    def decrement_stock(self, product_id: str, qty: int, uow: Optional[UnitOfWork] = None) -> bool:
        """Atomically take `qty` units if at least that many remain."""
        before = self.collection.find_one_and_update(
            {"_id": oid(product_id), "stock": {"$gte": qty}},
            {"$inc": {"stock": -qty}},
            **session_kwargs(uow),
        )
        if before is None:
            return False
        if uow is not None:
            uow.on_rollback(lambda: self.collection.update_one({"_id": before["_id"]}, {"$inc": {"stock": qty}}))
        return True

    def increment_stock(self, product_id: str, qty: int, uow: Optional[UnitOfWork] = None) -> None:
        self._inc(product_id, "stock", qty, uow)

    def increment_sold_count(self, product_id: str, qty: int, uow: Optional[UnitOfWork] = None) -> None:
        self._inc(product_id, "sold_count", qty, uow)

    def _inc(self, product_id: str, field: str, qty: int, uow: Optional[UnitOfWork]) -> None:
        key = oid(product_id)
        self.collection.update_one({"_id": key}, {"$inc": {field: qty}}, **session_kwargs(uow))
        if uow is not None:
            uow.on_rollback(lambda: self.collection.update_one({"_id": key}, {"$inc": {field: -qty}}))


# --- Owned by the order engine ---


class PriceSnapshotRepository(MongoRepository):
    collection_name = "price_snapshot"
    model = PriceSnapshot
    not_found = errors.SnapshotNotFound

    def list_for_product(self, product_id: str) -> List[PriceSnapshot]:
        cur = self.collection.find({"product_id": product_id}).sort("created_at", 1)
        return [PriceSnapshot.from_doc(doc) for doc in cur]


class LineItemRepository(MongoRepository):
    collection_name = "line_item"
    model = LineItem

    def list_by_order(self, order_id: str, uow: Optional[UnitOfWork] = None) -> List[LineItem]:
        cur = self.collection.find({"order_id": order_id}, **session_kwargs(uow))
        return [LineItem.from_doc(doc) for doc in cur]


class OrderRepository(MongoRepository):
    collection_name = "order"
    model = Order
    not_found = errors.OrderNotFound

    def invoice_exists(self, invoice_code: str, uow: Optional[UnitOfWork] = None) -> bool:
        return self.collection.count_documents({"invoice_code": invoice_code}, **session_kwargs(uow)) > 0

    def list_by_user(self, user_id: str, limit: int, offset: int) -> Tuple[List[Order], int]:
        filt = {"user_id": user_id}
        total = self.collection.count_documents(filt)
        cur = self.collection.find(filt).sort("created_at", -1).skip(offset).limit(limit)
        return [Order.from_doc(doc) for doc in cur], total

    def pending_created_before(self, cutoff: datetime) -> List[Order]:
        cur = self.collection.find({"status": "pending", "created_at": {"$lt": cutoff}})
        return [Order.from_doc(doc) for doc in cur]


class PaymentIntentRepository(MongoRepository):
    collection_name = "payment_intent"
    model = PaymentIntent
    not_found = errors.IntentNotFound

    def pending_for_order(self, order_id: str, uow: Optional[UnitOfWork] = None) -> List[PaymentIntent]:
        cur = self.collection.find({"order_id": order_id, "status": "pending"}, **session_kwargs(uow))
        return [PaymentIntent.from_doc(doc) for doc in cur]

    def expire_by_order(self, order_id: str, now: datetime, uow: Optional[UnitOfWork] = None) -> int:
        ids = [intent.id for intent in self.pending_for_order(order_id, uow)]
        if not ids:
            return 0
        keys = [oid(i) for i in ids]
        res = self.collection.update_many(
            {"_id": {"$in": keys}, "status": "pending"},
            {"$set": {"status": "expired", "updated_at": now}},
            **session_kwargs(uow),
        )
        if uow is not None:
            uow.on_rollback(lambda: self.collection.update_many(
                {"_id": {"$in": keys}, "status": "expired"}, {"$set": {"status": "pending"}}))
        return res.modified_count

    def stale_order_ids(self, now: datetime) -> List[str]:
        cur = self.collection.find({"status": "pending", "expires_at": {"$lte": now}})
        seen: List[str] = []
        for doc in cur:
            if doc["order_id"] not in seen:
                seen.append(doc["order_id"])
        return seen


@dataclass
class Repositories:
    users: UserRepository
    addresses: AddressRepository
    stores: StoreRepository
    categories: CategoryRepository
    products: ProductRepository
    snapshots: PriceSnapshotRepository
    line_items: LineItemRepository
    orders: OrderRepository
    intents: PaymentIntentRepository

    @classmethod
    def from_db(cls, db: Database) -> "Repositories":
        return cls(
            users=UserRepository(db),
            addresses=AddressRepository(db),
            stores=StoreRepository(db),
            categories=CategoryRepository(db),
            products=ProductRepository(db),
            snapshots=PriceSnapshotRepository(db),
            line_items=LineItemRepository(db),
            orders=OrderRepository(db),
            intents=PaymentIntentRepository(db),
        )
