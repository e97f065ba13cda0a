"""
Order assembler.

Turns a buyer's cart into an Order plus immutable Line Items in a single unit
of work: stock is checked and reserved per line, each line freezes a price
snapshot of the product, and only a committed order is returned.

After payment the order moves through its own fulfillment status
(created -> processed -> shipped -> delivered), driven by the seller owning
every line's store and confirmed by the buyer.
"""
import logging
import random
import string
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Tuple

from pymongo.errors import DuplicateKeyError

from config import PAYMENT_METHODS, Settings
from database import Storage, UnitOfWork
from errors import (
    AddressAccessDenied, InvalidFulfillmentState, InvoiceCollision, MarketplaceError, NotOrderSeller,
    OrderAccessDenied, OrderCancelled, OrderNotPaid, OrderNotPending, OrderNotProcessed, OrderNotShipped,
    ProductUnavailable, StoreUnavailable, ValidationFailedError,
)
from inventory import InventoryLedger
from repositories import Repositories
from schemas import CartLine, Order, Product
from snapshots import PriceSnapshotRecorder
from worker import BackgroundWorker

logger = logging.getLogger(__name__)

INVOICE_ATTEMPTS = 5


def money(value: float) -> float:
    return round(float(value), 2)


class OrderAssembler:
    def __init__(self, storage: Storage, repos: Repositories, inventory: InventoryLedger,
                 recorder: PriceSnapshotRecorder, clock, worker: BackgroundWorker, settings: Settings):
        self.storage = storage
        self.repos = repos
        self.inventory = inventory
        self.recorder = recorder
        self.clock = clock
        self.worker = worker
        self.settings = settings

    # ---------------------- Create ----------------------

    def create_order(self, buyer_id: str, shipping_address_id: str, payment_method: str,
                     lines: Iterable[Any]) -> Order:
        cart = self._normalize_lines(lines)
        if payment_method not in PAYMENT_METHODS:
            raise ValidationFailedError(f"Unknown payment method: {payment_method}")
        if not self.repos.addresses.is_owned_by(shipping_address_id, buyer_id):
            raise AddressAccessDenied(shipping_address_id)
        self.repos.users.get(buyer_id)

        now = self.clock.now()
        with self.storage.unit_of_work() as uow:
            drafts: List[Dict[str, Any]] = []
            for product_id, quantity in cart:
                product = self.repos.products.get(product_id, uow)
                self._ensure_orderable(product, uow)
                self.inventory.reserve(product, quantity, uow)
                snapshot = self.recorder.record(product, uow)
                unit_price = money(snapshot.consumer_price)
                drafts.append({
                    "snapshot_id": snapshot.id,
                    "product_id": product.id,
                    "store_id": snapshot.store_id,
                    "quantity": quantity,
                    "unit_price": unit_price,
                    "subtotal": money(unit_price * quantity),
                    "product_name": snapshot.name,
                })

            total = money(sum(d["subtotal"] for d in drafts))
            try:
                order = self.repos.orders.insert({
                    "user_id": buyer_id,
                    "shipping_address_id": shipping_address_id,
                    "total_amount": total,
                    "invoice_code": self._next_invoice_code(buyer_id, now, uow),
                    "payment_method": payment_method,
                    "status": "pending",
                    "fulfillment_status": "created",
                    "stock_reserved": self.inventory.reserve_on_order,
                    "created_at": now,
                    "updated_at": now,
                }, uow)
            except DuplicateKeyError:
                raise InvoiceCollision(buyer_id)
            order.items = [
                self.repos.line_items.insert({**draft, "order_id": order.id, "created_at": now}, uow)
                for draft in drafts
            ]
            uow.after_commit(lambda: self.worker.publish(
                "order_created", order_id=order.id, user_id=buyer_id, total=total))

        logger.info("Order %s created for user %s: %d lines, total %.2f",
                    order.invoice_code, buyer_id, len(order.items), total)
        return order

    def _normalize_lines(self, lines: Iterable[Any]) -> List[Tuple[str, int]]:
        """Validate the cart shape and merge repeated products into one line."""
        merged: Dict[str, int] = {}
        for line in lines or []:
            if isinstance(line, dict):
                line = CartLine(**line)
            if not line.product_id:
                raise ValidationFailedError("product_id is required")
            if line.quantity <= 0:
                raise ValidationFailedError(f"Quantity must be positive for product {line.product_id}")
            merged[line.product_id] = merged.get(line.product_id, 0) + line.quantity
        if not merged:
            raise ValidationFailedError("At least one item is required")
        return list(merged.items())

    def _ensure_orderable(self, product: Product, uow: UnitOfWork) -> None:
        store = self.repos.stores.get(product.store_id, uow)
        if store.status != "active":
            raise StoreUnavailable(store.id)
        if product.status != "active":
            raise ProductUnavailable(product.id)

    def _next_invoice_code(self, buyer_id: str, now: datetime, uow: UnitOfWork) -> str:
        stamp = now.strftime("%Y%m%d%H%M%S")
        for _ in range(INVOICE_ATTEMPTS):
            suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
            code = f"INV-{buyer_id}-{stamp}-{suffix}"
            if not self.repos.orders.invoice_exists(code, uow):
                return code
        raise InvoiceCollision(buyer_id)

    # ---------------------- Read ----------------------

    def get_order(self, buyer_id: str, order_id: str) -> Order:
        order = self.repos.orders.get(order_id)
        if order.user_id != buyer_id:
            raise OrderAccessDenied(order_id)
        order.items = self.repos.line_items.list_by_order(order.id)
        return order

    def list_orders(self, buyer_id: str, page: int = 1, limit: int = 10) -> Tuple[List[Order], int]:
        if page < 1:
            page = 1
        if limit < 1 or limit > 100:
            limit = 10
        return self.repos.orders.list_by_user(buyer_id, limit, (page - 1) * limit)

    # ---------------------- Cancel ----------------------

    def cancel_order(self, buyer_id: str, order_id: str) -> Order:
        order = self.repos.orders.get(order_id)
        if order.user_id != buyer_id:
            raise OrderAccessDenied(order_id)
        if order.status != "pending":
            raise OrderNotPending(order_id)
        if not self._cancel(order):
            raise OrderNotPending(order_id)
        logger.info("Order %s cancelled by buyer %s", order.invoice_code, buyer_id)
        return self.repos.orders.get(order_id)

    def cancel_abandoned(self) -> int:
        """Cancel pending orders past their TTL that nobody is paying for."""
        now = self.clock.now()
        cutoff = now - timedelta(minutes=self.settings.order_pending_ttl_minutes)
        cancelled = 0
        for order in self.repos.orders.pending_created_before(cutoff):
            intents = self.repos.intents.pending_for_order(order.id)
            if any(intent.is_effectively_pending(now) for intent in intents):
                continue
            try:
                if self._cancel(order):
                    cancelled += 1
            except MarketplaceError as e:
                logger.warning("Could not cancel abandoned order %s: %s", order.id, e)
        if cancelled:
            logger.info("Cancelled %d abandoned orders", cancelled)
        return cancelled

    def _cancel(self, order: Order) -> bool:
        now = self.clock.now()
        with self.storage.unit_of_work() as uow:
            changes = {
                "status": "cancelled", "fulfillment_status": "cancelled", "cancelled_at": now, "updated_at": now,
            }
            if not self.repos.orders.transition(order.id, ("pending",), changes, uow):
                return False
            self.repos.intents.expire_by_order(order.id, now, uow)
            self.inventory.release_order(order, uow)
            uow.after_commit(lambda: self.worker.publish("order_cancelled", order_id=order.id))
        return True

    # ---------------------- Fulfillment ----------------------

    def process_order(self, seller_id: str, order_id: str) -> Order:
        """Seller accepts a paid order: created -> processed."""
        order = self.repos.orders.get(order_id)
        if order.status == "cancelled" or order.fulfillment_status == "cancelled":
            raise OrderCancelled(order_id)
        self._ensure_seller_owns_order(seller_id, order)
        if order.status != "paid":
            raise OrderNotPaid(order_id)
        if order.fulfillment_status != "created":
            raise InvalidFulfillmentState(order_id)
        return self._advance_fulfillment(order, "created", "processed", "processed_at", InvalidFulfillmentState)

    def ship_order(self, seller_id: str, order_id: str) -> Order:
        order = self.repos.orders.get(order_id)
        self._ensure_seller_owns_order(seller_id, order)
        if order.fulfillment_status != "processed":
            raise OrderNotProcessed(order_id)
        return self._advance_fulfillment(order, "processed", "shipped", "shipped_at", OrderNotProcessed)

    def confirm_delivered(self, buyer_id: str, order_id: str) -> Order:
        order = self.repos.orders.get(order_id)
        if order.user_id != buyer_id:
            raise OrderAccessDenied(order_id)
        if order.fulfillment_status != "shipped":
            raise OrderNotShipped(order_id)
        return self._advance_fulfillment(order, "shipped", "delivered", "delivered_at", OrderNotShipped)

    def _ensure_seller_owns_order(self, seller_id: str, order: Order) -> None:
        """Every line must come from a store owned by the seller."""
        store_ids = {item.store_id for item in self.repos.line_items.list_by_order(order.id)}
        if not store_ids:
            raise NotOrderSeller(order.id)
        for store_id in store_ids:
            doc = self.repos.stores.find(store_id)
            if not doc or doc.get("owner_id") != seller_id:
                raise NotOrderSeller(order.id)

    def _advance_fulfillment(self, order: Order, expected: str, status: str, stamp: str, conflict) -> Order:
        now = self.clock.now()
        with self.storage.unit_of_work() as uow:
            changes = {"fulfillment_status": status, stamp: now, "updated_at": now}
            if not self.repos.orders.transition(order.id, (expected,), changes, uow, field="fulfillment_status"):
                raise conflict(order.id)
            uow.after_commit(lambda: self.worker.publish(
                f"order_{status}", order_id=order.id, user_id=order.user_id))
        logger.info("Order %s fulfillment: %s -> %s", order.invoice_code, expected, status)
        return self.repos.orders.get(order.id)
