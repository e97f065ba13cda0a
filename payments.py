"""
Payment intent state machine.

One intent is one attempt to pay an order: pending -> success | failed |
expired, every non-pending state terminal. Gateways redeliver callbacks, so
each transition is a compare-and-set against the stored status and applying
it twice is a no-op.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from pymongo.errors import DuplicateKeyError

from config import PAYMENT_METHODS, Settings
from database import Storage, to_naive_utc
from errors import InvalidIntentState, OrderAccessDenied, OrderNotPending, ValidationFailedError
from inventory import InventoryLedger
from repositories import Repositories
from schemas import PaymentIntent
from worker import BackgroundWorker

logger = logging.getLogger(__name__)


class PaymentService:
    def __init__(self, storage: Storage, repos: Repositories, inventory: InventoryLedger, clock,
                 worker: BackgroundWorker, settings: Settings):
        self.storage = storage
        self.repos = repos
        self.inventory = inventory
        self.clock = clock
        self.worker = worker
        self.settings = settings

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.payment_intent_ttl_minutes)

    def create_intent(self, order_id: str, method: str, buyer_id: Optional[str] = None) -> PaymentIntent:
        """Return the order's live pending intent, or open a new one."""
        if method not in PAYMENT_METHODS:
            raise ValidationFailedError(f"Unknown payment method: {method}")
        order = self.repos.orders.get(order_id)
        if buyer_id is not None and order.user_id != buyer_id:
            raise OrderAccessDenied(order_id)
        if order.status != "pending":
            raise OrderNotPending(order_id)

        now = self.clock.now()
        try:
            with self.storage.unit_of_work() as uow:
                pending = self.repos.intents.pending_for_order(order_id, uow)
                for intent in pending:
                    if intent.is_effectively_pending(now):
                        return intent
                if pending:
                    self.repos.intents.expire_by_order(order_id, now, uow)
                intent = self.repos.intents.insert({
                    "order_id": order_id,
                    "method": method,
                    "status": "pending",
                    "expires_at": now + self.ttl,
                    "created_at": now,
                    "updated_at": now,
                }, uow)
        except DuplicateKeyError:
            # Lost a race with a concurrent create for the same order.
            for intent in self.repos.intents.pending_for_order(order_id):
                if intent.is_effectively_pending(now):
                    return intent
            raise
        logger.info("Payment intent %s opened for order %s via %s", intent.id, order_id, method)
        return intent

    def process_success(self, intent_id: str, gateway_ref: Optional[str] = None,
                        paid_at: Optional[datetime] = None) -> PaymentIntent:
        now = self.clock.now()
        paid_at = to_naive_utc(paid_at) if paid_at else now
        with self.storage.unit_of_work() as uow:
            intent = self.repos.intents.get(intent_id, uow)
            order = self.repos.orders.get(intent.order_id, uow)

            if intent.status == "success" and order.status == "paid":
                logger.info("Duplicate success callback for intent %s ignored", intent_id)
                return intent
            if not (intent.status == "pending" and order.status == "pending"):
                raise InvalidIntentState(intent_id)

            claimed = self.repos.intents.transition(intent_id, ("pending",), {
                "status": "success",
                "gateway_ref": gateway_ref,
                "paid_at": paid_at,
                "updated_at": now,
            }, uow)
            if not claimed:
                latest = self.repos.intents.get(intent_id, uow)
                if latest.status == "success":
                    return latest
                raise InvalidIntentState(intent_id)
            if not self.repos.orders.transition(order.id, ("pending",), {
                "status": "paid", "paid_at": paid_at, "updated_at": now,
            }, uow):
                raise InvalidIntentState(intent_id)
            self.inventory.commit_sale(order, uow)
            uow.after_commit(lambda: self.worker.publish(
                "payment_succeeded", order_id=order.id, intent_id=intent_id, amount=order.total_amount))

        logger.info("Order %s paid through intent %s", order.invoice_code, intent_id)
        return self.repos.intents.get(intent_id)

    def process_failed(self, intent_id: str) -> PaymentIntent:
        now = self.clock.now()
        with self.storage.unit_of_work() as uow:
            intent = self.repos.intents.get(intent_id, uow)
            if intent.status != "pending":
                return intent
            if not self.repos.intents.transition(intent_id, ("pending",), {
                "status": "failed", "updated_at": now,
            }, uow):
                return self.repos.intents.get(intent_id, uow)
            order = self.repos.orders.get(intent.order_id, uow)
            if self.repos.orders.transition(order.id, ("pending",), {
                "status": "failed", "updated_at": now,
            }, uow):
                self.inventory.release_order(order, uow)
            uow.after_commit(lambda: self.worker.publish(
                "payment_failed", order_id=order.id, intent_id=intent_id))

        logger.info("Payment intent %s for order %s failed", intent_id, intent.order_id)
        return self.repos.intents.get(intent_id)

    def expire_by_order(self, order_id: str) -> int:
        self.repos.orders.get(order_id)
        now = self.clock.now()
        with self.storage.unit_of_work() as uow:
            expired = self.repos.intents.expire_by_order(order_id, now, uow)
        if expired:
            logger.info("Expired %d pending intents for order %s", expired, order_id)
        return expired

    def expire_stale(self) -> int:
        """Sweep pending intents whose expiry has passed."""
        now = self.clock.now()
        total = 0
        for order_id in self.repos.intents.stale_order_ids(now):
            total += self.expire_by_order(order_id)
        return total

    def handle_callback(self, intent_id: str, status: str, gateway_ref: Optional[str] = None,
                        paid_at: Optional[datetime] = None) -> PaymentIntent:
        if status == "success":
            return self.process_success(intent_id, gateway_ref=gateway_ref, paid_at=paid_at)
        if status == "failed":
            return self.process_failed(intent_id)
        raise ValidationFailedError(f"Unknown payment status: {status}")
