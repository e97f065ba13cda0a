"""
Listing lifecycle for products and stores.

Product: inactive <-> active by the owning seller, suspended/unsuspended by an
admin. Store: admin approval gate (pending -> active/inactive), seller toggle
active <-> inactive, admin suspension that always lifts back to inactive.

Product transitions that change whether the product counts as active queue a
refresh of the category's has_active_product flag after commit. The refresh
is best-effort; the periodic full refresh corrects any flag it missed.
"""
import logging
from typing import Iterable

from database import Storage, UnitOfWork
from errors import (
    AlreadyActive, AlreadyInactive, AlreadySuspended, CategoryInactive, NotProductOwner, NotSuspended,
    OutOfStock, ProductSuspended, StoreInactive, StoreNotApproved, StoreNotPending, StoreSuspended,
)
from repositories import Repositories
from schemas import Product, Store
from worker import BackgroundWorker

logger = logging.getLogger(__name__)


class ListingService:
    def __init__(self, storage: Storage, repos: Repositories, clock, worker: BackgroundWorker):
        self.storage = storage
        self.repos = repos
        self.clock = clock
        self.worker = worker

    # ---------------------- Products ----------------------

    def activate_product(self, owner_id: str, product_id: str) -> Product:
        product = self._owned_product(owner_id, product_id)
        if product.status == "suspended":
            raise ProductSuspended(product_id)
        if product.status == "active":
            raise AlreadyActive(product_id)
        store = self.repos.stores.get(product.store_id)
        if store.status != "active":
            raise StoreInactive(store.id)
        category = self.repos.categories.get(product.category_id)
        if category.status != "active":
            raise CategoryInactive(category.id)
        if product.stock <= 0:
            raise OutOfStock(product_id)
        return self._set_product_status(product, ("inactive",), "active", AlreadyActive)

    def deactivate_product(self, owner_id: str, product_id: str) -> Product:
        product = self._owned_product(owner_id, product_id)
        if product.status == "suspended":
            raise ProductSuspended(product_id)
        if product.status == "inactive":
            raise AlreadyInactive(product_id)
        return self._set_product_status(product, ("active",), "inactive", AlreadyInactive)

    def suspend_product(self, product_id: str) -> Product:
        product = self.repos.products.get(product_id)
        if product.status == "suspended":
            raise AlreadySuspended(product_id)
        return self._set_product_status(product, ("active", "inactive"), "suspended", AlreadySuspended)

    def unsuspend_product(self, product_id: str) -> Product:
        product = self.repos.products.get(product_id)
        if product.status != "suspended":
            raise NotSuspended(product_id)
        return self._set_product_status(product, ("suspended",), "active", NotSuspended)

    def _owned_product(self, owner_id: str, product_id: str) -> Product:
        store = self.repos.stores.get_by_owner(owner_id)
        product = self.repos.products.get(product_id)
        if product.store_id != store.id:
            raise NotProductOwner(product_id)
        return product

    def _set_product_status(self, product: Product, expected: Iterable[str], status: str, conflict) -> Product:
        now = self.clock.now()
        with self.storage.unit_of_work() as uow:
            if not self.repos.products.transition(product.id, expected, {"status": status, "updated_at": now}, uow):
                raise conflict(product.id)
            if (product.status == "active") != (status == "active"):
                self._queue_category_refresh(product.category_id, uow)
        logger.info("Product %s: %s -> %s", product.id, product.status, status)
        return self.repos.products.get(product.id)

    # ---------------------- Category flag ----------------------

    def _queue_category_refresh(self, category_id: str, uow: UnitOfWork) -> None:
        uow.after_commit(lambda: self.worker.submit(
            f"refresh-category:{category_id}", self.refresh_category_flag, category_id))

    def refresh_category_flag(self, category_id: str) -> bool:
        has_active = self.repos.categories.refresh_has_active_product(category_id)
        logger.debug("Category %s has_active_product=%s", category_id, has_active)
        return has_active

    def refresh_all_category_flags(self) -> int:
        ids = self.repos.categories.leaf_ids()
        for category_id in ids:
            self.refresh_category_flag(category_id)
        return len(ids)

    # ---------------------- Stores ----------------------

    def approve_store(self, store_id: str) -> Store:
        return self._review_store(store_id, "active")

    def reject_store(self, store_id: str) -> Store:
        return self._review_store(store_id, "inactive")

    def _review_store(self, store_id: str, status: str) -> Store:
        store = self.repos.stores.get(store_id)
        if store.status != "pending":
            raise StoreNotPending(store_id)
        return self._set_store_status(store, ("pending",), status, StoreNotPending)

    def activate_store(self, owner_id: str) -> Store:
        store = self.repos.stores.get_by_owner(owner_id)
        self._ensure_seller_can_toggle(store)
        if store.status == "active":
            raise AlreadyActive(store.id)
        return self._set_store_status(store, ("inactive",), "active", AlreadyActive)

    def deactivate_store(self, owner_id: str) -> Store:
        store = self.repos.stores.get_by_owner(owner_id)
        self._ensure_seller_can_toggle(store)
        if store.status == "inactive":
            raise AlreadyInactive(store.id)
        return self._set_store_status(store, ("active",), "inactive", AlreadyInactive)

    def suspend_store(self, store_id: str) -> Store:
        store = self.repos.stores.get(store_id)
        if store.status == "suspended":
            raise AlreadySuspended(store_id)
        return self._set_store_status(store, ("pending", "active", "inactive"), "suspended", AlreadySuspended)

    def unsuspend_store(self, store_id: str) -> Store:
        store = self.repos.stores.get(store_id)
        if store.status != "suspended":
            raise NotSuspended(store_id)
        # Sellers re-activate explicitly after a suspension is lifted.
        return self._set_store_status(store, ("suspended",), "inactive", NotSuspended)

    def _ensure_seller_can_toggle(self, store: Store) -> None:
        if store.status == "suspended":
            raise StoreSuspended(store.id)
        if store.status == "pending":
            raise StoreNotApproved(store.id)

    def _set_store_status(self, store: Store, expected: Iterable[str], status: str, conflict) -> Store:
        now = self.clock.now()
        with self.storage.unit_of_work() as uow:
            if not self.repos.stores.transition(store.id, expected, {"status": status, "updated_at": now}, uow):
                raise conflict(store.id)
        logger.info("Store %s: %s -> %s", store.id, store.status, status)
        return self.repos.stores.get(store.id)
