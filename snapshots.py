"""Price snapshot recorder: insert-only history of product commercial attributes."""
from typing import List

from database import UnitOfWork
from repositories import PriceSnapshotRepository
from schemas import PriceSnapshot, Product


class PriceSnapshotRecorder:
    def __init__(self, snapshots: PriceSnapshotRepository, clock):
        self.snapshots = snapshots
        self.clock = clock

    def record(self, product: Product, uow: UnitOfWork) -> PriceSnapshot:
        return self.snapshots.insert({
            "product_id": product.id,
            "name": product.name,
            "slug": product.slug,
            "reseller_price": product.reseller_price,
            "consumer_price": product.consumer_price,
            "description": product.description,
            "store_id": product.store_id,
            "category_id": product.category_id,
            "created_at": self.clock.now(),
        }, uow)

    def get(self, snapshot_id: str) -> PriceSnapshot:
        return self.snapshots.get(snapshot_id)

    def list_for_product(self, product_id: str) -> List[PriceSnapshot]:
        return self.snapshots.list_for_product(product_id)
