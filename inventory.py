"""
Inventory ledger.

Stock is reserved when an order is created and released if the order fails,
is cancelled or abandoned; payment success turns the reservation into a sale.
With reservation disabled the order only checks stock and the decrement
happens at payment success instead. Each order records which mode it was
created under (`stock_reserved`) so later transitions undo or commit the
right thing even if the setting changes in between.
"""
import logging
from typing import List

from database import UnitOfWork
from errors import InsufficientStockError
from repositories import LineItemRepository, ProductRepository
from schemas import LineItem, Order, Product

logger = logging.getLogger(__name__)


class InventoryLedger:
    def __init__(self, products: ProductRepository, line_items: LineItemRepository, reserve_on_order: bool = True):
        self.products = products
        self.line_items = line_items
        self.reserve_on_order = reserve_on_order

    def reserve(self, product: Product, qty: int, uow: UnitOfWork) -> None:
        """Check `qty` against stock, taking it immediately when reserving."""
        if not self.reserve_on_order:
            if product.stock < qty:
                raise InsufficientStockError(product.id, qty, product.stock)
            return
        if not self.products.decrement_stock(product.id, qty, uow):
            latest = self.products.get(product.id, uow)
            raise InsufficientStockError(product.id, qty, latest.stock)
        logger.debug("Reserved %d of product %s", qty, product.id)

    def release_order(self, order: Order, uow: UnitOfWork) -> List[LineItem]:
        items = self.line_items.list_by_order(order.id, uow)
        if not order.stock_reserved:
            return items
        for item in items:
            self.products.increment_stock(item.product_id, item.quantity, uow)
        logger.info("Released stock for order %s (%d lines)", order.id, len(items))
        return items

    def commit_sale(self, order: Order, uow: UnitOfWork) -> List[LineItem]:
        items = self.line_items.list_by_order(order.id, uow)
        for item in items:
            if not order.stock_reserved and not self.products.decrement_stock(item.product_id, item.quantity, uow):
                latest = self.products.get(item.product_id, uow)
                raise InsufficientStockError(item.product_id, item.quantity, latest.stock)
            self.products.increment_sold_count(item.product_id, item.quantity, uow)
        return items
