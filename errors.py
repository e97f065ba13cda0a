"""Error taxonomy for the marketplace core.

Every error raised by an operation belongs to exactly one of five kinds
(not found, access denied, invalid state, insufficient stock, validation).
The HTTP layer maps the kind to a response status.
"""


class MarketplaceError(Exception):
    """Base exception for all marketplace errors."""

    code = "MARKETPLACE_ERROR"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)


class NotFoundError(MarketplaceError):
    code = "NOT_FOUND"


class AccessDeniedError(MarketplaceError):
    code = "ACCESS_DENIED"


class InvalidStateError(MarketplaceError):
    code = "INVALID_STATE"


class ValidationFailedError(MarketplaceError):
    code = "VALIDATION_FAILED"


class InsufficientStockError(MarketplaceError):
    """Raised when a product cannot cover the requested quantity."""

    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, requested: int, available: int | None = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        msg = f"Insufficient stock for product {product_id}: requested {requested}"
        if available is not None:
            msg = f"{msg}, available {available}"
        super().__init__(msg)


# --- Not found ---


class _EntityNotFound(NotFoundError):
    entity = "entity"

    def __init__(self, entity_id: str | None, message: str | None = None):
        self.entity_id = entity_id
        super().__init__(message or f"{self.entity.capitalize()} not found: {entity_id}")


class UserNotFound(_EntityNotFound):
    code = "USER_NOT_FOUND"
    entity = "user"


class ProductNotFound(_EntityNotFound):
    code = "PRODUCT_NOT_FOUND"
    entity = "product"


class StoreNotFound(_EntityNotFound):
    code = "STORE_NOT_FOUND"
    entity = "store"


class OwnerHasNoStore(StoreNotFound):
    """Raised when a seller-scoped lookup finds no store for the user."""

    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        super().__init__(None, f"No store found for user {owner_id}")


class CategoryNotFound(_EntityNotFound):
    code = "CATEGORY_NOT_FOUND"
    entity = "category"


class OrderNotFound(_EntityNotFound):
    code = "ORDER_NOT_FOUND"
    entity = "order"


class IntentNotFound(_EntityNotFound):
    code = "PAYMENT_INTENT_NOT_FOUND"
    entity = "payment intent"


class SnapshotNotFound(_EntityNotFound):
    code = "PRICE_SNAPSHOT_NOT_FOUND"
    entity = "price snapshot"


# --- Access denied ---


class AddressAccessDenied(AccessDeniedError):
    code = "ADDRESS_ACCESS_DENIED"

    def __init__(self, address_id: str):
        self.address_id = address_id
        super().__init__(f"Address not found or access denied: {address_id}")


class OrderAccessDenied(AccessDeniedError):
    code = "ORDER_ACCESS_DENIED"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found or access denied: {order_id}")


class NotProductOwner(AccessDeniedError):
    code = "NOT_PRODUCT_OWNER"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product {product_id} does not belong to your store")


class NotOrderSeller(AccessDeniedError):
    code = "NOT_ORDER_SELLER"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} contains items from a store you do not own")


# --- Invalid state ---


class _StateError(InvalidStateError):
    message = "invalid state"

    def __init__(self, entity_id: str | None = None):
        self.entity_id = entity_id
        msg = self.message if entity_id is None else f"{self.message}: {entity_id}"
        super().__init__(msg)


class OrderNotPending(_StateError):
    code = "ORDER_NOT_PENDING"
    message = "Order is not in pending status"


class OrderNotPaid(_StateError):
    code = "ORDER_NOT_PAID"
    message = "Payment for the order is not completed"


class OrderCancelled(_StateError):
    code = "ORDER_CANCELLED"
    message = "Order is cancelled"


class InvalidFulfillmentState(_StateError):
    code = "INVALID_FULFILLMENT_STATE"
    message = "Order is not awaiting processing"


class OrderNotProcessed(_StateError):
    code = "ORDER_NOT_PROCESSED"
    message = "Order has not been processed yet"


class OrderNotShipped(_StateError):
    code = "ORDER_NOT_SHIPPED"
    message = "Order has not been shipped yet"


class InvalidIntentState(_StateError):
    code = "INVALID_INTENT_STATE"
    message = "Invalid payment intent state for success processing"


class AlreadyActive(_StateError):
    code = "ALREADY_ACTIVE"
    message = "Already active"


class AlreadyInactive(_StateError):
    code = "ALREADY_INACTIVE"
    message = "Already inactive"


class AlreadySuspended(_StateError):
    code = "ALREADY_SUSPENDED"
    message = "Already suspended"


class NotSuspended(_StateError):
    code = "NOT_SUSPENDED"
    message = "Not suspended"


class ProductSuspended(_StateError):
    code = "PRODUCT_SUSPENDED"
    message = "Product is suspended by an administrator"


class ProductUnavailable(_StateError):
    code = "PRODUCT_NOT_AVAILABLE"
    message = "Product is not available"


class StoreUnavailable(_StateError):
    code = "STORE_NOT_AVAILABLE"
    message = "Store is not available"


class StoreInactive(_StateError):
    code = "STORE_INACTIVE"
    message = "Store is not active"


class StoreSuspended(_StateError):
    code = "STORE_SUSPENDED"
    message = "Store is suspended by an administrator"


class StoreNotPending(_StateError):
    code = "STORE_NOT_PENDING"
    message = "Store is not awaiting approval"


class StoreNotApproved(_StateError):
    code = "STORE_NOT_APPROVED"
    message = "Store has not been approved yet"


class CategoryInactive(_StateError):
    code = "CATEGORY_INACTIVE"
    message = "Category is not active"


class OutOfStock(_StateError):
    code = "OUT_OF_STOCK"
    message = "Product is out of stock"


class InvoiceCollision(_StateError):
    code = "INVOICE_COLLISION"
    message = "Could not allocate a unique invoice code"


class ConcurrentUpdate(_StateError):
    code = "CONCURRENT_UPDATE"
    message = "Conflicting concurrent update, please retry"


# --- Validation ---


class InvalidId(ValidationFailedError):
    code = "INVALID_ID"

    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Invalid ID: {value}")
