"""Event names and which provider categories care about them."""

from broker.integrations.descriptors import Category

ORDER_CREATED = "order.created"
ORDER_UPDATED = "order.updated"
ORDER_FULFILLED = "order.fulfilled"
ORDER_CANCELLED = "order.cancelled"
PRODUCT_CREATED = "product.created"
PRODUCT_UPDATED = "product.updated"
PRODUCT_SYNCED = "product.synced"
INVENTORY_UPDATED = "inventory.updated"
SHIPMENT_UPDATED = "shipment.updated"
PAYMENT_RECEIVED = "payment.received"
SYNC_COMPLETED = "sync.completed"
SYNC_FAILED = "sync.failed"
INTEGRATION_CONNECTED = "integration.connected"
INTEGRATION_DISCONNECTED = "integration.disconnected"
WEBHOOK_TEST = "webhook.test"

EVENT_CATEGORIES: dict[str, frozenset[Category]] = {
    ORDER_CREATED: frozenset({Category.WAREHOUSE, Category.DROPSHIPPING, Category.ACCOUNTING, Category.COMMUNICATION}),
    ORDER_UPDATED: frozenset({Category.WAREHOUSE, Category.DROPSHIPPING, Category.ACCOUNTING}),
    ORDER_FULFILLED: frozenset({Category.WAREHOUSE, Category.DROPSHIPPING, Category.COMMUNICATION}),
    ORDER_CANCELLED: frozenset({Category.WAREHOUSE, Category.DROPSHIPPING, Category.ACCOUNTING, Category.PAYMENT}),
    PRODUCT_CREATED: frozenset({Category.WAREHOUSE, Category.DROPSHIPPING, Category.ADVERTISING}),
    PRODUCT_UPDATED: frozenset({Category.WAREHOUSE, Category.DROPSHIPPING, Category.ADVERTISING}),
    PRODUCT_SYNCED: frozenset({Category.WAREHOUSE, Category.DROPSHIPPING}),
    INVENTORY_UPDATED: frozenset({Category.WAREHOUSE, Category.DROPSHIPPING, Category.ADVERTISING}),
    SHIPMENT_UPDATED: frozenset({Category.WAREHOUSE, Category.COMMUNICATION}),
    PAYMENT_RECEIVED: frozenset({Category.PAYMENT, Category.ACCOUNTING}),
}


def relevant_categories(event: str) -> frozenset[Category]:
    """Categories whose integrations receive ``event``; empty for marketplace-only events."""
    return EVENT_CATEGORIES.get(event, frozenset())
