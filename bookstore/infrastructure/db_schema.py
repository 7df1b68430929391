from sqlalchemy import Table, Column, String, Integer, Boolean, DateTime, JSON, MetaData, Index
from sqlalchemy.sql import func

metadata = MetaData()


orders_tbl = Table(
    "orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("number", String, unique=True, nullable=False),
    Column("customer_id", String, nullable=False, index=True),
    Column("status", String, nullable=False, index=True),
    Column("tracking_number", String, nullable=True, index=True),
    Column("version", Integer, nullable=False, default=1),
    Column("document", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
)


returns_tbl = Table(
    "returns",
    metadata,
    Column("id", String, primary_key=True),
    Column("code", String, unique=True, nullable=False),
    Column("qr_token", String, unique=True, nullable=False),
    Column("order_id", String, nullable=False, index=True),
    Column("customer_id", String, nullable=False, index=True),
    Column("status", String, nullable=False, index=True),
    Column("shipping_deadline", DateTime(timezone=True), nullable=False),
    Column("version", Integer, nullable=False, default=1),
    Column("document", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
)


inventory_records_tbl = Table(
    "inventory_records",
    metadata,
    Column("product_id", String, primary_key=True),
    Column("title", String, nullable=False, default=""),
    Column("total", Integer, nullable=False, default=0),
    Column("reserved", Integer, nullable=False, default=0),
    Column("low_stock_threshold", Integer, nullable=False, default=5),
    Column("version", Integer, nullable=False, default=1),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
)


inventory_movements_tbl = Table(
    "inventory_movements",
    metadata,
    Column("id", String, primary_key=True),
    Column("product_id", String, nullable=False),
    Column("sequence", Integer, nullable=False),
    Column("type", String, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("order_id", String, nullable=True, index=True),
    Column("return_id", String, nullable=True, index=True),
    Column("document", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Index("ix_inventory_movements_product_sequence", "product_id", "sequence", unique=True)
)


payment_instruments_tbl = Table(
    "payment_instruments",
    metadata,
    Column("id", String, primary_key=True),
    Column("customer_id", String, nullable=False, index=True),
    Column("kind", String, nullable=False),
    Column("brand", String, nullable=False, default=""),
    Column("last4", String(4), nullable=False),
    Column("holder_name", String, nullable=False, default=""),
    Column("expiry_month", Integer, nullable=False),
    Column("expiry_year", Integer, nullable=False),
    Column("active", Boolean, nullable=False, default=True),
    Column("balance", Integer, nullable=False, default=0),
    Column("version", Integer, nullable=False, default=1),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
)


balance_movements_tbl = Table(
    "balance_movements",
    metadata,
    Column("id", String, primary_key=True),
    Column("instrument_id", String, nullable=False),
    Column("sequence", Integer, nullable=False),
    Column("kind", String, nullable=False),
    Column("amount", Integer, nullable=False),
    Column("balance_after", Integer, nullable=False),
    Column("order_id", String, nullable=True, index=True),
    Column("return_id", String, nullable=True, index=True),
    Column("document", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Index("ix_balance_movements_instrument_sequence", "instrument_id", "sequence", unique=True)
)


carts_tbl = Table(
    "carts",
    metadata,
    Column("id", String, primary_key=True),
    Column("customer_id", String, nullable=False, index=True),
    Column("status", String, nullable=False, default="activo"),
    Column("items_count", Integer, nullable=False, default=0),
    Column("totals", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
)


cart_items_tbl = Table(
    "cart_items",
    metadata,
    Column("id", String, primary_key=True),
    Column("cart_id", String, nullable=False, index=True),
    Column("position", Integer, nullable=False),
    Column("product_id", String, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Integer, nullable=False),
    Column("unit_discount", Integer, nullable=False, default=0),
    Column("tax_type", String, nullable=False),
    Column("tax_percent", Integer, nullable=False, default=0)
)


outbox_events_tbl = Table(
    "outbox_events",
    metadata,
    Column("id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("aggregate_id", String, nullable=False),
    Column("status", String, default="pending", index=True),
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_error", String, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("published_at", DateTime(timezone=True), nullable=True)
)


inbox_events_tbl = Table(
    "inbox_events",
    metadata,
    Column("id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("aggregate_id", String, nullable=False),
    Column("idempotency_key", String, unique=True, nullable=False),
    Column("status", String, default="pending"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("processed_at", DateTime(timezone=True), nullable=True)
)
