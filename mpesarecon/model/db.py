from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    Float,
    Integer,
    String,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(String, primary_key=True)
    # owning Order or MerchOrder
    order_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True)
    amount = Column(Float, nullable=False)
    method = Column(String, nullable=False, default="mpesa")

    # pending | completed | failed
    status = Column(String, nullable=False, default="pending")

    # set by the checkout flow after the STK push is accepted
    checkout_request_id = Column(String, nullable=True, index=True)

    receipt_code = Column(String, nullable=True)
    provider_transaction_date = Column(String, nullable=True)
    paid_at = Column(Float, nullable=True)
    payer_phone = Column(String, nullable=True)
    fail_reason = Column(String, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    callback_data = Column(JSON, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=True)  # guest checkouts have none
    user_email = Column(String, nullable=False)
    user_name = Column(String, nullable=False)
    user_phone = Column(String, nullable=True)

    listing_id = Column(String, nullable=False)
    organizer_id = Column(String, nullable=True)
    listing_type = Column(String, nullable=False)  # event | tour
    payment_type = Column(String, nullable=False)  # full | booking

    # [{"name": str, "quantity": int, "price": float}, ...]
    tickets = Column(JSON, nullable=False, default=list)

    subtotal = Column(Float, nullable=False, default=0.0)
    discount = Column(Float, nullable=False, default=0.0)
    platform_fee = Column(Float, nullable=False, default=0.0)
    processing_fee = Column(Float, nullable=False, default=0.0)
    total = Column(Float, nullable=False)

    promocode_id = Column(String, nullable=True)
    tracking_link_id = Column(String, nullable=True)

    # pending | completed | failed | refunded
    status = Column(String, nullable=False, default="pending")
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class MerchOrder(Base):
    __tablename__ = "merch_orders"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=True)
    user_name = Column(String, nullable=False)
    user_email = Column(String, nullable=False)

    # [{"productId", "productName", "size", "color", "quantity", "price"}]
    items = Column(JSON, nullable=False, default=list)
    total = Column(Float, nullable=False)

    # pending | awaiting_pickup | completed | failed
    status = Column(String, nullable=False, default="pending")
    confirmation_code = Column(String, nullable=False)
    transaction_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    order_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True)
    user_name = Column(String, nullable=False)
    listing_id = Column(String, nullable=False)
    ticket_type = Column(String, nullable=False)
    qr_code = Column(String, nullable=False, unique=True)

    # valid | used | invalid
    status = Column(String, nullable=False, default="valid")
    # online_sale | organizer
    generated_by = Column(String, nullable=False, default="online_sale")
    created_at = Column(Float, nullable=False)


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_nonneg"),
    )
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Float, nullable=False, default=0.0)
    stock = Column(Integer, nullable=False, default=0)


class User(Base):
    """Buyer account, reduced to the lifetime spend counter."""
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, default="")
    email = Column(String, nullable=True)
    total_purchases = Column(Float, nullable=False, default=0.0)


class Listing(Base):
    """Event or Tour, reduced to what payment accounting touches."""
    __tablename__ = "listings"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    listing_type = Column(String, nullable=False)  # event | tour
    organizer_id = Column(String, nullable=True)
    total_revenue = Column(Float, nullable=False, default=0.0)


class Promocode(Base):
    __tablename__ = "promocodes"
    id = Column(String, primary_key=True)
    code = Column(String, nullable=False)
    usage_count = Column(Integer, nullable=False, default=0)
    revenue_generated = Column(Float, nullable=False, default=0.0)


class TrackingLink(Base):
    __tablename__ = "tracking_links"
    # "" for top-level links, else the owning promocode id
    scope = Column(String, primary_key=True, default="")
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, default="")
    clicks = Column(Integer, nullable=False, default=0)
    purchases = Column(Integer, nullable=False, default=0)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True, autoincrement=True)
    # new_order | payment_integrity
    type = Column(String, nullable=False)
    message = Column(String, nullable=False)
    link = Column(String, nullable=False, default="")
    target_roles = Column(JSON, nullable=False, default=list)
    target_users = Column(JSON, nullable=False, default=list)
    read_by = Column(JSON, nullable=False, default=list)
    created_at = Column(Float, nullable=False)
