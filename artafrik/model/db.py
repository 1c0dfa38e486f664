from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()

# payment_status
PAY_PENDING = "PENDING"
PAY_PROCESSING = "PROCESSING"
PAY_COMPLETED = "COMPLETED"
PAY_FAILED = "FAILED"
PAY_REFUNDED = "REFUNDED"

# order_status
ORD_PENDING = "PENDING"
ORD_CONFIRMED = "CONFIRMED"
ORD_PROCESSING = "PROCESSING"
ORD_SHIPPED = "SHIPPED"
ORD_DELIVERED = "DELIVERED"
ORD_CANCELLED = "CANCELLED"
ORD_REFUNDED = "REFUNDED"


# ----------------------------
# ORM models
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    id = Column(String(32), primary_key=True)
    order_number = Column(String(40), nullable=False, unique=True)

    # base currency amounts
    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping_cost = Column(Numeric(12, 2), nullable=False)
    tax = Column(Numeric(12, 2), nullable=False)
    total = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    payment_method = Column(String(40), nullable=False, default="pesapal")
    tracking_id = Column(String(64), nullable=True, index=True)
    transaction_id = Column(String(64), nullable=True)

    payment_status = Column(String(16), nullable=False, default=PAY_PENDING)
    order_status = Column(String(16), nullable=False, default=ORD_PENDING)

    # shipping snapshot, never edited after creation
    shipping_name = Column(String, nullable=False)
    shipping_email = Column(String, nullable=False)
    shipping_phone = Column(String, nullable=False, default="")
    shipping_address = Column(String, nullable=False)
    shipping_city = Column(String, nullable=False)
    shipping_country = Column(String, nullable=False)

    # newline-delimited gateway audit log, append only
    notes = Column(Text, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    items = relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(
        String(32), ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    position = Column(Integer, nullable=False)
    listing_id = Column(String, nullable=False)
    # snapshots, not joined against the live catalog
    title = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    quantity = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")


class ExchangeRate(Base):
    __tablename__ = "exchange_rates"
    __table_args__ = (
        UniqueConstraint("currency", "is_active",
                         name="uq_exchange_rates_currency_active"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    currency = Column(String(16), nullable=False)  # pair key, e.g. USD_KES
    rate = Column(Numeric(12, 4), nullable=False)
    # manual | api | bank | central_bank
    source = Column(String(16), nullable=False, default="manual")
    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(Float, nullable=False)
    updated_by = Column(String, nullable=True)
