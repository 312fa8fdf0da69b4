from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum, Text
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from storefront.db.base_class import Base


class PaymentStatus(str, enum.Enum):
    PENDING = "Pending"
    PAID = "Paid"
    FAILED = "Failed"
    REFUNDED = "Refunded"


class FulfillmentStatus(enum.IntEnum):
    """Values stored in ``orders.order_status_id``."""

    PROCESSING = 1
    SHIPPING = 2
    DELIVERED = 3
    CANCELLED = 4
    DELIVERY_FAILED = 5


class PaymentMethod(str, enum.Enum):
    COD = "cod"  # Cash on Delivery
    MOMO = "momo"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    # Guest contact (only when user_id is null)
    guest_name = Column(String(100), nullable=True)
    guest_email = Column(String(255), nullable=True)
    guest_phone = Column(String(20), nullable=True)

    # Shipping address snapshot
    recipient_name = Column(String(100), nullable=False)
    recipient_phone = Column(String(20), nullable=False)
    province_city = Column(String(100), nullable=False)
    district = Column(String(100), nullable=False)
    ward = Column(String(100), nullable=False)
    street_address = Column(String(255), nullable=False)
    delivery_notes = Column(Text, nullable=True)

    # Pricing (VND), frozen at creation
    subtotal_amount = Column(Integer, nullable=False)
    discount_amount = Column(Integer, default=0, nullable=False)
    discount_code = Column(String(50), nullable=True)
    shipping_fee = Column(Integer, default=0, nullable=False)
    total_amount = Column(Integer, nullable=False)

    # Status axes
    payment_method = Column(Enum(PaymentMethod), nullable=False)
    payment_status = Column(Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False, index=True)
    order_status_id = Column(Integer, default=int(FulfillmentStatus.PROCESSING), nullable=False, index=True)
    cancellation_reason = Column(Text, nullable=True)

    access_token = Column(String(64), unique=True, nullable=False, index=True)
    idempotency_key = Column(String(64), unique=True, nullable=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    payments = relationship("Payment", back_populates="order", order_by="Payment.id")
    status_history = relationship(
        "OrderStatusHistory",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.id",
    )

    @property
    def fulfillment_status(self) -> FulfillmentStatus:
        return FulfillmentStatus(self.order_status_id)

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    @property
    def contact_email(self):
        if self.user is not None:
            return self.user.email
        return self.guest_email


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=False)

    product_name = Column(String(200), nullable=False)  # Snapshot at order time
    variant_volume_ml = Column(Integer, nullable=False)

    quantity = Column(Integer, nullable=False)
    unit_price_at_order = Column(Integer, nullable=False)

    # Relationships
    order = relationship("Order", back_populates="items")

    @property
    def line_total(self) -> int:
        return self.quantity * self.unit_price_at_order
