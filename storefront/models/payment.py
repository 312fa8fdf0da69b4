from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum, Text, Index, text
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from storefront.db.base_class import Base
from storefront.models.order import PaymentMethod


class PaymentRecordStatus(str, enum.Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"
    REFUNDED = "Refunded"
    # Captured or mismatched result that is held for a manual decision
    UNDER_REVIEW = "Under review"


class Payment(Base):
    """One row per payment attempt; a Pending order may accumulate several."""

    __tablename__ = "payments"
    __table_args__ = (
        # At most one completed payment per order
        Index(
            "uq_payments_order_completed",
            "order_id",
            unique=True,
            sqlite_where=text("status = 'COMPLETED'"),
            postgresql_where=text("status = 'COMPLETED'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)

    payment_method = Column(Enum(PaymentMethod), nullable=False)
    status = Column(Enum(PaymentRecordStatus), default=PaymentRecordStatus.PENDING, nullable=False)
    amount = Column(Integer, nullable=False)

    # Gateway-specific fields
    gateway_order_id = Column(String(64), unique=True, nullable=True)
    gateway_request_id = Column(String(64), nullable=True)
    transaction_id = Column(String(64), unique=True, nullable=True)
    result_code = Column(Integer, nullable=True)
    gateway_payload = Column(Text, nullable=True)  # Raw JSON, audit only

    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    order = relationship("Order", back_populates="payments")


class PaymentIncident(Base):
    """Callbacks that verified but could not be applied; reviewed by hand."""

    __tablename__ = "payment_incidents"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    gateway_order_id = Column(String(64), nullable=True)
    transaction_id = Column(String(64), nullable=True)
    kind = Column(String(40), nullable=False)
    detail = Column(Text, nullable=True)
    payload = Column(Text, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
