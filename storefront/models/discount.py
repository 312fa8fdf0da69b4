from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text
from datetime import datetime
from storefront.db.base_class import Base


class Discount(Base):
    __tablename__ = "discounts"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)

    # Exactly one of percentage / fixed amount is set
    discount_percentage = Column(Integer, nullable=True)
    discount_amount = Column(Integer, nullable=True)
    max_discount_amount = Column(Integer, nullable=True)  # Cap for percentage type

    min_order_value = Column(Integer, default=0, nullable=False)
    remaining_uses = Column(Integer, nullable=True)  # None means unlimited

    is_active = Column(Boolean, default=True, nullable=False)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
