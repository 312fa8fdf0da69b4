from sqlalchemy import Column, Integer, String, ForeignKey, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime
from storefront.db.base_class import Base


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    slug = Column(String(220), unique=True, nullable=False, index=True)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    variants = relationship("ProductVariant", back_populates="product")


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    volume_ml = Column(Integer, nullable=False)
    price = Column(Integer, nullable=False)
    sale_price = Column(Integer, nullable=True)
    stock_quantity = Column(Integer, default=0, nullable=False)
    deleted_at = Column(DateTime, nullable=True)

    product = relationship("Product", back_populates="variants")

    @property
    def current_price(self) -> int:
        return self.sale_price if self.sale_price is not None else self.price

    @property
    def volume_label(self) -> str:
        return f"{self.volume_ml}ml"

    @property
    def is_purchasable(self) -> bool:
        return self.deleted_at is None and self.product is not None and self.product.deleted_at is None
