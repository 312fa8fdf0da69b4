from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.orm import Session

from storefront.core.exceptions import APIError, ConflictError, NotFoundError, ValidationError
from storefront.models.cart import Cart, CartItem
from storefront.models.product import ProductVariant

logger = structlog.get_logger()


class CartAggregator:
    """Cart mutations for a user or an anonymous session.

    Totals are never stored: ``Cart.total_quantity`` and ``Cart.total_amount``
    are computed from the items every time they are read.
    """

    @staticmethod
    def get_for_user(db: Session, user_id: int, create: bool = True) -> Optional[Cart]:
        cart = db.query(Cart).filter(Cart.user_id == user_id).first()
        if cart or not create:
            return cart

        cart = Cart(user_id=user_id)
        db.add(cart)
        try:
            db.commit()
        except DBIntegrityError:
            # Another request created it first
            db.rollback()
            return db.query(Cart).filter(Cart.user_id == user_id).one()
        db.refresh(cart)
        return cart

    @staticmethod
    def get_for_session(db: Session, session_key: str, create: bool = True) -> Optional[Cart]:
        cart = db.query(Cart).filter(Cart.session_key == session_key).first()
        if cart or not create:
            return cart

        cart = Cart(session_key=session_key)
        db.add(cart)
        try:
            db.commit()
        except DBIntegrityError:
            db.rollback()
            return db.query(Cart).filter(Cart.session_key == session_key).one()
        db.refresh(cart)
        return cart

    @staticmethod
    def _get_item(db: Session, cart: Cart, item_id: int) -> CartItem:
        item = db.query(CartItem).filter(CartItem.id == item_id, CartItem.cart_id == cart.id).first()
        if not item:
            raise NotFoundError("Cart item not found", cart_id=cart.id, item_id=item_id)
        return item

    @staticmethod
    def add_item(db: Session, cart: Cart, variant_id: int, quantity: int) -> Cart:
        """Add ``quantity`` of a variant; an existing line for the variant is incremented."""
        if quantity <= 0:
            raise ValidationError("Quantity must be at least 1", quantity=quantity)

        variant = db.query(ProductVariant).filter(ProductVariant.id == variant_id).first()
        if not variant or not variant.is_purchasable:
            raise NotFoundError("Product variant not found", variant_id=variant_id)

        try:
            item = (
                db.query(CartItem)
                .filter(CartItem.cart_id == cart.id, CartItem.variant_id == variant_id)
                .with_for_update()
                .first()
            )
            new_quantity = quantity + (item.quantity if item else 0)
            if new_quantity > variant.stock_quantity:
                raise ValidationError(
                    f"Only {variant.stock_quantity} left in stock for {variant.product.name}",
                    variant_id=variant_id,
                    requested=new_quantity,
                )

            if item:
                item.quantity = new_quantity
            else:
                db.add(
                    CartItem(
                        cart_id=cart.id,
                        product_id=variant.product_id,
                        variant_id=variant.id,
                        product_name=variant.product.name,
                        volume_label=variant.volume_label,
                        quantity=quantity,
                        unit_price=variant.current_price,
                    )
                )
            db.commit()
        except APIError:
            db.rollback()
            raise
        except DBIntegrityError as exc:
            db.rollback()
            raise ConflictError("Cart was updated concurrently, please retry", cart_id=cart.id) from exc

        db.refresh(cart)
        logger.info("cart_item_added", cart_id=cart.id, variant_id=variant_id, quantity=quantity)
        return cart

    @staticmethod
    def remove_item(db: Session, cart: Cart, item_id: int) -> Cart:
        item = CartAggregator._get_item(db, cart, item_id)
        db.delete(item)
        db.commit()
        db.refresh(cart)
        return cart

    @staticmethod
    def set_quantity(db: Session, cart: Cart, item_id: int, quantity: int) -> Cart:
        if quantity < 0:
            raise ValidationError("Quantity cannot be negative", quantity=quantity)
        if quantity == 0:
            return CartAggregator.remove_item(db, cart, item_id)

        item = CartAggregator._get_item(db, cart, item_id)
        stock = item.variant.stock_quantity if item.variant else 0
        if quantity > stock:
            raise ValidationError(
                f"Only {stock} left in stock for {item.product_name}",
                variant_id=item.variant_id,
                requested=quantity,
            )
        item.quantity = quantity
        db.commit()
        db.refresh(cart)
        return cart

    @staticmethod
    def clear(db: Session, cart: Cart, commit: bool = True) -> None:
        db.query(CartItem).filter(CartItem.cart_id == cart.id).delete(synchronize_session=False)
        if commit:
            db.commit()
        db.expire(cart, ["items"])

    @staticmethod
    def merge_into(db: Session, guest_cart: Optional[Cart], target_cart: Cart) -> Cart:
        """Fold a guest cart into ``target_cart`` exactly once.

        The guest cart is claimed with a compare-and-set on its merge marker, so
        a duplicate login event (or two racing requests) merges at most once.
        The claim also detaches the session key, so the anonymous session no
        longer resolves to the merged cart.
        """
        if guest_cart is None or guest_cart.id == target_cart.id:
            return target_cart

        try:
            claimed = (
                db.query(Cart)
                .filter(Cart.id == guest_cart.id, Cart.merged_into_cart_id.is_(None))
                .update(
                    {
                        Cart.merged_into_cart_id: target_cart.id,
                        Cart.merged_at: datetime.utcnow(),
                        Cart.session_key: None,
                    },
                    synchronize_session=False,
                )
            )
            if claimed != 1:
                db.rollback()
                logger.info("cart_merge_skipped", guest_cart_id=guest_cart.id, target_cart_id=target_cart.id)
                return target_cart

            guest_items = db.query(CartItem).filter(CartItem.cart_id == guest_cart.id).all()
            existing = {
                item.variant_id: item
                for item in db.query(CartItem).filter(CartItem.cart_id == target_cart.id).with_for_update().all()
            }
            for guest_item in guest_items:
                target_item = existing.get(guest_item.variant_id)
                if target_item:
                    target_item.quantity += guest_item.quantity
                else:
                    db.add(
                        CartItem(
                            cart_id=target_cart.id,
                            product_id=guest_item.product_id,
                            variant_id=guest_item.variant_id,
                            product_name=guest_item.product_name,
                            volume_label=guest_item.volume_label,
                            quantity=guest_item.quantity,
                            unit_price=guest_item.unit_price,
                        )
                    )
                db.delete(guest_item)
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(target_cart)
        logger.info(
            "cart_merged",
            guest_cart_id=guest_cart.id,
            target_cart_id=target_cart.id,
            merged_items=len(guest_items),
        )
        return target_cart
