from dataclasses import dataclass
from typing import List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.orm import Session

from storefront.core.exceptions import APIError, ConflictError, ValidationError
from storefront.models.cart import Cart
from storefront.models.discount import Discount
from storefront.models.order import Order, PaymentMethod
from storefront.models.product import ProductVariant
from storefront.models.user import User
from storefront.schemas.checkout import CheckoutDraft, CheckoutQuote, CheckoutState, CheckoutStep
from storefront.services.cart_service import CartAggregator
from storefront.services.discount_service import DiscountService
from storefront.services.order_ledger import OrderLedger, OrderLine
from storefront.services.payment_service import MOMO_MAX_AMOUNT, MOMO_MIN_AMOUNT

logger = structlog.get_logger()

# Forward order; ``cancelled`` sits outside it and ``complete`` is reached only via ``complete()``
STATE_ORDER = [
    CheckoutState.CART,
    CheckoutState.ADDRESS,
    CheckoutState.PAYMENT,
    CheckoutState.REVIEW,
    CheckoutState.COMPLETE,
]


@dataclass(frozen=True)
class PricingConfig:
    shipping_fee: int
    free_shipping_threshold: Optional[int] = None

    @classmethod
    def from_settings(cls, settings) -> "PricingConfig":
        return cls(
            shipping_fee=settings.SHIPPING_FEE,
            free_shipping_threshold=settings.FREE_SHIPPING_THRESHOLD,
        )

    def shipping_for(self, subtotal: int) -> int:
        if self.free_shipping_threshold is not None and subtotal >= self.free_shipping_threshold:
            return 0
        return self.shipping_fee


@dataclass
class CheckoutResult:
    order: Order
    access_token: Optional[str]
    created: bool


class CheckoutStateMachine:
    """Drives ``cart -> address -> payment -> review -> complete``.

    Nothing about the checkout is stored server side. The client sends its
    draft with every request and the machine replays each guard from ``cart``
    up to the requested state, so a client cannot skip a step by claiming to
    already be past it. Abandoning a checkout leaves only the cart behind.
    """

    def __init__(self, db: Session, pricing: PricingConfig):
        self.db = db
        self.pricing = pricing
        self.ledger = OrderLedger(db)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------
    @staticmethod
    def _guard_cart(cart: Optional[Cart]) -> None:
        if cart is None or not cart.items:
            raise ValidationError("Your cart is empty", step=CheckoutState.CART.value)

    @staticmethod
    def _guard_address(draft: CheckoutDraft, user: Optional[User]) -> None:
        if draft.address is None:
            raise ValidationError("Shipping address is required", step=CheckoutState.ADDRESS.value)
        missing = draft.address.missing_fields()
        if missing:
            raise ValidationError(
                f"Shipping address is incomplete: {', '.join(missing)}",
                step=CheckoutState.ADDRESS.value,
                missing=missing,
            )
        if user is None and draft.guest is None:
            raise ValidationError("Contact name, email and phone are required", step=CheckoutState.ADDRESS.value)

    def _guard_payment(self, draft: CheckoutDraft, subtotal: int) -> Tuple[Optional[Discount], int]:
        if draft.payment_method is None:
            raise ValidationError("Choose a payment method", step=CheckoutState.PAYMENT.value)
        discount, discount_amount = None, 0
        if draft.discount_code:
            discount, discount_amount = DiscountService.validate(self.db, draft.discount_code, subtotal)
        if draft.payment_method == PaymentMethod.MOMO:
            total = self._quote(subtotal, discount, discount_amount).total_amount
            if not MOMO_MIN_AMOUNT <= total <= MOMO_MAX_AMOUNT:
                raise ValidationError(
                    f"MoMo accepts orders between {MOMO_MIN_AMOUNT:,} and {MOMO_MAX_AMOUNT:,} VND; choose cash on delivery",
                    step=CheckoutState.PAYMENT.value,
                    total_amount=total,
                )
        return discount, discount_amount

    def _priced_lines(self, cart: Cart, lock: bool = False) -> List[OrderLine]:
        """Cart lines checked against the live catalog.

        The cart snapshot price must still be the catalog price; a changed price
        sends the shopper back to the cart instead of charging either amount
        silently.
        """
        variant_ids = sorted({item.variant_id for item in cart.items})
        query = self.db.query(ProductVariant).filter(ProductVariant.id.in_(variant_ids))
        if lock:
            query = query.with_for_update()
        variants = {variant.id: variant for variant in query.all()}

        lines = []
        for item in cart.items:
            variant = variants.get(item.variant_id)
            if variant is None or not variant.is_purchasable:
                raise ValidationError(
                    f"{item.product_name} is no longer available",
                    step=CheckoutState.REVIEW.value,
                    variant_id=item.variant_id,
                )
            if variant.current_price != item.unit_price:
                raise ValidationError(
                    f"The price of {item.product_name} has changed, please review your cart",
                    step=CheckoutState.REVIEW.value,
                    variant_id=item.variant_id,
                )
            if variant.stock_quantity < item.quantity:
                raise ValidationError(
                    f"Insufficient stock for {item.product_name}",
                    step=CheckoutState.REVIEW.value,
                    variant_id=item.variant_id,
                )
            lines.append(
                OrderLine(
                    variant_id=variant.id,
                    product_name=item.product_name,
                    volume_ml=variant.volume_ml,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
            )
        return lines

    def _quote(self, subtotal: int, discount: Optional[Discount] = None, discount_amount: int = 0) -> CheckoutQuote:
        shipping_fee = self.pricing.shipping_for(subtotal)
        return CheckoutQuote(
            subtotal_amount=subtotal,
            discount_amount=discount_amount,
            discount_code=discount.code if discount else None,
            shipping_fee=shipping_fee,
            total_amount=max(0, subtotal - discount_amount + shipping_fee),
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def advance(
        self,
        cart: Optional[Cart],
        draft: CheckoutDraft,
        target: CheckoutState,
        user: Optional[User] = None,
    ) -> CheckoutStep:
        """Validate every step up to ``target`` and return the priced preview."""
        if target == CheckoutState.CANCELLED:
            return self.cancel(draft)
        if target == CheckoutState.COMPLETE:
            raise ValidationError("Use the complete operation to place the order", step=target.value)

        target_index = STATE_ORDER.index(target)

        if target == CheckoutState.CART:
            return CheckoutStep(state=target, quote=self._quote(cart.total_amount) if cart else None)

        # cart -> address
        self._guard_cart(cart)
        subtotal = cart.total_amount
        quote = self._quote(subtotal)
        if target_index >= STATE_ORDER.index(CheckoutState.PAYMENT):
            self._guard_address(draft, user)
        if target_index >= STATE_ORDER.index(CheckoutState.REVIEW):
            discount, discount_amount = self._guard_payment(draft, subtotal)
            self._priced_lines(cart)
            quote = self._quote(subtotal, discount, discount_amount)

        return CheckoutStep(state=target, quote=quote)

    def cancel(self, draft: CheckoutDraft) -> CheckoutStep:
        # No order row exists before completion, so there is nothing to undo
        logger.info("checkout_cancelled", payment_method=draft.payment_method.value if draft.payment_method else None)
        return CheckoutStep(state=CheckoutState.CANCELLED)

    def complete(
        self,
        cart: Optional[Cart],
        draft: CheckoutDraft,
        idempotency_key: str,
        user: Optional[User] = None,
    ) -> CheckoutResult:
        """``review -> complete``: persist the order and clear the cart in one transaction."""
        existing = self.ledger.find_by_idempotency_key(idempotency_key)
        if existing:
            return self._replay(existing, user)

        try:
            self._guard_cart(cart)
            self._guard_address(draft, user)
            subtotal = cart.total_amount
            discount, discount_amount = self._guard_payment(draft, subtotal)
            lines = self._priced_lines(cart, lock=True)
            quote = self._quote(subtotal, discount, discount_amount)

            order = self.ledger.create_order(
                lines=lines,
                payment_method=draft.payment_method,
                address=draft.address.model_dump(),
                subtotal_amount=quote.subtotal_amount,
                shipping_fee=quote.shipping_fee,
                discount=discount,
                discount_amount=quote.discount_amount,
                user=user,
                guest=draft.guest.model_dump() if user is None else None,
                delivery_notes=draft.delivery_notes,
                idempotency_key=idempotency_key,
            )
            CartAggregator.clear(self.db, cart, commit=False)
            self.db.commit()
        except APIError:
            self.db.rollback()
            raise
        except DBIntegrityError:
            self.db.rollback()
            existing = self.ledger.find_by_idempotency_key(idempotency_key)
            if existing:
                return self._replay(existing, user)
            raise

        self.db.refresh(order)
        logger.info(
            "checkout_completed",
            order_id=order.id,
            user_id=order.user_id,
            payment_method=order.payment_method.value,
            total_amount=order.total_amount,
        )

        if order.payment_method == PaymentMethod.COD:
            from storefront.tasks.email_tasks import send_order_confirmation

            try:
                send_order_confirmation.delay(order.id)
            except Exception:
                logger.exception("order_confirmation_queue_failed", order_id=order.id)

        return CheckoutResult(order=order, access_token=order.access_token if user is None else None, created=True)

    def _replay(self, order: Order, user: Optional[User]) -> CheckoutResult:
        owner_id = user.id if user else None
        if order.user_id != owner_id:
            raise ConflictError("Idempotency key was already used for another checkout")
        logger.info("checkout_replayed", order_id=order.id)
        return CheckoutResult(order=order, access_token=order.access_token if user is None else None, created=False)
