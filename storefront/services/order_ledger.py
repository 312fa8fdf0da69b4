"""Authoritative order record and its two status axes.

Payment and fulfillment move independently. Every status write is a
compare-and-set ``UPDATE ... WHERE id = :id AND <status> = :expected`` so a
stale writer (a late webhook, a second poll, a double-clicked admin button)
fails with ``ConflictError`` instead of overwriting a newer state.

Transition helpers flush but never commit; the public operations that stand
on their own (refund, cancel, COD confirmation, ...) commit their unit of work.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session

from storefront.core.exceptions import APIError, ConflictError, NotFoundError, ValidationError
from storefront.models.discount import Discount
from storefront.models.order import FulfillmentStatus, Order, OrderItem, PaymentMethod, PaymentStatus
from storefront.models.order_status_history import OrderStatusHistory
from storefront.models.payment import Payment, PaymentRecordStatus
from storefront.models.user import User
from storefront.services.access_token_service import issue_access_token
from storefront.services.discount_service import DiscountService

logger = structlog.get_logger()

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}

FULFILLMENT_TRANSITIONS = {
    FulfillmentStatus.PROCESSING: {FulfillmentStatus.SHIPPING, FulfillmentStatus.CANCELLED},
    FulfillmentStatus.SHIPPING: {
        FulfillmentStatus.DELIVERED,
        FulfillmentStatus.CANCELLED,
        FulfillmentStatus.DELIVERY_FAILED,
    },
    FulfillmentStatus.DELIVERED: set(),
    FulfillmentStatus.CANCELLED: set(),
    FulfillmentStatus.DELIVERY_FAILED: set(),
}

# Payment statuses from which the customer may pick another method
REOPENABLE_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.FAILED)


def can_transition_payment(current: PaymentStatus, new: PaymentStatus) -> bool:
    return new in PAYMENT_TRANSITIONS.get(current, set())


def can_transition_fulfillment(current: FulfillmentStatus, new: FulfillmentStatus) -> bool:
    return new in FULFILLMENT_TRANSITIONS.get(current, set())


class OrderLine:
    """A priced line ready to be frozen into an ``OrderItem``."""

    def __init__(self, variant_id: int, product_name: str, volume_ml: int, quantity: int, unit_price: int):
        self.variant_id = variant_id
        self.product_name = product_name
        self.volume_ml = volume_ml
        self.quantity = quantity
        self.unit_price = unit_price

    @property
    def line_total(self) -> int:
        return self.quantity * self.unit_price


class OrderLedger:
    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get(self, order_id: int, for_update: bool = False) -> Order:
        query = self.db.query(Order).filter(Order.id == order_id)
        if for_update:
            query = query.with_for_update()
        order = query.first()
        if not order:
            raise NotFoundError("Order not found", order_id=order_id)
        return order

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Order]:
        return self.db.query(Order).filter(Order.idempotency_key == idempotency_key).first()

    # ------------------------------------------------------------------
    # Guarded transitions (no commit)
    # ------------------------------------------------------------------
    def _record_history(
        self,
        order_id: int,
        axis: str,
        old_status: Optional[str],
        new_status: str,
        changed_by: Optional[int],
        source: str,
        notes: Optional[str] = None,
    ) -> None:
        self.db.add(
            OrderStatusHistory(
                order_id=order_id,
                axis=axis,
                old_status=old_status,
                new_status=new_status,
                changed_by=changed_by,
                source=source,
                notes=notes,
            )
        )

    def transition_payment(
        self,
        order: Order,
        expected: PaymentStatus,
        new: PaymentStatus,
        *,
        source: str,
        changed_by: Optional[int] = None,
        notes: Optional[str] = None,
        values: Optional[Dict[Any, Any]] = None,
        extra_filters: Iterable = (),
    ) -> Order:
        if not can_transition_payment(expected, new):
            raise ConflictError(
                f"Payment status cannot change from {expected.value} to {new.value}",
                order_id=order.id,
            )

        changes = {Order.payment_status: new, Order.updated_at: datetime.utcnow()}
        changes.update(values or {})
        updated = (
            self.db.query(Order)
            .filter(Order.id == order.id, Order.payment_status == expected, *extra_filters)
            .update(changes, synchronize_session=False)
        )
        if updated != 1:
            logger.warning(
                "payment_transition_conflict",
                order_id=order.id,
                expected=expected.value,
                new=new.value,
                source=source,
            )
            raise ConflictError("Order payment was already processed", order_id=order.id)

        self._record_history(order.id, "payment", expected.value, new.value, changed_by, source, notes)
        self.db.flush()
        self.db.expire(order)
        logger.info(
            "payment_status_changed",
            order_id=order.id,
            old_status=expected.value,
            new_status=new.value,
            source=source,
        )
        return order

    def transition_fulfillment(
        self,
        order: Order,
        expected: FulfillmentStatus,
        new: FulfillmentStatus,
        *,
        source: str,
        changed_by: Optional[int] = None,
        notes: Optional[str] = None,
        values: Optional[Dict[Any, Any]] = None,
    ) -> Order:
        if not can_transition_fulfillment(expected, new):
            raise ConflictError(
                f"Order status cannot change from {expected.name} to {new.name}",
                order_id=order.id,
            )
        if (
            new == FulfillmentStatus.SHIPPING
            and order.payment_method != PaymentMethod.COD
            and order.payment_status != PaymentStatus.PAID
        ):
            raise ConflictError("Online orders must be paid before shipping", order_id=order.id)

        changes = {Order.order_status_id: int(new), Order.updated_at: datetime.utcnow()}
        changes.update(values or {})
        updated = (
            self.db.query(Order)
            .filter(Order.id == order.id, Order.order_status_id == int(expected))
            .update(changes, synchronize_session=False)
        )
        if updated != 1:
            logger.warning(
                "fulfillment_transition_conflict",
                order_id=order.id,
                expected=expected.name,
                new=new.name,
                source=source,
            )
            raise ConflictError("Order status was changed by someone else, please reload", order_id=order.id)

        self._record_history(order.id, "fulfillment", expected.name, new.name, changed_by, source, notes)
        self.db.flush()
        self.db.expire(order)
        logger.info(
            "fulfillment_status_changed",
            order_id=order.id,
            old_status=expected.name,
            new_status=new.name,
            source=source,
        )
        return order

    # ------------------------------------------------------------------
    # Creation (no commit; checkout commits together with the cart clear)
    # ------------------------------------------------------------------
    def create_order(
        self,
        *,
        lines: List[OrderLine],
        payment_method: PaymentMethod,
        address: Dict[str, str],
        subtotal_amount: int,
        shipping_fee: int,
        discount: Optional[Discount] = None,
        discount_amount: int = 0,
        user: Optional[User] = None,
        guest: Optional[Dict[str, str]] = None,
        delivery_notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Order:
        if not lines:
            raise ValidationError("Cannot create an order without items")
        if user is None and not guest:
            raise ValidationError("Guest contact details are required")
        if subtotal_amount != sum(line.line_total for line in lines):
            raise ValidationError("Order subtotal does not match its items")

        if discount is not None:
            DiscountService.consume(self.db, discount)

        total_amount = max(0, subtotal_amount - discount_amount + shipping_fee)
        order = Order(
            user_id=user.id if user else None,
            guest_name=None if user else guest["full_name"],
            guest_email=None if user else guest["email"].strip().lower(),
            guest_phone=None if user else guest["phone"],
            delivery_notes=delivery_notes,
            subtotal_amount=subtotal_amount,
            discount_amount=discount_amount,
            discount_code=discount.code if discount else None,
            shipping_fee=shipping_fee,
            total_amount=total_amount,
            payment_method=payment_method,
            payment_status=PaymentStatus.PENDING,
            order_status_id=int(FulfillmentStatus.PROCESSING),
            access_token=issue_access_token(),
            idempotency_key=idempotency_key,
            **address,
        )
        self.db.add(order)
        self.db.flush()

        for line in lines:
            self.db.add(
                OrderItem(
                    order_id=order.id,
                    variant_id=line.variant_id,
                    product_name=line.product_name,
                    variant_volume_ml=line.volume_ml,
                    quantity=line.quantity,
                    unit_price_at_order=line.unit_price,
                )
            )

        if payment_method == PaymentMethod.COD:
            self.db.add(
                Payment(
                    order_id=order.id,
                    payment_method=PaymentMethod.COD,
                    status=PaymentRecordStatus.PENDING,
                    amount=total_amount,
                )
            )

        self._record_history(
            order.id, "payment", None, PaymentStatus.PENDING.value, user.id if user else None, "checkout"
        )
        self.db.flush()
        logger.info(
            "order_created",
            order_id=order.id,
            user_id=order.user_id,
            payment_method=payment_method.value,
            total_amount=total_amount,
        )
        return order

    # ------------------------------------------------------------------
    # Standalone operations (commit)
    # ------------------------------------------------------------------
    def _commit(self, order: Order) -> Order:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(order)
        return order

    def change_payment_method(
        self,
        order: Order,
        method: PaymentMethod,
        *,
        source: str,
        changed_by: Optional[int] = None,
        commit: bool = True,
    ) -> Order:
        """Switch method while the order is unpaid; a ``Failed`` order is reopened as ``Pending``.

        Reopening is the one way out of ``Failed``; it never leads straight to
        ``Paid``, the next attempt still has to be captured.
        """
        current = order.payment_status
        old_method = order.payment_method
        if current not in REOPENABLE_PAYMENT_STATUSES:
            raise ConflictError("Payment method can only be changed before payment", order_id=order.id)
        if order.fulfillment_status != FulfillmentStatus.PROCESSING:
            raise ConflictError("Payment method can no longer be changed for this order", order_id=order.id)

        try:
            updated = (
                self.db.query(Order)
                .filter(
                    Order.id == order.id,
                    Order.payment_status == current,
                    Order.order_status_id == int(FulfillmentStatus.PROCESSING),
                )
                .update(
                    {
                        Order.payment_method: method,
                        Order.payment_status: PaymentStatus.PENDING,
                        Order.updated_at: datetime.utcnow(),
                    },
                    synchronize_session=False,
                )
            )
            if updated != 1:
                raise ConflictError("Order payment was already processed", order_id=order.id)

            if current != PaymentStatus.PENDING:
                self._record_history(
                    order.id,
                    "payment",
                    current.value,
                    PaymentStatus.PENDING.value,
                    changed_by,
                    source,
                    notes=f"reopened for {method.value}",
                )

            if old_method == PaymentMethod.COD and method != PaymentMethod.COD:
                # No money moved on a COD row; retire it so it cannot be confirmed later
                self.db.query(Payment).filter(
                    Payment.order_id == order.id,
                    Payment.payment_method == PaymentMethod.COD,
                    Payment.status == PaymentRecordStatus.PENDING,
                ).update({Payment.status: PaymentRecordStatus.FAILED}, synchronize_session=False)
            elif method == PaymentMethod.COD and old_method != PaymentMethod.COD:
                self.db.add(
                    Payment(
                        order_id=order.id,
                        payment_method=PaymentMethod.COD,
                        status=PaymentRecordStatus.PENDING,
                        amount=order.total_amount,
                    )
                )
            self.db.flush()
            self.db.expire(order)
        except APIError:
            self.db.rollback()
            raise

        logger.info(
            "payment_method_changed",
            order_id=order.id,
            old_method=old_method.value,
            new_method=method.value,
            reopened=current != PaymentStatus.PENDING,
        )
        if commit:
            return self._commit(order)
        return order

    def confirm_cod_payment(self, order_id: int, admin: User) -> Order:
        """Cash collected on delivery: ``Pending -> Paid`` and the COD row is completed."""
        order = self.get(order_id)
        if order.payment_method != PaymentMethod.COD:
            raise ConflictError("Only cash-on-delivery orders can be confirmed manually", order_id=order.id)

        try:
            self.transition_payment(
                order,
                PaymentStatus.PENDING,
                PaymentStatus.PAID,
                source="admin",
                changed_by=admin.id,
                notes="cash collected",
            )
            now = datetime.utcnow()
            payment = (
                self.db.query(Payment)
                .filter(
                    Payment.order_id == order_id,
                    Payment.payment_method == PaymentMethod.COD,
                    Payment.status == PaymentRecordStatus.PENDING,
                )
                .first()
            )
            if payment is None:
                payment = Payment(order_id=order_id, payment_method=PaymentMethod.COD, amount=order.total_amount)
                self.db.add(payment)
            payment.status = PaymentRecordStatus.COMPLETED
            payment.paid_at = now
        except APIError:
            self.db.rollback()
            raise
        return self._commit(order)

    def refund(self, order_id: int, admin: User, notes: Optional[str] = None) -> Order:
        order = self.get(order_id)
        try:
            self.transition_payment(
                order,
                PaymentStatus.PAID,
                PaymentStatus.REFUNDED,
                source="admin",
                changed_by=admin.id,
                notes=notes,
            )
            self.db.query(Payment).filter(
                Payment.order_id == order_id,
                Payment.status == PaymentRecordStatus.COMPLETED,
            ).update({Payment.status: PaymentRecordStatus.REFUNDED}, synchronize_session=False)
        except APIError:
            self.db.rollback()
            raise
        logger.info("order_refunded", order_id=order_id, admin_user_id=admin.id)
        return self._commit(order)

    def cancel(
        self,
        order: Order,
        reason: str,
        *,
        source: str,
        changed_by: Optional[int] = None,
    ) -> Order:
        """Customer or guest cancellation, only while the order is still being prepared."""
        if order.payment_status == PaymentStatus.PAID and order.payment_method != PaymentMethod.COD:
            raise ConflictError(
                "This order has already been paid online, please contact support to cancel it",
                order_id=order.id,
            )
        try:
            self.transition_fulfillment(
                order,
                FulfillmentStatus.PROCESSING,
                FulfillmentStatus.CANCELLED,
                source=source,
                changed_by=changed_by,
                notes=reason,
                values={Order.cancellation_reason: reason},
            )
        except APIError:
            self.db.rollback()
            raise
        return self._commit(order)

    def update_fulfillment(
        self,
        order_id: int,
        new: FulfillmentStatus,
        admin: User,
        notes: Optional[str] = None,
    ) -> Order:
        order = self.get(order_id)
        values = {Order.cancellation_reason: notes} if new == FulfillmentStatus.CANCELLED and notes else None
        try:
            self.transition_fulfillment(
                order,
                order.fulfillment_status,
                new,
                source="admin",
                changed_by=admin.id,
                notes=notes,
                values=values,
            )
        except APIError:
            self.db.rollback()
            raise
        return self._commit(order)
