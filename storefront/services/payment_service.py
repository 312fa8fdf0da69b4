import structlog
from sqlalchemy.orm import Session

from storefront.core.exceptions import ConflictError, GatewayError, NetworkError, ValidationError
from storefront.models.order import FulfillmentStatus, Order, PaymentMethod, PaymentStatus
from storefront.models.payment import Payment, PaymentRecordStatus
from storefront.schemas.payment import PaymentLink
from storefront.services.momo_gateway import MomoGateway, new_gateway_order_id, new_request_id
from storefront.services.order_ledger import OrderLedger

logger = structlog.get_logger()

# MoMo wallet limits per transaction (VND)
MOMO_MIN_AMOUNT = 1000
MOMO_MAX_AMOUNT = 50_000_000


class PaymentService:
    def __init__(self, db: Session, gateway: MomoGateway):
        self.db = db
        self.gateway = gateway
        self.ledger = OrderLedger(db)

    def start_payment(self, order: Order, *, source: str, changed_by: int = None) -> PaymentLink:
        """Open a new MoMo attempt for ``order`` and return where to send the shopper.

        Each call records its own Pending ``Payment`` row before the gateway is
        contacted, so a callback that races the create reply still finds it.
        A ``Failed`` order is reopened through ``change_payment_method`` first.
        """
        if order.fulfillment_status == FulfillmentStatus.CANCELLED:
            raise ConflictError("This order has been cancelled", order_id=order.id)
        if order.payment_status == PaymentStatus.PAID:
            raise ConflictError("This order has already been paid", order_id=order.id)
        if order.payment_status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            raise ConflictError("This order can no longer be paid", order_id=order.id)
        if not MOMO_MIN_AMOUNT <= order.total_amount <= MOMO_MAX_AMOUNT:
            raise ValidationError(
                f"Online payment is available for orders between {MOMO_MIN_AMOUNT:,} and {MOMO_MAX_AMOUNT:,} VND",
                order_id=order.id,
            )

        if order.payment_status == PaymentStatus.FAILED or order.payment_method != PaymentMethod.MOMO:
            self.ledger.change_payment_method(order, PaymentMethod.MOMO, source=source, changed_by=changed_by)

        attempt = Payment(
            order_id=order.id,
            payment_method=PaymentMethod.MOMO,
            status=PaymentRecordStatus.PENDING,
            amount=order.total_amount,
            gateway_order_id=new_gateway_order_id(order.id),
            gateway_request_id=new_request_id(),
        )
        self.db.add(attempt)
        self.db.commit()
        self.db.refresh(attempt)

        try:
            link = self.gateway.create_payment(
                gateway_order_id=attempt.gateway_order_id,
                request_id=attempt.gateway_request_id,
                amount=attempt.amount,
                order_info=f"Payment for order #{order.id}",
            )
        except GatewayError as exc:
            # The gateway refused to open this attempt; the order stays Pending for a retry
            attempt.status = PaymentRecordStatus.FAILED
            attempt.result_code = exc.result_code
            self.db.commit()
            raise
        except NetworkError:
            # Outcome unknown: keep the attempt Pending, the reconcile task will query it
            logger.warning("payment_attempt_outcome_unknown", order_id=order.id, gateway_order_id=attempt.gateway_order_id)
            raise

        logger.info(
            "payment_attempt_started",
            order_id=order.id,
            payment_id=attempt.id,
            gateway_order_id=attempt.gateway_order_id,
            amount=attempt.amount,
        )
        return link

    def latest_attempt(self, order_id: int) -> Payment:
        attempt = (
            self.db.query(Payment)
            .filter(
                Payment.order_id == order_id,
                Payment.payment_method == PaymentMethod.MOMO,
                Payment.gateway_order_id.isnot(None),
            )
            .order_by(Payment.id.desc())
            .first()
        )
        if not attempt:
            raise ConflictError("No online payment has been started for this order", order_id=order_id)
        return attempt
