"""Applies gateway payment results to the order ledger.

Three writers report the same attempt: the MoMo IPN callback, the shopper's
status poll after the redirect, and the periodic reconcile task. All of them
end in ``PaymentReconciler.apply_result`` and the ledger's compare-and-set
transitions, so whichever arrives first wins and the others become no-ops.
"""
import enum
import json
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

import structlog
from sqlalchemy.orm import Session

from storefront.core.exceptions import ConflictError, IntegrityError
from storefront.models.order import FulfillmentStatus, Order, PaymentMethod, PaymentStatus
from storefront.models.payment import Payment, PaymentIncident, PaymentRecordStatus
from storefront.schemas.payment import GatewayResult, ResultKind
from storefront.services.momo_gateway import MomoGateway, parse_callback
from storefront.services.order_ledger import OrderLedger

logger = structlog.get_logger()


class ReconcileOutcome(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IN_PROGRESS = "in_progress"
    FAILED_RECORDED = "failed_recorded"
    INCIDENT = "incident"


class IncidentKind(str, enum.Enum):
    AMOUNT_MISMATCH = "amount_mismatch"
    UNKNOWN_ATTEMPT = "unknown_attempt"
    DUPLICATE_CAPTURE = "duplicate_capture"
    CAPTURE_ON_CLOSED_ORDER = "capture_on_closed_order"


class PaymentReconciler:
    def __init__(self, db: Session, gateway: MomoGateway):
        self.db = db
        self.gateway = gateway
        self.ledger = OrderLedger(db)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def handle_callback(self, payload: Mapping[str, Any]) -> ReconcileOutcome:
        """IPN entry point.

        Raises ``SignatureMismatch`` for a body that does not verify. Every
        other outcome, integrity incidents included, is returned so the caller
        can acknowledge it and stop the gateway from retrying.
        """
        callback = parse_callback(payload, self.gateway.config)
        logger.info(
            "webhook_received",
            gateway_order_id=callback.order_id,
            transaction_id=callback.transaction_id,
            result_code=callback.result_code,
            amount=callback.amount,
        )
        try:
            return self.apply_result(callback, dict(payload), source="webhook")
        except IntegrityError:
            return ReconcileOutcome.INCIDENT
        except ConflictError:
            return ReconcileOutcome.DUPLICATE

    def poll_status(self, attempt: Payment, source: str = "poll") -> ReconcileOutcome:
        """Ask the gateway about one attempt and apply the answer."""
        if attempt.status != PaymentRecordStatus.PENDING:
            return ReconcileOutcome.DUPLICATE
        result, raw = self.gateway.query_payment(attempt.gateway_order_id)
        return self.apply_result(result, raw, source=source)

    def stale_attempts(self, older_than_minutes: int, limit: int = 100):
        cutoff = datetime.utcnow() - timedelta(minutes=older_than_minutes)
        return (
            self.db.query(Payment)
            .filter(
                Payment.status == PaymentRecordStatus.PENDING,
                Payment.payment_method == PaymentMethod.MOMO,
                Payment.gateway_order_id.isnot(None),
                Payment.created_at < cutoff,
            )
            .order_by(Payment.id)
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    def apply_result(self, result: GatewayResult, raw: Mapping[str, Any], source: str) -> ReconcileOutcome:
        """Apply a verified gateway result at most once.

        Raises ``IntegrityError`` (after recording a ``PaymentIncident``) when
        the result cannot belong to the attempt it names. The order is left
        untouched in that case and the attempt is parked as ``Under review``.
        """
        if result.kind == ResultKind.IN_PROGRESS:
            logger.info("payment_in_progress", gateway_order_id=result.order_id, result_code=result.result_code)
            return ReconcileOutcome.IN_PROGRESS

        attempt = (
            self.db.query(Payment)
            .filter(Payment.gateway_order_id == result.order_id)
            .with_for_update()
            .first()
        )
        if attempt is None:
            self._raise_incident(
                IncidentKind.UNKNOWN_ATTEMPT,
                result,
                raw,
                order_id=None,
                detail="No payment attempt with this gateway order id",
            )

        if self._already_applied(attempt, result):
            self.db.rollback()
            logger.info(
                "payment_result_duplicate",
                order_id=attempt.order_id,
                gateway_order_id=result.order_id,
                transaction_id=result.transaction_id,
                source=source,
            )
            return ReconcileOutcome.DUPLICATE

        order = self.ledger.get(attempt.order_id)
        if result.kind == ResultKind.SUCCESS:
            return self._apply_success(order, attempt, result, raw, source)
        return self._apply_failure(order, attempt, result, raw, source)

    @staticmethod
    def _already_applied(attempt: Payment, result: GatewayResult) -> bool:
        if attempt.status != PaymentRecordStatus.PENDING:
            return True
        return result.transaction_id is not None and attempt.transaction_id == result.transaction_id

    def _apply_success(
        self,
        order: Order,
        attempt: Payment,
        result: GatewayResult,
        raw: Mapping[str, Any],
        source: str,
    ) -> ReconcileOutcome:
        if result.amount != order.total_amount or result.amount != attempt.amount:
            self._raise_incident(
                IncidentKind.AMOUNT_MISMATCH,
                result,
                raw,
                order_id=order.id,
                attempt_id=attempt.id,
                detail=(
                    f"gateway amount {result.amount} != order total {order.total_amount}"
                    f" / attempt amount {attempt.amount}"
                ),
            )

        if order.payment_status != PaymentStatus.PENDING or order.fulfillment_status == FulfillmentStatus.CANCELLED:
            return self._record_capture_incident(order, attempt, result, raw)

        now = datetime.utcnow()
        try:
            self.ledger.transition_payment(
                order,
                PaymentStatus.PENDING,
                PaymentStatus.PAID,
                source=source,
                notes=f"transId={result.transaction_id}",
                values={Order.payment_method: PaymentMethod.MOMO},
                extra_filters=(Order.order_status_id != int(FulfillmentStatus.CANCELLED),),
            )
        except ConflictError:
            # Lost the race to another writer; look at what it did
            self.db.rollback()
            order = self.ledger.get(attempt.order_id)
            attempt = self.db.query(Payment).filter(Payment.id == attempt.id).with_for_update().one()
            if self._already_applied(attempt, result):
                return ReconcileOutcome.DUPLICATE
            return self._record_capture_incident(order, attempt, result, raw)

        attempt.status = PaymentRecordStatus.COMPLETED
        attempt.transaction_id = result.transaction_id
        attempt.result_code = result.result_code
        attempt.gateway_payload = json.dumps(dict(raw), default=str)
        attempt.paid_at = now
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "payment_captured",
            order_id=order.id,
            payment_id=attempt.id,
            transaction_id=result.transaction_id,
            amount=result.amount,
            source=source,
        )

        from storefront.tasks.email_tasks import send_order_confirmation

        try:
            send_order_confirmation.delay(order.id)
        except Exception:
            logger.exception("order_confirmation_queue_failed", order_id=order.id)
        return ReconcileOutcome.APPLIED

    def _apply_failure(
        self,
        order: Order,
        attempt: Payment,
        result: GatewayResult,
        raw: Mapping[str, Any],
        source: str,
    ) -> ReconcileOutcome:
        attempt.status = PaymentRecordStatus.FAILED
        attempt.transaction_id = result.transaction_id
        attempt.result_code = result.result_code
        attempt.gateway_payload = json.dumps(dict(raw), default=str)

        # An older attempt failing must not fail the order while a newer one is still open
        newer_open_attempt = (
            self.db.query(Payment.id)
            .filter(
                Payment.order_id == order.id,
                Payment.id > attempt.id,
                Payment.status == PaymentRecordStatus.PENDING,
            )
            .first()
        )
        if (
            newer_open_attempt is None
            and order.payment_status == PaymentStatus.PENDING
            and order.payment_method == PaymentMethod.MOMO
        ):
            try:
                self.ledger.transition_payment(
                    order,
                    PaymentStatus.PENDING,
                    PaymentStatus.FAILED,
                    source=source,
                    notes=f"resultCode={result.result_code}",
                    extra_filters=(Order.payment_method == PaymentMethod.MOMO,),
                )
            except ConflictError:
                # A concurrent capture already moved the order on; it wins
                logger.info("payment_failure_superseded", order_id=order.id, gateway_order_id=result.order_id)

        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "payment_failed",
            order_id=order.id,
            payment_id=attempt.id,
            result_code=result.result_code,
            gateway_message=result.message,
            source=source,
        )
        return ReconcileOutcome.FAILED_RECORDED

    # ------------------------------------------------------------------
    # Incidents
    # ------------------------------------------------------------------
    def _record_capture_incident(
        self,
        order: Order,
        attempt: Payment,
        result: GatewayResult,
        raw: Mapping[str, Any],
    ) -> ReconcileOutcome:
        """Money was captured for an order that is no longer ``Pending`` or was cancelled.

        Nothing on the order changes. The attempt is parked as ``Under review``
        with the transaction id, so redeliveries and the reconcile task leave it
        alone, and the capture is queued for a manual refund.
        """
        kind = (
            IncidentKind.DUPLICATE_CAPTURE
            if order.payment_status == PaymentStatus.PAID
            else IncidentKind.CAPTURE_ON_CLOSED_ORDER
        )
        attempt.status = PaymentRecordStatus.UNDER_REVIEW
        attempt.transaction_id = result.transaction_id
        attempt.result_code = result.result_code
        attempt.gateway_payload = json.dumps(dict(raw), default=str)
        self._add_incident(
            kind,
            result,
            raw,
            order.id,
            f"order payment status is {order.payment_status.value}, fulfillment is {order.fulfillment_status.name}",
        )
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return ReconcileOutcome.INCIDENT

    def _add_incident(
        self,
        kind: IncidentKind,
        result: GatewayResult,
        raw: Mapping[str, Any],
        order_id: Optional[int],
        detail: str,
    ) -> None:
        logger.error(
            "payment_integrity_incident",
            kind=kind.value,
            order_id=order_id,
            gateway_order_id=result.order_id,
            transaction_id=result.transaction_id,
            amount=result.amount,
            detail=detail,
        )
        existing = (
            self.db.query(PaymentIncident.id)
            .filter(
                PaymentIncident.kind == kind.value,
                PaymentIncident.gateway_order_id == result.order_id,
                PaymentIncident.transaction_id == result.transaction_id,
            )
            .first()
        )
        if existing:
            return
        self.db.add(
            PaymentIncident(
                order_id=order_id,
                gateway_order_id=result.order_id,
                transaction_id=result.transaction_id,
                kind=kind.value,
                detail=detail,
                payload=json.dumps(dict(raw), default=str),
            )
        )

    def _raise_incident(
        self,
        kind: IncidentKind,
        result: GatewayResult,
        raw: Mapping[str, Any],
        order_id: Optional[int],
        detail: str,
        attempt_id: Optional[int] = None,
    ) -> None:
        # Drop the row lock and anything pending before writing the incident on its own
        self.db.rollback()
        if attempt_id is not None:
            # Only the status moves; amounts and transaction id stay as the attempt recorded them
            self.db.query(Payment).filter(
                Payment.id == attempt_id,
                Payment.status == PaymentRecordStatus.PENDING,
            ).update({Payment.status: PaymentRecordStatus.UNDER_REVIEW}, synchronize_session=False)
        self._add_incident(kind, result, raw, order_id, detail)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        raise IntegrityError(
            "Payment result does not match the order",
            kind=kind.value,
            order_id=order_id,
            gateway_order_id=result.order_id,
        )
