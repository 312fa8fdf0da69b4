from collections import Counter
from typing import Dict

from celery import shared_task
from celery.utils.log import get_task_logger
from sqlalchemy.orm import Session

from storefront.core.config import settings
from storefront.core.exceptions import CheckoutError
from storefront.db.session import SessionLocal
from storefront.services.momo_gateway import GatewayConfig, MomoGateway
from storefront.services.webhook_reconciler import PaymentReconciler

logger = get_task_logger(__name__)


def reconcile_stale_attempts(db: Session, gateway: MomoGateway, older_than_minutes: int) -> Dict[str, int]:
    """Query the gateway for every MoMo attempt still Pending after ``older_than_minutes``.

    Covers callbacks that never arrived. One attempt failing to reconcile does
    not stop the others; it is logged and counted under ``errors``.
    """
    reconciler = PaymentReconciler(db, gateway)
    summary = Counter()
    for attempt in reconciler.stale_attempts(older_than_minutes):
        try:
            outcome = reconciler.poll_status(attempt, source="reconcile_task")
        except CheckoutError as exc:
            db.rollback()
            logger.warning(
                "payment_reconcile_failed payment_id=%s gateway_order_id=%s code=%s",
                attempt.id,
                attempt.gateway_order_id,
                exc.code,
            )
            summary["errors"] += 1
            continue
        summary[outcome.value] += 1
    return dict(summary)


@shared_task(bind=True, max_retries=3)
def reconcile_pending_payments(self):
    """
    Settle MoMo attempts whose IPN callback was lost.
    Runs periodically via Celery Beat.
    """
    db = SessionLocal()
    try:
        gateway = MomoGateway(GatewayConfig.from_settings(settings))
        summary = reconcile_stale_attempts(db, gateway, settings.PAYMENT_RECONCILE_AFTER_MINUTES)
        logger.info("payment_reconcile_finished %s", summary)
        return summary
    except Exception as exc:
        db.rollback()
        raise self.retry(exc=exc, countdown=60)
    finally:
        db.close()
