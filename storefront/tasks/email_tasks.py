from celery import Task
from celery.utils.log import get_task_logger
from email.message import EmailMessage
from typing import Optional

from storefront.core.celery_app import celery_app
from storefront.core.config import settings
from storefront.utils.email import _send_email_smtp
from storefront.utils.email_templates import (
    order_access_token_template,
    order_confirmation_template,
    order_lookup_url,
)

logger = get_task_logger(__name__)


# -------------------------------
# Base Task (Retry-safe)
# -------------------------------
class EmailTask(Task):
    """
    Base email task with retries and backoff.
    Prevents email loss on temporary SMTP failures.
    """
    autoretry_for = (Exception,)
    retry_kwargs = {"max_retries": 3}
    retry_backoff = True
    retry_backoff_max = 600  # 10 minutes
    retry_jitter = True
    acks_late = True  # retry if worker crashes


def build_email(
    *,
    to: str,
    subject: str,
    text: str,
    html: Optional[str] = None,
    from_email: Optional[str] = None,
) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = from_email or f"{settings.EMAILS_FROM_NAME} <{settings.EMAILS_FROM_EMAIL}>"
    msg["To"] = to
    msg.set_content(text)

    if html:
        msg.add_alternative(html, subtype="html")

    return msg


# -------------------------------
# Order Confirmation
# -------------------------------
@celery_app.task(base=EmailTask, bind=True)
def send_order_confirmation(self, order_id: int):
    from storefront.db.session import SessionLocal
    from storefront.models.order import Order

    db = SessionLocal()
    try:
        order = db.query(Order).filter(Order.id == order_id).first()
        recipient = order.contact_email if order else None
        if not recipient:
            logger.error("order_confirmation_failed order_id=%s reason=no_recipient", order_id)
            return

        msg = build_email(
            to=recipient,
            subject=f"Order Confirmed - #{order.id}",
            text=f"Your order #{order.id} has been confirmed.",
            html=order_confirmation_template(order),
            from_email=settings.EMAILS_FROM_ORDERS or None,
        )

        _send_email_smtp(msg)
        logger.info("order_confirmation_sent order_id=%s", order_id)

    except Exception as exc:
        logger.exception("order_confirmation_error order_id=%s", order_id)
        raise self.retry(exc=exc)
    finally:
        db.close()


# -------------------------------
# Guest Order Access Token
# -------------------------------
@celery_app.task(base=EmailTask, bind=True)
def send_order_access_token(self, order_id: int, email: str):
    from storefront.db.session import SessionLocal
    from storefront.models.order import Order

    db = SessionLocal()
    try:
        order = db.query(Order).filter(Order.id == order_id).first()
        if not order or order.user_id is not None:
            logger.error("order_access_token_failed order_id=%s", order_id)
            return

        msg = build_email(
            to=email,
            subject=f"Your order #{order.id}",
            text=f"View your order at {order_lookup_url(order)}",
            html=order_access_token_template(order),
            from_email=settings.EMAILS_FROM_ORDERS or None,
        )

        _send_email_smtp(msg)
        logger.info("order_access_token_sent order_id=%s", order_id)

    except Exception as exc:
        logger.exception("order_access_token_error order_id=%s", order_id)
        raise self.retry(exc=exc)
    finally:
        db.close()
