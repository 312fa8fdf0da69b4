import hmac
import secrets
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from storefront.core.exceptions import AccessDenied, ConflictError, NotFoundError
from storefront.models.order import Order
from storefront.models.user import User

logger = structlog.get_logger()

ACCESS_TOKEN_BYTES = 32


def issue_access_token() -> str:
    """Opaque order lookup secret, 43 url-safe characters."""
    return secrets.token_urlsafe(ACCESS_TOKEN_BYTES)


def _token_matches(order: Order, token: Optional[str]) -> bool:
    if not token:
        return False
    return hmac.compare_digest(order.access_token.encode(), token.encode())


def resolve_order(
    db: Session,
    order_id: Optional[int] = None,
    token: Optional[str] = None,
    user: Optional[User] = None,
) -> Order:
    """Load an order the caller is entitled to see.

    Access is granted by the order's access token or by being its owner.
    Neither credential means ``AccessDenied``; the order's existence is not
    confirmed to callers who fail both checks.
    """
    if token is None and user is None:
        raise AccessDenied("Sign in or provide the order access token", order_id=order_id)

    if order_id is None:
        order = db.query(Order).filter(Order.access_token == token).first() if token else None
        if not order:
            raise NotFoundError("Order not found")
        return order

    order = db.query(Order).filter(Order.id == order_id).first()
    if order and _token_matches(order, token):
        return order
    if order and user is not None and order.user_id == user.id:
        return order

    logger.info("order_access_denied", order_id=order_id, user_id=user.id if user else None, has_token=bool(token))
    raise AccessDenied("You do not have access to this order", order_id=order_id)


def send_lookup_token(
    db: Session,
    email: str,
    token: Optional[str] = None,
    order_id: Optional[int] = None,
) -> Order:
    """Email a guest order's access token to ``email``.

    The first email association for a guest order requires the token itself;
    after that, only the stored guest email may receive it.
    """
    from storefront.tasks.email_tasks import send_order_access_token

    query = db.query(Order)
    if token:
        query = query.filter(Order.access_token == token)
    if order_id is not None:
        query = query.filter(Order.id == order_id)
    order = query.first()
    if not order:
        raise NotFoundError("Order not found")

    if order.user_id is not None:
        raise AccessDenied("This order belongs to an account, sign in to view it", order_id=order.id)

    normalized_email = email.strip().lower()
    if order.guest_email:
        if order.guest_email.strip().lower() != normalized_email:
            logger.info("lookup_token_email_mismatch", order_id=order.id)
            raise AccessDenied("Email does not match this order", order_id=order.id)
    else:
        if not token:
            raise AccessDenied("The order access token is required to link an email", order_id=order.id)

        bound = (
            db.query(Order)
            .filter(Order.id == order.id, Order.guest_email.is_(None))
            .update({Order.guest_email: normalized_email}, synchronize_session=False)
        )
        if bound != 1:
            db.rollback()
            raise ConflictError("An email was linked to this order concurrently", order_id=order.id)
        db.commit()
        db.refresh(order)
        logger.info("guest_email_bound", order_id=order.id)

    send_order_access_token.delay(order.id, normalized_email)
    logger.info("lookup_token_queued", order_id=order.id)
    return order
