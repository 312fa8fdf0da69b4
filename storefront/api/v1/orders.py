from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from storefront.api.deps import get_current_user_optional, require_admin
from storefront.core.rate_limiter import limiter
from storefront.db.session import get_db
from storefront.models.user import User
from storefront.schemas.order import (
    CancelOrderRequest,
    ChangePaymentMethodRequest,
    FulfillmentStatusUpdate,
    LookupTokenRequest,
    OrderResponse,
)
from storefront.services.access_token_service import resolve_order, send_lookup_token
from storefront.services.order_ledger import OrderLedger
from storefront.utils.response import success

router = APIRouter()


def _order_payload(order) -> dict:
    return OrderResponse.model_validate(order).model_dump()


@router.get("/lookup")
@limiter.limit("30/minute")
def lookup_order(
    request: Request,
    token: str = Query(..., min_length=16, max_length=64),
    db: Session = Depends(get_db),
):
    """Guest order retrieval by access token"""
    order = resolve_order(db, token=token)
    return success(data=_order_payload(order))


@router.post("/lookup-token")
@limiter.limit("5/minute")
def request_lookup_token(
    request: Request,
    payload: LookupTokenRequest,
    db: Session = Depends(get_db),
):
    """Email a guest order's access token, linking the email on first use"""
    order = send_lookup_token(db, payload.email, token=payload.token, order_id=payload.order_id)
    return success(data={"order_id": order.id}, message="The order link has been sent to your email")


@router.get("/{order_id}")
def get_order(
    order_id: int,
    token: Optional[str] = Query(None, max_length=64),
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
):
    """Order detail for its owner or the holder of its access token"""
    order = resolve_order(db, order_id=order_id, token=token, user=current_user)
    return success(data=_order_payload(order))


@router.post("/{order_id}/cancel")
@limiter.limit("10/minute")
def cancel_order(
    request: Request,
    order_id: int,
    payload: CancelOrderRequest,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
):
    order = resolve_order(db, order_id=order_id, token=payload.token, user=current_user)
    order = OrderLedger(db).cancel(
        order,
        payload.reason,
        source="customer" if current_user else "guest",
        changed_by=current_user.id if current_user else None,
    )
    return success(data=_order_payload(order), message="Order cancelled")


@router.post("/{order_id}/payment-method")
def change_payment_method(
    order_id: int,
    payload: ChangePaymentMethodRequest,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
):
    """Switch an unpaid order between MoMo and cash on delivery"""
    order = resolve_order(db, order_id=order_id, token=payload.token, user=current_user)
    order = OrderLedger(db).change_payment_method(
        order,
        payload.payment_method,
        source="customer" if current_user else "guest",
        changed_by=current_user.id if current_user else None,
    )
    return success(data=_order_payload(order), message="Payment method updated")


@router.put("/{order_id}/status")
def update_order_status(
    order_id: int,
    payload: FulfillmentStatusUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    order = OrderLedger(db).update_fulfillment(order_id, payload.status, admin, notes=payload.notes)
    return success(data=_order_payload(order), message="Order status updated")


@router.post("/{order_id}/confirm-payment")
def confirm_cod_payment(
    order_id: int,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Record cash collected for a cash-on-delivery order"""
    order = OrderLedger(db).confirm_cod_payment(order_id, admin)
    return success(data=_order_payload(order), message="Payment confirmed")


@router.post("/{order_id}/refund")
def refund_order(
    order_id: int,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    order = OrderLedger(db).refund(order_id, admin)
    return success(data=_order_payload(order), message="Order refunded")
