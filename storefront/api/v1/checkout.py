from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from storefront.api.deps import (
    get_cart_session_key,
    get_checkout,
    get_current_user_optional,
    get_payment_service,
    get_reconciler,
)
from storefront.api.v1.cart import resolve_cart
from storefront.core.exceptions import SignatureMismatch
from storefront.core.rate_limiter import limiter
from storefront.db.session import get_db
from storefront.models.payment import PaymentRecordStatus
from storefront.models.user import User
from storefront.schemas.checkout import AdvanceRequest, CheckoutDraft, CompleteRequest
from storefront.schemas.order import CheckoutCompleteResponse, OrderResponse
from storefront.schemas.payment import PaymentStatusRequest, StartPaymentRequest
from storefront.services.access_token_service import resolve_order
from storefront.services.checkout_service import CheckoutStateMachine
from storefront.services.payment_service import PaymentService
from storefront.services.webhook_reconciler import PaymentReconciler, ReconcileOutcome
from storefront.utils.response import success

router = APIRouter()

logger = structlog.get_logger()


@router.post("/advance")
def advance_checkout(
    payload: AdvanceRequest,
    current_user: Optional[User] = Depends(get_current_user_optional),
    session_key: Optional[str] = Depends(get_cart_session_key),
    checkout: CheckoutStateMachine = Depends(get_checkout),
    db: Session = Depends(get_db),
):
    """Validate the draft up to the requested step and return the priced preview"""
    cart = resolve_cart(db, current_user, session_key, create=False)
    step = checkout.advance(cart, payload.draft, payload.target, user=current_user)
    return success(data=step.model_dump(), message=f"Checkout at {step.state.value}")


@router.post("/cancel")
def cancel_checkout(
    draft: CheckoutDraft,
    checkout: CheckoutStateMachine = Depends(get_checkout),
):
    step = checkout.cancel(draft)
    return success(data=step.model_dump(), message="Checkout cancelled")


@router.post(
    "/complete",
    status_code=status.HTTP_201_CREATED,
    summary="Place the order",
    description="""
Turns the current cart into an order.

Process:
1. Re-runs every checkout guard (cart, address, payment method, discount)
2. Checks cart prices and stock against the catalog
3. Persists the order, its items and its access token, consuming the discount
4. Clears the cart
5. Guests receive the access token; online payment continues at /checkout/payment
""",
    responses={
        200: {"description": "Order already created for this idempotency key"},
        201: {"description": "Order created"},
        400: {"description": "Checkout guard failed"},
    },
    tags=["Checkout"],
)
@limiter.limit("10/minute")
def complete_checkout(
    request: Request,
    payload: CompleteRequest,
    current_user: Optional[User] = Depends(get_current_user_optional),
    session_key: Optional[str] = Depends(get_cart_session_key),
    checkout: CheckoutStateMachine = Depends(get_checkout),
    db: Session = Depends(get_db),
):
    cart = resolve_cart(db, current_user, session_key, create=False)
    result = checkout.complete(cart, payload.draft, payload.idempotency_key, user=current_user)

    data = CheckoutCompleteResponse(
        order=OrderResponse.model_validate(result.order),
        access_token=result.access_token,
        created=result.created,
    ).model_dump()
    if not result.created:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content=success(data=data, message="Order already exists"),
        )
    return success(data=data, message="Order created")


@router.post("/payment")
@limiter.limit("20/minute")
def start_payment(
    request: Request,
    payload: StartPaymentRequest,
    current_user: Optional[User] = Depends(get_current_user_optional),
    payments: PaymentService = Depends(get_payment_service),
    db: Session = Depends(get_db),
):
    """Open a MoMo payment attempt and return the gateway redirect"""
    order = resolve_order(db, order_id=payload.order_id, token=payload.token, user=current_user)
    link = payments.start_payment(
        order,
        source="customer" if current_user else "guest",
        changed_by=current_user.id if current_user else None,
    )
    return success(
        data={
            "order_id": order.id,
            "gateway_order_id": link.gateway_order_id,
            "redirect_url": link.pay_url,
            "deeplink": link.deeplink,
            "qr_code_url": link.qr_code_url,
        },
        message="Payment started",
    )


@router.post("/payment/callback")
async def payment_callback(
    request: Request,
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    """MoMo IPN. Public; authenticated only by the payload signature.

    Not rate limited: MoMo delivers every callback from a few shared addresses.
    """
    try:
        payload = await request.json()
    except ValueError as exc:
        logger.warning("webhook_body_invalid")
        raise SignatureMismatch("Malformed payment callback") from exc
    if not isinstance(payload, dict):
        raise SignatureMismatch("Malformed payment callback")

    try:
        outcome = reconciler.handle_callback(payload)
    except SignatureMismatch as exc:
        logger.warning(
            "webhook_signature_invalid",
            gateway_order_id=payload.get("orderId"),
            transaction_id=payload.get("transId"),
            result_code=payload.get("resultCode"),
            amount=payload.get("amount"),
            reason=exc.message,
        )
        raise

    return success(data={"status": outcome.value}, message="Callback received")


@router.post("/payment/status")
@limiter.limit("30/minute")
def payment_status(
    request: Request,
    payload: PaymentStatusRequest,
    current_user: Optional[User] = Depends(get_current_user_optional),
    payments: PaymentService = Depends(get_payment_service),
    reconciler: PaymentReconciler = Depends(get_reconciler),
    db: Session = Depends(get_db),
):
    """Polling fallback after the gateway redirect: re-ask the gateway and reconcile"""
    order = resolve_order(db, order_id=payload.order_id, token=payload.token, user=current_user)
    attempt = payments.latest_attempt(order.id)

    outcome = ReconcileOutcome.DUPLICATE
    if attempt.status == PaymentRecordStatus.PENDING:
        outcome = reconciler.poll_status(attempt)
    elif attempt.status == PaymentRecordStatus.UNDER_REVIEW:
        outcome = ReconcileOutcome.INCIDENT

    db.refresh(order)
    return success(
        data={
            "order_id": order.id,
            "payment_status": order.payment_status.value,
            "outcome": outcome.value,
        },
    )
