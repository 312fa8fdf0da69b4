from functools import lru_cache
from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from storefront.core.config import settings
from storefront.core.exceptions import ValidationError
from storefront.core.security import decode_token
from storefront.db.session import get_db
from storefront.models.user import User, UserRole
from storefront.services.checkout_service import CheckoutStateMachine, PricingConfig
from storefront.services.momo_gateway import GatewayConfig, MomoGateway
from storefront.services.payment_service import PaymentService
from storefront.services.webhook_reconciler import PaymentReconciler

logger = structlog.get_logger()

CART_SESSION_HEADER = "X-Cart-Session"


def _extract_token(request: Request) -> Optional[str]:
    if request.cookies.get("access_token"):
        return request.cookies.get("access_token")
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1]
    return None


def get_current_user_optional(
    request: Request,
    db: Session = Depends(get_db),
) -> Optional[User]:
    """Current shopper if a credential was sent; guests get ``None``.

    A credential that is present but invalid is still rejected rather than
    silently downgraded to guest checkout.
    """
    token = _extract_token(request)
    if not token:
        return None

    payload = decode_token(token)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
        )

    user = db.query(User).filter(User.id == int(user_id)).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is inactive",
        )
    return user


def get_current_user(
    current_user: Optional[User] = Depends(get_current_user_optional),
) -> User:
    if current_user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return current_user


def require_admin(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> User:
    if current_user.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=403,
            detail="Admin access required",
        )

    logger.info(
        "admin_action",
        action=f"{request.method} {request.url.path}",
        admin_user_id=current_user.id,
        client_ip=request.client.host if request.client else None,
    )
    return current_user


def get_cart_session_key(
    x_cart_session: Optional[str] = Header(default=None, alias=CART_SESSION_HEADER),
) -> Optional[str]:
    if x_cart_session is None:
        return None
    key = x_cart_session.strip()
    if not 16 <= len(key) <= 64:
        raise ValidationError(f"{CART_SESSION_HEADER} must be 16-64 characters")
    return key


@lru_cache
def get_payment_gateway() -> MomoGateway:
    # One client (and its connection pool) per process
    return MomoGateway(GatewayConfig.from_settings(settings))


def get_pricing() -> PricingConfig:
    return PricingConfig.from_settings(settings)


def get_checkout(
    db: Session = Depends(get_db),
    pricing: PricingConfig = Depends(get_pricing),
) -> CheckoutStateMachine:
    return CheckoutStateMachine(db, pricing)


def get_payment_service(
    db: Session = Depends(get_db),
    gateway: MomoGateway = Depends(get_payment_gateway),
) -> PaymentService:
    return PaymentService(db, gateway)


def get_reconciler(
    db: Session = Depends(get_db),
    gateway: MomoGateway = Depends(get_payment_gateway),
) -> PaymentReconciler:
    return PaymentReconciler(db, gateway)
