from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from storefront.api.deps import CART_SESSION_HEADER, get_cart_session_key, get_current_user, get_current_user_optional
from storefront.core.exceptions import ValidationError
from storefront.core.rate_limiter import limiter
from storefront.db.session import get_db
from storefront.models.cart import Cart
from storefront.models.user import User
from storefront.schemas.cart import CartItemCreate, CartItemUpdate, CartResponse
from storefront.services.cart_service import CartAggregator
from storefront.utils.response import success

router = APIRouter()


def resolve_cart(
    db: Session,
    current_user: Optional[User],
    session_key: Optional[str],
    create: bool,
) -> Optional[Cart]:
    """The signed-in user's cart, else the anonymous session's cart."""
    if current_user is not None:
        return CartAggregator.get_for_user(db, current_user.id, create=create)
    if session_key:
        return CartAggregator.get_for_session(db, session_key, create=create)
    if create:
        raise ValidationError(f"Sign in or send an {CART_SESSION_HEADER} header to use a cart")
    return None


def cart_payload(cart: Optional[Cart]) -> dict:
    if cart is None:
        return {"id": None, "items": [], "total_quantity": 0, "total_amount": 0}
    return CartResponse.model_validate(cart).model_dump()


@router.get("/")
def get_cart(
    current_user: Optional[User] = Depends(get_current_user_optional),
    session_key: Optional[str] = Depends(get_cart_session_key),
    db: Session = Depends(get_db),
):
    """Get the current cart with computed totals"""
    cart = resolve_cart(db, current_user, session_key, create=False)
    return success(data=cart_payload(cart))


@router.post("/items", status_code=status.HTTP_201_CREATED)
@limiter.limit("60/minute")
def add_to_cart(
    request: Request,
    cart_item: CartItemCreate,
    current_user: Optional[User] = Depends(get_current_user_optional),
    session_key: Optional[str] = Depends(get_cart_session_key),
    db: Session = Depends(get_db),
):
    """Add a variant to the cart; re-adding the same variant increases its quantity"""
    cart = resolve_cart(db, current_user, session_key, create=True)
    cart = CartAggregator.add_item(db, cart, cart_item.variant_id, cart_item.quantity)
    return success(data=cart_payload(cart), message="Item added to cart")


@router.put("/items/{item_id}")
def update_cart_item(
    item_id: int,
    update_data: CartItemUpdate,
    current_user: Optional[User] = Depends(get_current_user_optional),
    session_key: Optional[str] = Depends(get_cart_session_key),
    db: Session = Depends(get_db),
):
    """Set a line's quantity; 0 removes it"""
    cart = resolve_cart(db, current_user, session_key, create=True)
    cart = CartAggregator.set_quantity(db, cart, item_id, update_data.quantity)
    return success(data=cart_payload(cart), message="Cart updated")


@router.delete("/items/{item_id}")
def remove_from_cart(
    item_id: int,
    current_user: Optional[User] = Depends(get_current_user_optional),
    session_key: Optional[str] = Depends(get_cart_session_key),
    db: Session = Depends(get_db),
):
    cart = resolve_cart(db, current_user, session_key, create=True)
    cart = CartAggregator.remove_item(db, cart, item_id)
    return success(data=cart_payload(cart), message="Item removed from cart")


@router.delete("/")
def clear_cart(
    current_user: Optional[User] = Depends(get_current_user_optional),
    session_key: Optional[str] = Depends(get_cart_session_key),
    db: Session = Depends(get_db),
):
    cart = resolve_cart(db, current_user, session_key, create=False)
    if cart is not None:
        CartAggregator.clear(db, cart)
    return success(data=cart_payload(cart), message="Cart cleared")


@router.post("/merge")
def merge_cart(
    current_user: User = Depends(get_current_user),
    session_key: Optional[str] = Depends(get_cart_session_key),
    db: Session = Depends(get_db),
):
    """Fold the anonymous session cart into the signed-in user's cart (called after login)"""
    target = CartAggregator.get_for_user(db, current_user.id)
    guest_cart = CartAggregator.get_for_session(db, session_key, create=False) if session_key else None
    target = CartAggregator.merge_into(db, guest_cart, target)
    return success(data=cart_payload(target), message="Cart merged")
