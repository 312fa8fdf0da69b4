from datetime import datetime
from typing import Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from storefront.core.exceptions import ValidationError
from storefront.models.discount import Discount

logger = structlog.get_logger()


class DiscountService:

    @staticmethod
    def compute_amount(discount: Discount, subtotal: int) -> int:
        """Discount in VND for ``subtotal``; never larger than the subtotal."""
        if discount.discount_percentage:
            amount = subtotal * discount.discount_percentage // 100
            if discount.max_discount_amount is not None:
                amount = min(amount, discount.max_discount_amount)
        else:
            amount = discount.discount_amount or 0
        return max(0, min(amount, subtotal))

    @staticmethod
    def validate(
        db: Session,
        code: str,
        subtotal: int,
        now: Optional[datetime] = None,
    ) -> Tuple[Discount, int]:
        """Check that ``code`` can be applied to an order of ``subtotal``.

        Returns the discount row and the amount it takes off. Raises
        ``ValidationError`` with a user-facing reason otherwise.
        """
        now = now or datetime.utcnow()
        discount = db.query(Discount).filter(Discount.code == code.strip().upper()).first()

        if not discount or not discount.is_active:
            raise ValidationError("Invalid or inactive discount code", discount_code=code)
        if discount.start_date and discount.start_date > now:
            raise ValidationError("Discount code is not active yet", discount_code=code)
        if discount.end_date and discount.end_date < now:
            raise ValidationError("Discount code has expired", discount_code=code)
        if subtotal < (discount.min_order_value or 0):
            raise ValidationError(
                f"Minimum order value of {discount.min_order_value:,} VND required",
                discount_code=code,
            )
        if discount.remaining_uses is not None and discount.remaining_uses <= 0:
            raise ValidationError("Discount code usage limit reached", discount_code=code)

        return discount, DiscountService.compute_amount(discount, subtotal)

    @staticmethod
    def consume(db: Session, discount: Discount) -> None:
        """Take one use off ``discount`` inside the caller's transaction.

        Guarded on ``remaining_uses > 0`` so two checkouts racing for the last
        use cannot both succeed. Does not commit.
        """
        if discount.remaining_uses is None:
            return

        updated = (
            db.query(Discount)
            .filter(Discount.id == discount.id, Discount.remaining_uses > 0)
            .update({Discount.remaining_uses: Discount.remaining_uses - 1}, synchronize_session=False)
        )
        if updated != 1:
            logger.info("discount_exhausted", discount_code=discount.code)
            raise ValidationError("Discount code usage limit reached", discount_code=discount.code)
