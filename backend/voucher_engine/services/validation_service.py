import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from voucher_engine.services.voucher_rules import (
    calculate_discount,
    check_availability,
    check_scope,
    check_user_quota,
    voucher_summary,
)
from voucher_engine.utils.helpers import get_current_timestamp, normalize_code

logger = logging.getLogger(__name__)


class ValidationService:
    """Read-only eligibility check and discount quote for checkout."""

    @staticmethod
    async def count_user_usages(
        voucher_id: str,
        user_id: str,
        db: AsyncIOMotorDatabase
    ) -> int:
        return await db.voucher_usages.count_documents({
            "voucher_id": voucher_id,
            "user_id": user_id
        })

    @staticmethod
    async def validate_voucher(
        code: str,
        order_amount: float,
        db: AsyncIOMotorDatabase,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        product_ids: Optional[List[str]] = None,
        category_ids: Optional[List[str]] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Check whether a voucher code may be applied to an order.

        Checks run in a fixed order and stop at the first failure:
        existence, active flag, start date, expiry, global quota, the user's
        own quota, personal assignment, organization, minimum order, then
        product and category scope.

        Nothing is written. Rejections are returned as
        {"valid": False, "error_code": ..., "message": ...}; a pass carries the
        voucher summary and the discount amount.
        """
        if order_amount < 0:
            raise ValueError("order_amount must not be negative")
        if not code or not code.strip():
            raise ValueError("Voucher code is required")

        now = now or get_current_timestamp()
        voucher = await db.vouchers.find_one({
            "code": normalize_code(code),
            "is_deleted": False
        })

        failure = check_availability(voucher, now)
        if failure:
            return failure

        user_usage_count = None
        if user_id and voucher.get("usage_limit_per_user"):
            user_usage_count = await ValidationService.count_user_usages(
                voucher["voucher_id"], user_id, db
            )

        failure = check_user_quota(voucher, user_usage_count) or check_scope(
            voucher,
            user_id=user_id,
            organization_id=organization_id,
            order_amount=order_amount,
            product_ids=product_ids,
            category_ids=category_ids
        )
        if failure:
            return failure

        discount_amount = calculate_discount(voucher, order_amount)
        logger.debug(f"Voucher {voucher['code']} valid for order amount {order_amount}: discount {discount_amount}")

        return {
            "valid": True,
            "voucher": voucher_summary(voucher),
            "discount_amount": discount_amount
        }
