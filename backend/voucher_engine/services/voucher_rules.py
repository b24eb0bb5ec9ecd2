"""
Pure voucher rules: eligibility checks, discount calculation and computed
statuses.

Nothing in this module touches the database. The checks are split into the
groups the validation service runs around its one lookup (the user's prior
usage count), and each group returns either None (pass) or a failure dict of
the shape {"valid": False, "error_code": ..., "message": ...}.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from voucher_engine.models.voucher import (
    CustomerVoucherStatus,
    DiscountType,
    VoucherStatus,
)
from voucher_engine.utils.helpers import format_currency, format_date, round_money


class VoucherErrorCode(str, Enum):
    """Business-rule rejections of validation and redemption."""
    NOT_FOUND = "NOT_FOUND"
    INACTIVE = "INACTIVE"
    NOT_STARTED = "NOT_STARTED"
    EXPIRED = "EXPIRED"
    USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"
    USER_USAGE_LIMIT_REACHED = "USER_USAGE_LIMIT_REACHED"
    LOGIN_REQUIRED = "LOGIN_REQUIRED"
    VOUCHER_NOT_ASSIGNED = "VOUCHER_NOT_ASSIGNED"
    ORGANIZATION_MISMATCH = "ORGANIZATION_MISMATCH"
    MIN_ORDER_NOT_MET = "MIN_ORDER_NOT_MET"
    PRODUCTS_NOT_APPLICABLE = "PRODUCTS_NOT_APPLICABLE"


def validation_failure(error_code: VoucherErrorCode, message: str) -> Dict[str, Any]:
    return {
        "valid": False,
        "error_code": error_code.value,
        "message": message
    }


def check_availability(voucher: Optional[dict], now: datetime) -> Optional[Dict[str, Any]]:
    """Existence, active flag, validity window and global quota."""
    if not voucher or voucher.get("is_deleted"):
        return validation_failure(VoucherErrorCode.NOT_FOUND, "Voucher code not found")

    if not voucher.get("is_active"):
        return validation_failure(VoucherErrorCode.INACTIVE, "This voucher is no longer active")

    if now < voucher["valid_from"]:
        return validation_failure(
            VoucherErrorCode.NOT_STARTED,
            f"This voucher is not valid yet. It starts on {format_date(voucher['valid_from'])}"
        )

    valid_until = voucher.get("valid_until")
    if valid_until is not None and now > valid_until:
        return validation_failure(VoucherErrorCode.EXPIRED, "This voucher has expired")

    usage_limit = voucher.get("usage_limit")
    if usage_limit is not None and voucher.get("used_count", 0) >= usage_limit:
        return validation_failure(
            VoucherErrorCode.USAGE_LIMIT_REACHED,
            "This voucher has reached its usage limit"
        )

    return None


def user_quota_failure(limit: int) -> Dict[str, Any]:
    times = "" if limit == 1 else f" {limit} times"
    return validation_failure(
        VoucherErrorCode.USER_USAGE_LIMIT_REACHED,
        f"You've already used this voucher{times}"
    )


def check_user_quota(voucher: dict, user_usage_count: Optional[int]) -> Optional[Dict[str, Any]]:
    """user_usage_count is None when no user was supplied."""
    limit = voucher.get("usage_limit_per_user")
    if user_usage_count is None or not limit:
        return None
    if user_usage_count >= limit:
        return user_quota_failure(limit)
    return None


def check_scope(
    voucher: dict,
    user_id: Optional[str],
    organization_id: Optional[str],
    order_amount: float,
    product_ids: Optional[List[str]],
    category_ids: Optional[List[str]]
) -> Optional[Dict[str, Any]]:
    """Personal assignment, organization, minimum order, product and category scope."""
    assigned_to = voucher.get("assigned_to_user_id")
    if assigned_to:
        if not user_id:
            return validation_failure(
                VoucherErrorCode.LOGIN_REQUIRED,
                "You must be logged in to use this voucher"
            )
        if user_id != assigned_to:
            return validation_failure(
                VoucherErrorCode.VOUCHER_NOT_ASSIGNED,
                "This voucher is not assigned to you"
            )

    voucher_org = voucher.get("organization_id")
    if voucher_org and organization_id != voucher_org:
        return validation_failure(
            VoucherErrorCode.ORGANIZATION_MISMATCH,
            "This voucher is only valid for a specific store. "
            "To use this voucher, please checkout from the same store only."
        )

    min_order = voucher.get("min_order_amount")
    if min_order is not None and order_amount < min_order:
        return validation_failure(
            VoucherErrorCode.MIN_ORDER_NOT_MET,
            f"Minimum order of {format_currency(min_order)} required to use this voucher"
        )

    applicable_products = voucher.get("applicable_product_ids") or []
    if applicable_products:
        if not product_ids:
            return validation_failure(
                VoucherErrorCode.PRODUCTS_NOT_APPLICABLE,
                "This voucher is only valid for specific products"
            )
        if not set(product_ids) & set(applicable_products):
            return validation_failure(
                VoucherErrorCode.PRODUCTS_NOT_APPLICABLE,
                "This voucher is only valid for specific products not in your order"
            )

    applicable_categories = voucher.get("applicable_category_ids") or []
    if applicable_categories:
        if not category_ids:
            return validation_failure(
                VoucherErrorCode.PRODUCTS_NOT_APPLICABLE,
                "This voucher is only valid for specific categories"
            )
        if not set(category_ids) & set(applicable_categories):
            return validation_failure(
                VoucherErrorCode.PRODUCTS_NOT_APPLICABLE,
                "This voucher is only valid for specific categories not in your order"
            )

    return None


def _percentage_discount(voucher: dict, order_amount: float) -> float:
    discount = order_amount * voucher["discount_value"] / 100
    cap = voucher.get("max_discount_amount")
    if cap is not None and discount > cap:
        discount = cap
    return discount


def _fixed_amount_discount(voucher: dict, order_amount: float) -> float:
    return min(voucher["discount_value"], order_amount)


def _free_item_discount(voucher: dict, order_amount: float) -> float:
    # discount_value carries the free item's price
    return voucher["discount_value"]


def _free_shipping_discount(voucher: dict, order_amount: float) -> float:
    # Waiving the shipping fee is up to the caller
    return 0.0


DISCOUNT_CALCULATORS: Dict[DiscountType, Callable[[dict, float], float]] = {
    DiscountType.PERCENTAGE: _percentage_discount,
    DiscountType.FIXED_AMOUNT: _fixed_amount_discount,
    DiscountType.FREE_ITEM: _free_item_discount,
    DiscountType.FREE_SHIPPING: _free_shipping_discount,
}


def calculate_discount(voucher: dict, order_amount: float) -> float:
    """Discount for an order that passed every check, rounded to 2 decimals."""
    calculator = DISCOUNT_CALCULATORS[DiscountType(voucher["discount_type"])]
    return round_money(calculator(voucher, order_amount))


def voucher_summary(voucher: dict) -> Dict[str, Any]:
    """The voucher fields a checkout needs to render an applied discount."""
    return {
        "voucher_id": voucher["voucher_id"],
        "code": voucher["code"],
        "name": voucher.get("name"),
        "description": voucher.get("description"),
        "discount_type": voucher["discount_type"],
        "discount_value": voucher["discount_value"],
        "min_order_amount": voucher.get("min_order_amount"),
        "max_discount_amount": voucher.get("max_discount_amount"),
    }


def compute_status(voucher: dict, now: datetime) -> VoucherStatus:
    """Admin-facing status: inactive > expired > exhausted > scheduled > active."""
    if not voucher.get("is_active"):
        return VoucherStatus.INACTIVE
    valid_until = voucher.get("valid_until")
    if valid_until is not None and now > valid_until:
        return VoucherStatus.EXPIRED
    usage_limit = voucher.get("usage_limit")
    if usage_limit is not None and voucher.get("used_count", 0) >= usage_limit:
        return VoucherStatus.EXHAUSTED
    if now < voucher["valid_from"]:
        return VoucherStatus.SCHEDULED
    return VoucherStatus.ACTIVE


def compute_customer_status(voucher: dict, now: datetime) -> CustomerVoucherStatus:
    """
    Customer-facing status. A deactivated personal voucher has been exchanged
    for cash, so it reads as refunded; a consumed one reads as used.
    """
    if not voucher.get("is_active"):
        return CustomerVoucherStatus.REFUNDED
    if voucher.get("used_count", 0) > 0:
        return CustomerVoucherStatus.USED
    valid_until = voucher.get("valid_until")
    if valid_until is not None and now > valid_until:
        return CustomerVoucherStatus.EXPIRED
    if now < voucher["valid_from"]:
        return CustomerVoucherStatus.INACTIVE
    return CustomerVoucherStatus.ACTIVE
