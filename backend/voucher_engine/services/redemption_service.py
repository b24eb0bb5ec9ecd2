"""
Redemption coordinator: applies a validated voucher to an order.

Quotas hold under concurrent redemptions without locks:
- the global quota is taken with one conditional increment on the voucher
  (matches only while used_count < usage_limit);
- the per-user quota is a slot number on each usage row, kept unique per
  (voucher, user) by an index. Losing a slot race means recounting; when the
  user is out of slots the global increment is given back.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from voucher_engine.models.voucher import VoucherRedemptionCost, VoucherUsage
from voucher_engine.services.voucher_rules import (
    VoucherErrorCode,
    calculate_discount,
    check_availability,
    check_scope,
    user_quota_failure,
)
from voucher_engine.utils.helpers import format_document, get_current_timestamp

logger = logging.getLogger(__name__)


def redemption_failure(error_code: str, message: str) -> Dict[str, Any]:
    return {
        "success": False,
        "error_code": error_code,
        "message": message
    }


class RedemptionService:
    """Service for committing voucher usage."""

    @staticmethod
    async def _claim_global_slot(voucher: dict, db: AsyncIOMotorDatabase) -> Optional[dict]:
        query = {
            "voucher_id": voucher["voucher_id"],
            "is_active": True,
            "is_deleted": False
        }
        if voucher.get("usage_limit") is not None:
            query["used_count"] = {"$lt": voucher["usage_limit"]}

        return await db.vouchers.find_one_and_update(
            query,
            {
                "$inc": {"used_count": 1},
                "$set": {"updated_at": get_current_timestamp()}
            },
            return_document=ReturnDocument.AFTER
        )

    @staticmethod
    async def _release_global_slot(voucher_id: str, db: AsyncIOMotorDatabase):
        await db.vouchers.update_one(
            {"voucher_id": voucher_id, "used_count": {"$gt": 0}},
            {
                "$inc": {"used_count": -1},
                "$set": {"updated_at": get_current_timestamp()}
            }
        )

    @staticmethod
    async def _record_redemption_cost(
        voucher: dict,
        order_id: str,
        seller_organization_id: str,
        amount_covered: float,
        db: AsyncIOMotorDatabase
    ):
        """The platform covers refund vouchers spent at a seller; keep a row per order."""
        cost = VoucherRedemptionCost(
            voucher_id=voucher["voucher_id"],
            order_id=order_id,
            seller_organization_id=seller_organization_id,
            amount_covered=amount_covered,
            voucher_snapshot={
                "code": voucher["code"],
                "discount_type": voucher["discount_type"],
                "discount_value": voucher["discount_value"],
                "source_order_id": voucher.get("source_order_id"),
                "source_refund_request_id": voucher.get("source_refund_request_id")
            }
        )
        await db.voucher_redemption_costs.insert_one(cost.model_dump(by_alias=True, exclude={"id"}))
        logger.info(
            f"Recorded redemption cost {amount_covered} for voucher {voucher['code']} "
            f"on order {order_id} (seller {seller_organization_id})"
        )

    @staticmethod
    async def _existing_usage(voucher_id: str, order_id: str, db: AsyncIOMotorDatabase) -> Optional[dict]:
        return await db.voucher_usages.find_one({"voucher_id": voucher_id, "order_id": order_id})

    @staticmethod
    async def redeem_voucher(
        voucher_id: str,
        user_id: str,
        order_id: str,
        order_amount: float,
        db: AsyncIOMotorDatabase,
        organization_id: Optional[str] = None,
        product_ids: Optional[List[str]] = None,
        category_ids: Optional[List[str]] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Record one use of a voucher for an order.

        Availability and scope (assignment, organization, minimum order,
        products, categories) are checked again at commit time. Redeeming the
        same voucher for the same order again returns the original usage with
        already_redeemed set and leaves counters alone. A refund voucher spent
        at a seller organization also gets a redemption cost row.

        Returns:
            {"success": True, "usage": {...}, "already_redeemed": bool} or
            {"success": False, "error_code": ..., "message": ...}

        Raises:
            HTTPException: 404 if the voucher does not exist
        """
        if order_amount < 0:
            raise ValueError("order_amount must not be negative")

        now = now or get_current_timestamp()
        voucher = await db.vouchers.find_one({"voucher_id": voucher_id, "is_deleted": False})
        if not voucher:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Voucher not found"
            )

        existing = await RedemptionService._existing_usage(voucher_id, order_id, db)
        if existing:
            return {
                "success": True,
                "usage": format_document(existing),
                "already_redeemed": True
            }

        failure = check_availability(voucher, now)
        if failure:
            return redemption_failure(failure["error_code"], failure["message"])

        failure = check_scope(voucher, user_id, organization_id, order_amount, product_ids, category_ids)
        if failure:
            return redemption_failure(failure["error_code"], failure["message"])

        per_user_limit = voucher.get("usage_limit_per_user")
        if per_user_limit:
            taken = await db.voucher_usages.count_documents({"voucher_id": voucher_id, "user_id": user_id})
            if taken >= per_user_limit:
                failure = user_quota_failure(per_user_limit)
                return redemption_failure(failure["error_code"], failure["message"])

        claimed = await RedemptionService._claim_global_slot(voucher, db)
        if not claimed:
            current = await db.vouchers.find_one({"voucher_id": voucher_id})
            if not current or not current.get("is_active") or current.get("is_deleted"):
                return redemption_failure(
                    VoucherErrorCode.INACTIVE.value,
                    "This voucher is no longer active"
                )
            return redemption_failure(
                VoucherErrorCode.USAGE_LIMIT_REACHED.value,
                "This voucher has reached its usage limit"
            )

        discount_amount = calculate_discount(voucher, order_amount)

        while True:
            user_slot = None
            if per_user_limit:
                taken = await db.voucher_usages.count_documents({"voucher_id": voucher_id, "user_id": user_id})
                if taken >= per_user_limit:
                    await RedemptionService._release_global_slot(voucher_id, db)
                    logger.warning(
                        f"User {user_id} lost a concurrent redemption of voucher {voucher_id}; "
                        f"released global slot"
                    )
                    failure = user_quota_failure(per_user_limit)
                    return redemption_failure(failure["error_code"], failure["message"])
                user_slot = taken + 1

            usage = VoucherUsage(
                voucher_id=voucher_id,
                user_id=user_id,
                order_id=order_id,
                organization_id=organization_id,
                order_amount=order_amount,
                discount_amount=discount_amount,
                user_slot=user_slot,
                voucher_snapshot={
                    "code": voucher["code"],
                    "discount_type": voucher["discount_type"],
                    "discount_value": voucher["discount_value"]
                }
            )
            usage_dict = usage.model_dump(by_alias=True, exclude={"id"})
            if user_slot is None:
                # Rows without a slot stay outside the per-user unique index
                del usage_dict["user_slot"]

            try:
                await db.voucher_usages.insert_one(usage_dict)
            except DuplicateKeyError:
                existing = await RedemptionService._existing_usage(voucher_id, order_id, db)
                if existing:
                    # Same order redeemed concurrently; keep the first usage
                    await RedemptionService._release_global_slot(voucher_id, db)
                    logger.warning(f"Order {order_id} redeemed voucher {voucher_id} concurrently; released global slot")
                    return {
                        "success": True,
                        "usage": format_document(existing),
                        "already_redeemed": True
                    }
                continue
            except PyMongoError:
                await RedemptionService._release_global_slot(voucher_id, db)
                logger.warning(f"Usage insert failed for voucher {voucher_id}, order {order_id}; released global slot")
                raise
            break

        if voucher.get("cancellation_initiator") and organization_id:
            await RedemptionService._record_redemption_cost(voucher, order_id, organization_id, discount_amount, db)

        logger.info(
            f"Voucher {voucher['code']} redeemed by user {user_id} on order {order_id} "
            f"(discount {discount_amount}, used {claimed['used_count']}/{voucher.get('usage_limit')})"
        )

        return {
            "success": True,
            "usage": format_document(usage_dict),
            "already_redeemed": False
        }
