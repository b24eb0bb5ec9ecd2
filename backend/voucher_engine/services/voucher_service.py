"""
Voucher store: creation, lookup, listing and admin state toggles.

Soft-deleted vouchers are invisible to every read here. Statuses shown to
callers are derived on read (see voucher_rules) and never written back.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from voucher_engine.core.config import settings
from voucher_engine.models.voucher import DiscountType, Voucher
from voucher_engine.schemas.voucher import VoucherCreate, VoucherUpdate
from voucher_engine.services.monetary_refund_service import evaluate_monetary_refund_eligibility
from voucher_engine.services.voucher_rules import compute_customer_status, compute_status
from voucher_engine.utils.helpers import (
    days_until,
    format_document,
    generate_voucher_code,
    get_current_timestamp,
    is_valid_code,
    normalize_code,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("code", "name", "discount_type", "discount_value", "valid_from")


class VoucherService:
    """Service for voucher store operations."""

    @staticmethod
    def validate_discount_settings(
        discount_type: str,
        discount_value: float,
        valid_from: datetime,
        valid_until: Optional[datetime]
    ):
        """Reject inconsistent discount or window settings with a 400."""
        discount_type = DiscountType(discount_type)
        if discount_type == DiscountType.PERCENTAGE:
            if discount_value <= 0 or discount_value > 100:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Percentage discount must be between 1 and 100"
                )
        elif discount_type == DiscountType.FIXED_AMOUNT:
            if discount_value <= 0:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Fixed discount amount must be greater than 0"
                )
        elif discount_type == DiscountType.FREE_ITEM:
            if discount_value <= 0:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Free item voucher requires the item price as discount value"
                )

        if valid_until is not None and valid_until <= valid_from:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Validity end date must be after start date"
            )

    @staticmethod
    async def _code_in_use(code: str, db: AsyncIOMotorDatabase) -> bool:
        # Deleted vouchers keep their code reserved; the unique index covers them too
        return await db.vouchers.find_one({"code": code}) is not None

    @staticmethod
    async def create_voucher(
        data: VoucherCreate,
        db: AsyncIOMotorDatabase
    ) -> dict:
        """
        Create an admin-authored voucher.

        A manual code is normalized and must be 3-30 characters of letters,
        digits, hyphens and underscores. Without one, a PREFIX-XXXXXX code is
        generated. Duplicate codes are rejected with a 409.
        """
        VoucherService.validate_discount_settings(
            data.discount_type, data.discount_value, data.valid_from, data.valid_until
        )

        if data.code:
            code = normalize_code(data.code)
            if not is_valid_code(code):
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Voucher code must be 3-30 characters: letters, numbers, hyphens and underscores"
                )
            if await VoucherService._code_in_use(code, db):
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail=f'Voucher code "{code}" is already in use'
                )
        else:
            code = generate_voucher_code(data.code_prefix)
            attempts = 1
            while await VoucherService._code_in_use(code, db):
                if attempts >= settings.REFUND_CODE_MAX_ATTEMPTS:
                    raise HTTPException(
                        status_code=status.HTTP_409_CONFLICT,
                        detail="Failed to generate a unique voucher code"
                    )
                code = generate_voucher_code(data.code_prefix)
                attempts += 1

        voucher = Voucher(
            code=code,
            **data.model_dump(exclude={"code", "code_prefix"})
        )
        voucher_dict = voucher.model_dump(by_alias=True, exclude={"id"})

        try:
            await db.vouchers.insert_one(voucher_dict)
        except DuplicateKeyError:
            # Lost a race against a concurrent create with the same code
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f'Voucher code "{code}" is already in use'
            )

        logger.info(f"Created voucher {voucher.voucher_id} with code {code}")
        return format_document(voucher_dict)

    @staticmethod
    async def get_voucher(voucher_id: str, db: AsyncIOMotorDatabase) -> Optional[dict]:
        """Get a voucher by ID, or None if missing or soft-deleted."""
        voucher = await db.vouchers.find_one({"voucher_id": voucher_id, "is_deleted": False})
        return format_document(voucher)

    @staticmethod
    async def get_voucher_by_code(code: str, db: AsyncIOMotorDatabase) -> Optional[dict]:
        """Get a voucher by code in any casing or surrounding whitespace."""
        voucher = await db.vouchers.find_one({"code": normalize_code(code), "is_deleted": False})
        return format_document(voucher)

    @staticmethod
    def with_computed_status(voucher: dict, now: datetime) -> dict:
        usage_limit = voucher.get("usage_limit")
        valid_until = voucher.get("valid_until")
        voucher["computed_status"] = compute_status(voucher, now).value
        voucher["is_expired"] = valid_until is not None and now > valid_until
        voucher["is_usage_limit_reached"] = (
            usage_limit is not None and voucher.get("used_count", 0) >= usage_limit
        )
        voucher["remaining_uses"] = (
            max(usage_limit - voucher.get("used_count", 0), 0) if usage_limit is not None else None
        )
        return voucher

    @staticmethod
    async def list_vouchers(
        db: AsyncIOMotorDatabase,
        organization_id: Optional[str] = None,
        is_active: Optional[bool] = None,
        discount_type: Optional[str] = None,
        search: Optional[str] = None,
        include_expired: bool = False,
        page: int = 1,
        page_size: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        List vouchers newest first, each with its computed status.

        Expired vouchers are left out unless include_expired is set. search
        matches code or name, case-insensitively.
        """
        now = now or get_current_timestamp()
        page = max(page, 1)
        page_size = min(page_size or settings.DEFAULT_PAGE_SIZE, settings.MAX_PAGE_SIZE)

        conditions = [{"is_deleted": False}]
        if organization_id is not None:
            conditions.append({"organization_id": organization_id})
        if is_active is not None:
            conditions.append({"is_active": is_active})
        if discount_type:
            conditions.append({"discount_type": DiscountType(discount_type).value})
        if not include_expired:
            conditions.append({"$or": [
                {"valid_until": None},
                {"valid_until": {"$gte": now}}
            ]})
        if search:
            pattern = re.escape(search.strip())
            conditions.append({"$or": [
                {"code": {"$regex": pattern, "$options": "i"}},
                {"name": {"$regex": pattern, "$options": "i"}}
            ]})

        query = {"$and": conditions}
        offset = (page - 1) * page_size

        total = await db.vouchers.count_documents(query)
        vouchers = await db.vouchers.find(query).sort("created_at", -1).skip(offset).limit(page_size).to_list(length=page_size)

        items = [
            VoucherService.with_computed_status(format_document(voucher), now)
            for voucher in vouchers
        ]
        page_count = (total + page_size - 1) // page_size if total else 0

        return {
            "vouchers": items,
            "total": total,
            "page": page,
            "page_size": page_size,
            "page_count": page_count,
            "has_more": offset + page_size < total
        }

    @staticmethod
    async def update_voucher(
        voucher_id: str,
        updates: VoucherUpdate,
        db: AsyncIOMotorDatabase
    ) -> dict:
        """Apply a partial update. Counters and refund metadata are not editable here."""
        voucher = await db.vouchers.find_one({"voucher_id": voucher_id, "is_deleted": False})
        if not voucher:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Voucher not found"
            )

        changes = updates.model_dump(exclude_unset=True, mode="python")
        # Required fields cannot be cleared
        for field in REQUIRED_FIELDS:
            if field in changes and changes[field] is None:
                del changes[field]
        if "discount_type" in changes:
            changes["discount_type"] = DiscountType(changes["discount_type"]).value

        if changes.get("code") is not None:
            code = normalize_code(changes["code"])
            if not is_valid_code(code):
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Voucher code must be 3-30 characters: letters, numbers, hyphens and underscores"
                )
            if code != voucher["code"] and await VoucherService._code_in_use(code, db):
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail=f'Voucher code "{code}" is already in use'
                )
            changes["code"] = code

        merged = {**voucher, **changes}
        VoucherService.validate_discount_settings(
            merged["discount_type"], merged["discount_value"], merged["valid_from"], merged.get("valid_until")
        )

        if merged.get("usage_limit") is not None and merged["usage_limit"] < voucher.get("used_count", 0):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Usage limit cannot be lower than the current usage count ({voucher['used_count']})"
            )

        changes["updated_at"] = get_current_timestamp()
        try:
            updated = await db.vouchers.find_one_and_update(
                {"voucher_id": voucher_id, "is_deleted": False},
                {"$set": changes},
                return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f'Voucher code "{changes.get("code")}" is already in use'
            )

        if not updated:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Voucher not found"
            )

        logger.info(f"Updated voucher {voucher_id}: {sorted(k for k in changes if k != 'updated_at')}")
        return format_document(updated)

    @staticmethod
    async def toggle_voucher_active(
        voucher_id: str,
        is_active: bool,
        db: AsyncIOMotorDatabase
    ) -> dict:
        """Switch a voucher on or off. Expiry and exhaustion are unaffected."""
        updated = await db.vouchers.find_one_and_update(
            {"voucher_id": voucher_id, "is_deleted": False},
            {"$set": {"is_active": is_active, "updated_at": get_current_timestamp()}},
            return_document=ReturnDocument.AFTER
        )
        if not updated:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Voucher not found"
            )

        logger.info(f"Voucher {voucher_id} {'activated' if is_active else 'deactivated'}")
        return format_document(updated)

    @staticmethod
    async def delete_voucher(voucher_id: str, db: AsyncIOMotorDatabase) -> dict:
        """Soft-delete a voucher."""
        updated = await db.vouchers.find_one_and_update(
            {"voucher_id": voucher_id, "is_deleted": False},
            {"$set": {"is_deleted": True, "is_active": False, "updated_at": get_current_timestamp()}},
            return_document=ReturnDocument.AFTER
        )
        if not updated:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Voucher not found"
            )

        logger.info(f"Soft-deleted voucher {voucher_id}")
        return {
            "message": "Voucher deleted",
            "voucher_id": voucher_id
        }

    @staticmethod
    async def list_user_vouchers(
        user_id: str,
        db: AsyncIOMotorDatabase,
        include_used: bool = False,
        now: Optional[datetime] = None
    ) -> list:
        """
        A customer's personal vouchers with customer-facing status and
        monetary refund eligibility.
        """
        now = now or get_current_timestamp()
        query = {"assigned_to_user_id": user_id, "is_deleted": False}
        if not include_used:
            query["used_count"] = 0

        vouchers = await db.vouchers.find(query).sort("created_at", -1).to_list(length=None)

        items = []
        for voucher in vouchers:
            voucher = format_document(voucher)
            eligible_at = voucher.get("monetary_refund_eligible_at")
            eligibility = evaluate_monetary_refund_eligibility(voucher, now)

            voucher["computed_status"] = compute_customer_status(voucher, now).value
            voucher["is_expired"] = voucher.get("valid_until") is not None and now > voucher["valid_until"]
            voucher["is_used"] = voucher.get("used_count", 0) > 0
            voucher["is_monetary_refund_eligible"] = eligibility is None
            voucher["days_until_monetary_refund_eligible"] = (
                days_until(eligible_at, now) if eligible_at and now < eligible_at else None
            )
            items.append(voucher)

        return items

    @staticmethod
    async def list_voucher_usages(
        voucher_id: str,
        db: AsyncIOMotorDatabase,
        page: int = 1,
        page_size: Optional[int] = None
    ) -> Dict[str, Any]:
        """Usage ledger rows for one voucher, newest first."""
        page = max(page, 1)
        page_size = min(page_size or settings.DEFAULT_PAGE_SIZE, settings.MAX_PAGE_SIZE)
        offset = (page - 1) * page_size
        query = {"voucher_id": voucher_id}

        total = await db.voucher_usages.count_documents(query)
        usages = await db.voucher_usages.find(query).sort("created_at", -1).skip(offset).limit(page_size).to_list(length=page_size)

        return {
            "usages": [format_document(usage) for usage in usages],
            "total": total,
            "page": page,
            "page_size": page_size
        }
