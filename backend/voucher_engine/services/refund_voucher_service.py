"""
Refund-to-voucher issuing and order-level refund requests.

A cancelled or refunded order is compensated with a single-use, platform-wide
FIXED_AMOUNT voucher assigned to the customer. Vouchers from a seller-initiated
cancellation become eligible for a monetary refund after a delay; those from a
customer-initiated one never do.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from voucher_engine.core.config import settings
from voucher_engine.models.refund import RefundReason, RefundRequest, RefundRequestStatus
from voucher_engine.models.voucher import CancellationInitiator, DiscountType, Voucher
from voucher_engine.utils.helpers import (
    format_currency,
    format_document,
    generate_voucher_code,
    get_current_timestamp,
)

logger = logging.getLogger(__name__)

ADMIN_MESSAGE_MIN_LENGTH = 10
ADMIN_MESSAGE_MAX_LENGTH = 1000
CUSTOMER_MESSAGE_MAX_LENGTH = 2000


class RefundRequestErrorCode(str, Enum):
    REQUEST_EXISTS = "REQUEST_EXISTS"
    REQUEST_NOT_PENDING = "REQUEST_NOT_PENDING"


def validate_admin_message(message: Optional[str]) -> str:
    """Trim an admin review message and enforce its length (400 otherwise)."""
    message = (message or "").strip()
    if not ADMIN_MESSAGE_MIN_LENGTH <= len(message) <= ADMIN_MESSAGE_MAX_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Admin message must be between {ADMIN_MESSAGE_MIN_LENGTH} and {ADMIN_MESSAGE_MAX_LENGTH} characters"
        )
    return message


def request_exists() -> Dict[str, Any]:
    return {
        "success": False,
        "error_code": RefundRequestErrorCode.REQUEST_EXISTS.value,
        "message": "A pending refund request already exists for this order"
    }


def request_not_pending(request: dict) -> Dict[str, Any]:
    return {
        "success": False,
        "error_code": RefundRequestErrorCode.REQUEST_NOT_PENDING.value,
        "message": f"Refund request is already {request['status'].lower()}"
    }


class RefundVoucherService:
    """Service for refund vouchers and order refund requests."""

    @staticmethod
    async def issue_refund_voucher(
        order_id: str,
        initiator: CancellationInitiator,
        amount: float,
        customer_id: str,
        db: AsyncIOMotorDatabase,
        created_by: Optional[str] = None,
        source_refund_request_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> dict:
        """
        Mint a REFUND-XXXXXX voucher worth `amount` for the customer.

        The code is regenerated on collision, up to REFUND_CODE_MAX_ATTEMPTS
        times. SELLER-initiated vouchers get monetary_refund_eligible_at set
        MONETARY_REFUND_DELAY_DAYS after issue.

        Raises:
            HTTPException: 400 for a non-positive amount, 409 when no unique
                code could be generated
        """
        if amount <= 0:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Refund amount must be greater than 0"
            )

        initiator = CancellationInitiator(initiator)
        now = now or get_current_timestamp()

        eligible_at = None
        if initiator == CancellationInitiator.SELLER:
            eligible_at = now + timedelta(days=settings.MONETARY_REFUND_DELAY_DAYS)

        for attempt in range(1, settings.REFUND_CODE_MAX_ATTEMPTS + 1):
            code = generate_voucher_code(settings.REFUND_CODE_PREFIX)
            if await db.vouchers.find_one({"code": code}):
                continue

            voucher = Voucher(
                code=code,
                name=f"Refund for order {order_id}",
                description=f"Refund voucher worth {format_currency(amount)}",
                discount_type=DiscountType.FIXED_AMOUNT,
                discount_value=amount,
                organization_id=None,
                assigned_to_user_id=customer_id,
                valid_from=now,
                valid_until=None,
                usage_limit=1,
                usage_limit_per_user=1,
                cancellation_initiator=initiator,
                source_order_id=order_id,
                source_refund_request_id=source_refund_request_id,
                monetary_refund_eligible_at=eligible_at,
                created_by=created_by,
                created_at=now,
                updated_at=now
            )
            voucher_dict = voucher.model_dump(by_alias=True, exclude={"id"})

            try:
                await db.vouchers.insert_one(voucher_dict)
            except DuplicateKeyError:
                logger.warning(f"Refund voucher code {code} collided on insert (attempt {attempt})")
                continue

            logger.info(
                f"Issued refund voucher {code} ({format_currency(amount)}) for order {order_id} "
                f"to user {customer_id}, initiator {initiator.value}"
            )
            return format_document(voucher_dict)

        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Failed to generate a unique refund voucher code"
        )

    @staticmethod
    async def create_refund_request(
        order_id: str,
        user_id: str,
        amount: float,
        reason: RefundReason,
        db: AsyncIOMotorDatabase,
        organization_id: Optional[str] = None,
        customer_message: Optional[str] = None
    ) -> Dict[str, Any]:
        """Open a refund request for an order. Only one may be pending per order."""
        if customer_message is not None:
            customer_message = customer_message.strip() or None
            if customer_message and len(customer_message) > CUSTOMER_MESSAGE_MAX_LENGTH:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Customer message must be at most {CUSTOMER_MESSAGE_MAX_LENGTH} characters"
                )

        pending = await db.refund_requests.find_one({
            "order_id": order_id,
            "status": RefundRequestStatus.PENDING.value
        })
        if pending:
            return request_exists()

        refund_request = RefundRequest(
            order_id=order_id,
            user_id=user_id,
            organization_id=organization_id,
            refund_amount=amount,
            reason=reason,
            customer_message=customer_message
        )
        request_dict = refund_request.model_dump(by_alias=True, exclude={"id"})
        try:
            await db.refund_requests.insert_one(request_dict)
        except DuplicateKeyError:
            # Another request for the order became pending first
            logger.warning(f"Concurrent refund request for order {order_id} rejected")
            return request_exists()

        logger.info(f"Refund request {refund_request.request_id} created for order {order_id}")
        return {
            "success": True,
            "request": format_document(request_dict)
        }

    @staticmethod
    async def _resolve_pending(
        request_id: str,
        new_status: RefundRequestStatus,
        admin_id: str,
        admin_message: str,
        db: AsyncIOMotorDatabase
    ) -> Dict[str, Any]:
        request = await db.refund_requests.find_one({"request_id": request_id})
        if not request:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Refund request not found"
            )
        if request["status"] != RefundRequestStatus.PENDING.value:
            return request_not_pending(request)

        now = get_current_timestamp()
        updated = await db.refund_requests.find_one_and_update(
            {"request_id": request_id, "status": RefundRequestStatus.PENDING.value},
            {"$set": {
                "status": new_status.value,
                "admin_message": admin_message,
                "reviewed_by": admin_id,
                "reviewed_at": now,
                "updated_at": now
            }},
            return_document=ReturnDocument.AFTER
        )
        if not updated:
            # Resolved concurrently by another reviewer
            current = await db.refund_requests.find_one({"request_id": request_id})
            return request_not_pending(current)

        return {"success": True, "request": updated}

    @staticmethod
    async def _reopen_request(request_id: str, db: AsyncIOMotorDatabase):
        """Put an approval that never got its voucher back to PENDING."""
        await db.refund_requests.update_one(
            {
                "request_id": request_id,
                "status": RefundRequestStatus.APPROVED.value,
                "voucher_id": None
            },
            {
                "$set": {
                    "status": RefundRequestStatus.PENDING.value,
                    "admin_message": None,
                    "reviewed_by": None,
                    "reviewed_at": None,
                    "updated_at": get_current_timestamp()
                }
            }
        )

    @staticmethod
    async def approve_refund_request(
        request_id: str,
        admin_id: str,
        admin_message: str,
        db: AsyncIOMotorDatabase
    ) -> Dict[str, Any]:
        """Approve a pending order refund and compensate with a CUSTOMER refund voucher."""
        admin_message = validate_admin_message(admin_message)

        result = await RefundVoucherService._resolve_pending(
            request_id, RefundRequestStatus.APPROVED, admin_id, admin_message, db
        )
        if not result["success"]:
            return result

        request = result["request"]
        try:
            voucher = await RefundVoucherService.issue_refund_voucher(
                order_id=request["order_id"],
                initiator=CancellationInitiator.CUSTOMER,
                amount=request["refund_amount"],
                customer_id=request["user_id"],
                db=db,
                created_by=admin_id,
                source_refund_request_id=request_id
            )
        except (HTTPException, PyMongoError):
            await RefundVoucherService._reopen_request(request_id, db)
            logger.warning(f"Refund voucher for request {request_id} could not be issued; request reopened")
            raise

        updated = await db.refund_requests.find_one_and_update(
            {"request_id": request_id},
            {"$set": {"voucher_id": voucher["voucher_id"], "updated_at": get_current_timestamp()}},
            return_document=ReturnDocument.AFTER
        )

        logger.info(f"Refund request {request_id} approved by {admin_id}; voucher {voucher['code']} issued")
        return {
            "success": True,
            "request": format_document(updated),
            "voucher": voucher
        }

    @staticmethod
    async def reject_refund_request(
        request_id: str,
        admin_id: str,
        admin_message: str,
        db: AsyncIOMotorDatabase
    ) -> Dict[str, Any]:
        """Reject a pending order refund. No voucher is issued."""
        admin_message = validate_admin_message(admin_message)

        result = await RefundVoucherService._resolve_pending(
            request_id, RefundRequestStatus.REJECTED, admin_id, admin_message, db
        )
        if not result["success"]:
            return result

        logger.info(f"Refund request {request_id} rejected by {admin_id}")
        return {
            "success": True,
            "request": format_document(result["request"])
        }

    @staticmethod
    async def list_refund_requests(
        db: AsyncIOMotorDatabase,
        status_filter: Optional[RefundRequestStatus] = None,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50
    ) -> list:
        query: Dict[str, Any] = {}
        if status_filter:
            query["status"] = RefundRequestStatus(status_filter).value
        if organization_id:
            query["organization_id"] = organization_id
        if user_id:
            query["user_id"] = user_id

        requests = await db.refund_requests.find(query).sort("created_at", -1).limit(limit).to_list(length=limit)
        return [format_document(request) for request in requests]
