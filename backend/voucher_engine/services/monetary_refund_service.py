"""
Monetary conversion of refund vouchers.

A voucher minted from a seller-initiated cancellation may be exchanged for
cash once monetary_refund_eligible_at has passed and while it is unused:

    NOT_ELIGIBLE -> ELIGIBLE -> REQUESTED -> APPROVED

A rejected request sends the voucher back to ELIGIBLE, unless further
requests are blocked or a re-request cooldown is running.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from voucher_engine.core.config import settings
from voucher_engine.models.refund import PayoutStatus, RefundRequestStatus, VoucherRefundRequest
from voucher_engine.models.voucher import CancellationInitiator
from voucher_engine.services.payout_service import PayoutService
from voucher_engine.services.refund_voucher_service import validate_admin_message
from voucher_engine.utils.helpers import days_until, format_document, get_current_timestamp

logger = logging.getLogger(__name__)


class MonetaryRefundErrorCode(str, Enum):
    INELIGIBLE_ORIGIN = "INELIGIBLE_ORIGIN"
    NOT_OWNER = "NOT_OWNER"
    VOUCHER_CONSUMED = "VOUCHER_CONSUMED"
    ALREADY_REQUESTED = "ALREADY_REQUESTED"
    REQUESTS_BLOCKED = "REQUESTS_BLOCKED"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    REQUEST_NOT_PENDING = "REQUEST_NOT_PENDING"


class MonetaryRefundState(str, Enum):
    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    ELIGIBLE = "ELIGIBLE"
    REQUESTED = "REQUESTED"
    APPROVED = "APPROVED"


def monetary_refund_failure(error_code: MonetaryRefundErrorCode, message: str) -> Dict[str, Any]:
    return {
        "success": False,
        "error_code": error_code.value,
        "message": message
    }


def _days_phrase(days: int) -> str:
    return f"{days} day" if days == 1 else f"{days} days"


def _cooldown_ends_at(voucher: dict) -> Optional[datetime]:
    rejected_at = voucher.get("monetary_refund_rejected_at")
    if rejected_at is None or settings.MONETARY_REFUND_REREQUEST_COOLDOWN_HOURS <= 0:
        return None
    return rejected_at + timedelta(hours=settings.MONETARY_REFUND_REREQUEST_COOLDOWN_HOURS)


def _rejection_limit_reached(voucher: dict) -> bool:
    max_rejections = settings.MONETARY_REFUND_MAX_REJECTIONS
    return max_rejections is not None and voucher.get("monetary_refund_rejection_count", 0) >= max_rejections


def evaluate_monetary_refund_eligibility(
    voucher: dict,
    now: datetime,
    user_id: Optional[str] = None
) -> Optional[Dict[str, Any]]:
    """
    Check whether a voucher can be exchanged for cash right now.

    Returns None when eligible, otherwise a failure dict. Checks run in
    order: origin, ownership (only when user_id is given), consumption,
    pending request, blocked, then the eligibility date and any re-request
    cooldown.
    """
    if voucher.get("cancellation_initiator") != CancellationInitiator.SELLER.value:
        return monetary_refund_failure(
            MonetaryRefundErrorCode.INELIGIBLE_ORIGIN,
            "Only vouchers from seller-cancelled orders can be refunded to your original payment"
        )

    if user_id is not None and voucher.get("assigned_to_user_id") != user_id:
        return monetary_refund_failure(
            MonetaryRefundErrorCode.NOT_OWNER,
            "You can only request refunds for your own vouchers"
        )

    if voucher.get("monetary_refunded_at") is not None:
        return monetary_refund_failure(
            MonetaryRefundErrorCode.VOUCHER_CONSUMED,
            "This voucher has already been refunded"
        )
    if voucher.get("used_count", 0) > 0:
        return monetary_refund_failure(
            MonetaryRefundErrorCode.VOUCHER_CONSUMED,
            "This voucher has already been used and cannot be refunded"
        )
    if not voucher.get("is_active"):
        return monetary_refund_failure(
            MonetaryRefundErrorCode.VOUCHER_CONSUMED,
            "This voucher is no longer active and cannot be refunded"
        )

    if voucher.get("monetary_refund_requested_at") is not None:
        return monetary_refund_failure(
            MonetaryRefundErrorCode.ALREADY_REQUESTED,
            "A monetary refund has already been requested for this voucher"
        )

    if voucher.get("monetary_refund_blocked") or _rejection_limit_reached(voucher):
        return monetary_refund_failure(
            MonetaryRefundErrorCode.REQUESTS_BLOCKED,
            "Monetary refund requests are no longer accepted for this voucher"
        )

    eligible_at = voucher.get("monetary_refund_eligible_at")
    if eligible_at is None:
        return monetary_refund_failure(
            MonetaryRefundErrorCode.NOT_ELIGIBLE,
            "This voucher is not eligible for monetary refund"
        )
    if now < eligible_at:
        return monetary_refund_failure(
            MonetaryRefundErrorCode.NOT_ELIGIBLE,
            f"This voucher will be eligible for monetary refund in {_days_phrase(days_until(eligible_at, now))}"
        )

    cooldown_ends_at = _cooldown_ends_at(voucher)
    if cooldown_ends_at is not None and now < cooldown_ends_at:
        return monetary_refund_failure(
            MonetaryRefundErrorCode.NOT_ELIGIBLE,
            f"You can request a monetary refund again in {_days_phrase(days_until(cooldown_ends_at, now))}"
        )

    return None


class MonetaryRefundService:
    """Service for converting refund vouchers to cash."""

    @staticmethod
    async def _get_voucher(voucher_id: str, db: AsyncIOMotorDatabase) -> dict:
        voucher = await db.vouchers.find_one({"voucher_id": voucher_id, "is_deleted": False})
        if not voucher:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Voucher not found"
            )
        return voucher

    @staticmethod
    async def _get_request(request_id: str, db: AsyncIOMotorDatabase) -> dict:
        request = await db.voucher_refund_requests.find_one({"request_id": request_id})
        if not request:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Voucher refund request not found"
            )
        return request

    @staticmethod
    def _not_pending(request: dict) -> Dict[str, Any]:
        return monetary_refund_failure(
            MonetaryRefundErrorCode.REQUEST_NOT_PENDING,
            f"Voucher refund request is already {request['status'].lower()}"
        )

    @staticmethod
    async def get_monetary_refund_state(
        voucher_id: str,
        db: AsyncIOMotorDatabase,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Where a voucher stands in the monetary conversion lifecycle."""
        now = now or get_current_timestamp()
        voucher = await MonetaryRefundService._get_voucher(voucher_id, db)
        eligible_at = voucher.get("monetary_refund_eligible_at")

        failure = None
        if voucher.get("monetary_refunded_at") is not None:
            state = MonetaryRefundState.APPROVED
        elif voucher.get("monetary_refund_requested_at") is not None:
            state = MonetaryRefundState.REQUESTED
        else:
            failure = evaluate_monetary_refund_eligibility(voucher, now)
            state = MonetaryRefundState.ELIGIBLE if failure is None else MonetaryRefundState.NOT_ELIGIBLE

        return {
            "voucher_id": voucher_id,
            "state": state.value,
            "eligible_at": eligible_at,
            "days_until_eligible": days_until(eligible_at, now) if eligible_at else None,
            "error_code": failure["error_code"] if failure else None,
            "message": failure["message"] if failure else None
        }

    @staticmethod
    async def request_monetary_refund(
        voucher_id: str,
        user_id: str,
        db: AsyncIOMotorDatabase,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Ask to exchange a refund voucher for cash.

        The voucher is claimed with one conditional update that re-checks every
        eligibility condition, so two concurrent requests cannot both succeed.

        Raises:
            HTTPException: 404 if the voucher does not exist
        """
        now = now or get_current_timestamp()
        voucher = await MonetaryRefundService._get_voucher(voucher_id, db)

        failure = evaluate_monetary_refund_eligibility(voucher, now, user_id=user_id)
        if failure:
            return failure

        claim_query: Dict[str, Any] = {
            "voucher_id": voucher_id,
            "is_deleted": False,
            "is_active": True,
            "cancellation_initiator": CancellationInitiator.SELLER.value,
            "assigned_to_user_id": user_id,
            "used_count": 0,
            "monetary_refund_requested_at": None,
            "monetary_refunded_at": None,
            "monetary_refund_blocked": {"$ne": True},
            "monetary_refund_eligible_at": {"$lte": now}
        }
        if settings.MONETARY_REFUND_REREQUEST_COOLDOWN_HOURS > 0:
            cooldown = timedelta(hours=settings.MONETARY_REFUND_REREQUEST_COOLDOWN_HOURS)
            claim_query["$or"] = [
                {"monetary_refund_rejected_at": None},
                {"monetary_refund_rejected_at": {"$lte": now - cooldown}}
            ]
        if settings.MONETARY_REFUND_MAX_REJECTIONS is not None:
            claim_query["monetary_refund_rejection_count"] = {"$lt": settings.MONETARY_REFUND_MAX_REJECTIONS}

        claimed = await db.vouchers.find_one_and_update(
            claim_query,
            {"$set": {"monetary_refund_requested_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER
        )
        if not claimed:
            current = await MonetaryRefundService._get_voucher(voucher_id, db)
            logger.warning(f"Monetary refund claim on voucher {voucher_id} by user {user_id} lost a race")
            return evaluate_monetary_refund_eligibility(current, now, user_id=user_id) or monetary_refund_failure(
                MonetaryRefundErrorCode.ALREADY_REQUESTED,
                "A monetary refund has already been requested for this voucher"
            )

        refund_request = VoucherRefundRequest(
            voucher_id=voucher_id,
            user_id=user_id,
            voucher_code=claimed["code"],
            source_order_id=claimed.get("source_order_id"),
            requested_amount=claimed["discount_value"],
            created_at=now,
            updated_at=now
        )
        request_dict = refund_request.model_dump(by_alias=True, exclude={"id"})

        try:
            await db.voucher_refund_requests.insert_one(request_dict)
        except PyMongoError:
            await db.vouchers.update_one(
                {"voucher_id": voucher_id, "monetary_refund_requested_at": now},
                {"$set": {"monetary_refund_requested_at": None}}
            )
            logger.warning(f"Failed to record monetary refund request for voucher {voucher_id}; claim released")
            raise

        logger.info(
            f"Monetary refund {refund_request.request_id} requested for voucher {claimed['code']} "
            f"by user {user_id} ({claimed['discount_value']})"
        )
        return {
            "success": True,
            "request": format_document(request_dict)
        }

    @staticmethod
    async def approve_monetary_refund(
        request_id: str,
        admin_id: str,
        db: AsyncIOMotorDatabase,
        admin_message: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Approve a pending monetary refund.

        1. Deactivate the voucher, only while it is still unused
        2. Move the request from PENDING to APPROVED
        3. Hand the transfer to the payout service and record the outcome

        A voucher that was redeemed first makes the approval fail with
        VOUCHER_CONSUMED and leaves the request pending.
        """
        if admin_message is not None:
            admin_message = validate_admin_message(admin_message)

        now = now or get_current_timestamp()
        request = await MonetaryRefundService._get_request(request_id, db)
        if request["status"] != RefundRequestStatus.PENDING.value:
            return MonetaryRefundService._not_pending(request)

        voucher_id = request["voucher_id"]
        deactivated = await db.vouchers.find_one_and_update(
            {"voucher_id": voucher_id, "used_count": 0, "is_active": True},
            {"$set": {"is_active": False, "monetary_refunded_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER
        )
        if not deactivated:
            logger.warning(f"Monetary refund {request_id} not approved: voucher {voucher_id} already consumed")
            return monetary_refund_failure(
                MonetaryRefundErrorCode.VOUCHER_CONSUMED,
                "Cannot approve monetary refund for a voucher that has already been used"
            )

        approved = await db.voucher_refund_requests.find_one_and_update(
            {"request_id": request_id, "status": RefundRequestStatus.PENDING.value},
            {"$set": {
                "status": RefundRequestStatus.APPROVED.value,
                "admin_message": admin_message,
                "reviewed_by": admin_id,
                "reviewed_at": now,
                "payout_status": PayoutStatus.PENDING.value,
                "updated_at": now
            }},
            return_document=ReturnDocument.AFTER
        )
        if not approved:
            await db.vouchers.update_one(
                {"voucher_id": voucher_id, "monetary_refunded_at": now},
                {"$set": {"is_active": True, "monetary_refunded_at": None, "updated_at": get_current_timestamp()}}
            )
            logger.warning(f"Monetary refund {request_id} resolved concurrently; voucher {voucher_id} reactivated")
            current = await MonetaryRefundService._get_request(request_id, db)
            return MonetaryRefundService._not_pending(current)

        payout = await PayoutService.issue_transfer(
            amount=approved["requested_amount"],
            user_id=approved["user_id"],
            request_id=request_id,
            voucher_code=approved["voucher_code"]
        )
        updated = await db.voucher_refund_requests.find_one_and_update(
            {"request_id": request_id},
            {"$set": {
                "payout_status": payout["status"],
                "payout_reference": payout.get("reference"),
                "payout_failure_reason": None if payout["success"] else payout.get("message"),
                "updated_at": get_current_timestamp()
            }},
            return_document=ReturnDocument.AFTER
        )

        logger.info(
            f"Monetary refund {request_id} approved by {admin_id}; voucher {approved['voucher_code']} deactivated, "
            f"payout {payout['status']}"
        )
        return {
            "success": True,
            "request": format_document(updated),
            "payout": payout
        }

    @staticmethod
    async def reject_monetary_refund(
        request_id: str,
        admin_id: str,
        reason: str,
        db: AsyncIOMotorDatabase,
        block_further_requests: bool = False,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Reject a pending monetary refund and reopen the voucher for requests.

        The rejection is counted on the voucher. Further requests are blocked
        when block_further_requests is set or MONETARY_REFUND_MAX_REJECTIONS is
        reached; otherwise the customer may ask again once any
        MONETARY_REFUND_REREQUEST_COOLDOWN_HOURS have passed.
        """
        reason = validate_admin_message(reason)
        now = now or get_current_timestamp()

        request = await MonetaryRefundService._get_request(request_id, db)
        if request["status"] != RefundRequestStatus.PENDING.value:
            return MonetaryRefundService._not_pending(request)

        rejected = await db.voucher_refund_requests.find_one_and_update(
            {"request_id": request_id, "status": RefundRequestStatus.PENDING.value},
            {"$set": {
                "status": RefundRequestStatus.REJECTED.value,
                "admin_message": reason,
                "reviewed_by": admin_id,
                "reviewed_at": now,
                "updated_at": now
            }},
            return_document=ReturnDocument.AFTER
        )
        if not rejected:
            current = await MonetaryRefundService._get_request(request_id, db)
            return MonetaryRefundService._not_pending(current)

        voucher = await db.vouchers.find_one_and_update(
            {"voucher_id": request["voucher_id"]},
            {
                "$set": {
                    "monetary_refund_requested_at": None,
                    "monetary_refund_rejected_at": now,
                    "updated_at": now
                },
                "$inc": {"monetary_refund_rejection_count": 1}
            },
            return_document=ReturnDocument.AFTER
        )

        blocked = bool(voucher) and (block_further_requests or _rejection_limit_reached(voucher))
        if blocked:
            await db.vouchers.update_one(
                {"voucher_id": request["voucher_id"]},
                {"$set": {"monetary_refund_blocked": True}}
            )

        logger.info(
            f"Monetary refund {request_id} rejected by {admin_id}"
            f"{'; further requests blocked' if blocked else ''}"
        )
        return {
            "success": True,
            "request": format_document(rejected),
            "requests_blocked": blocked
        }

    @staticmethod
    async def list_refund_requests(
        db: AsyncIOMotorDatabase,
        status_filter: Optional[RefundRequestStatus] = None,
        user_id: Optional[str] = None,
        voucher_id: Optional[str] = None,
        limit: int = 50
    ) -> list:
        """Monetary refund requests, newest first."""
        query: Dict[str, Any] = {}
        if status_filter:
            query["status"] = RefundRequestStatus(status_filter).value
        if user_id:
            query["user_id"] = user_id
        if voucher_id:
            query["voucher_id"] = voucher_id

        requests = await db.voucher_refund_requests.find(query).sort("created_at", -1).limit(limit).to_list(length=limit)
        return [format_document(request) for request in requests]
