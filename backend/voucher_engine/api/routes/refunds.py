from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from motor.motor_asyncio import AsyncIOMotorDatabase

from voucher_engine.api.deps import get_db
from voucher_engine.models.refund import RefundRequestStatus
from voucher_engine.schemas.refund import (
    ApproveMonetaryRefundRequest,
    IssueRefundVoucherRequest,
    MonetaryRefundCreate,
    RefundRequestCreate,
    RefundRequestResponse,
    RejectMonetaryRefundRequest,
    ReviewRequest,
    VoucherRefundRequestResponse,
)
from voucher_engine.schemas.voucher import VoucherResponse
from voucher_engine.services.monetary_refund_service import MonetaryRefundService
from voucher_engine.services.refund_voucher_service import RefundRequestErrorCode, RefundVoucherService
from voucher_engine.services.voucher_service import VoucherService
from voucher_engine.utils.helpers import get_current_timestamp

router = APIRouter()


def raise_on_failure(result: dict, status_code: int = status.HTTP_400_BAD_REQUEST) -> dict:
    """Turn a business-rule failure returned by a service into an HTTP error."""
    if not result.get("success"):
        raise HTTPException(
            status_code=status_code,
            detail={
                "error_code": result.get("error_code"),
                "message": result.get("message")
            }
        )
    return result


@router.post("/vouchers", response_model=VoucherResponse, status_code=status.HTTP_201_CREATED)
async def issue_refund_voucher(
    request: IssueRefundVoucherRequest,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """Compensate a cancelled order with a single-use refund voucher."""
    voucher = await RefundVoucherService.issue_refund_voucher(
        order_id=request.order_id,
        initiator=request.initiator,
        amount=request.amount,
        customer_id=request.customer_id,
        db=db,
        created_by=request.created_by
    )
    return VoucherService.with_computed_status(voucher, get_current_timestamp())


@router.post("/requests", response_model=RefundRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_refund_request(
    request: RefundRequestCreate,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    result = await RefundVoucherService.create_refund_request(
        order_id=request.order_id,
        user_id=request.user_id,
        amount=request.amount,
        reason=request.reason,
        db=db,
        organization_id=request.organization_id,
        customer_message=request.customer_message
    )
    status_code = (
        status.HTTP_409_CONFLICT
        if result.get("error_code") == RefundRequestErrorCode.REQUEST_EXISTS.value
        else status.HTTP_400_BAD_REQUEST
    )
    return raise_on_failure(result, status_code)["request"]


@router.get("/requests", response_model=List[RefundRequestResponse])
async def list_refund_requests(
    status_filter: Optional[RefundRequestStatus] = Query(None, alias="status"),
    organization_id: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    return await RefundVoucherService.list_refund_requests(
        db,
        status_filter=status_filter,
        organization_id=organization_id,
        user_id=user_id,
        limit=limit
    )


@router.post("/requests/{request_id}/approve")
async def approve_refund_request(
    request_id: str,
    review: ReviewRequest,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """Approve an order refund; the customer receives a refund voucher."""
    result = await RefundVoucherService.approve_refund_request(
        request_id, review.admin_id, review.admin_message, db
    )
    return raise_on_failure(result, status.HTTP_409_CONFLICT)


@router.post("/requests/{request_id}/reject", response_model=RefundRequestResponse)
async def reject_refund_request(
    request_id: str,
    review: ReviewRequest,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    result = await RefundVoucherService.reject_refund_request(
        request_id, review.admin_id, review.admin_message, db
    )
    return raise_on_failure(result, status.HTTP_409_CONFLICT)["request"]


@router.post("/monetary", response_model=VoucherRefundRequestResponse, status_code=status.HTTP_201_CREATED)
async def request_monetary_refund(
    request: MonetaryRefundCreate,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """Ask to exchange an eligible refund voucher for cash."""
    result = await MonetaryRefundService.request_monetary_refund(request.voucher_id, request.user_id, db)
    return raise_on_failure(result)["request"]


@router.get("/monetary", response_model=List[VoucherRefundRequestResponse])
async def list_monetary_refunds(
    status_filter: Optional[RefundRequestStatus] = Query(None, alias="status"),
    user_id: Optional[str] = None,
    voucher_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    return await MonetaryRefundService.list_refund_requests(
        db,
        status_filter=status_filter,
        user_id=user_id,
        voucher_id=voucher_id,
        limit=limit
    )


@router.post("/monetary/{request_id}/approve")
async def approve_monetary_refund(
    request_id: str,
    review: ApproveMonetaryRefundRequest,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """Approve a monetary refund: deactivates the voucher and hands off the payout."""
    result = await MonetaryRefundService.approve_monetary_refund(
        request_id, review.admin_id, db, admin_message=review.admin_message
    )
    return raise_on_failure(result, status.HTTP_409_CONFLICT)


@router.post("/monetary/{request_id}/reject")
async def reject_monetary_refund(
    request_id: str,
    review: RejectMonetaryRefundRequest,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    result = await MonetaryRefundService.reject_monetary_refund(
        request_id,
        review.admin_id,
        review.reason,
        db,
        block_further_requests=review.block_further_requests
    )
    return raise_on_failure(result, status.HTTP_409_CONFLICT)
