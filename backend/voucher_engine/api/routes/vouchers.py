from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from motor.motor_asyncio import AsyncIOMotorDatabase

from voucher_engine.api.deps import get_db
from voucher_engine.models.voucher import DiscountType
from voucher_engine.schemas.refund import MonetaryRefundStateResponse
from voucher_engine.schemas.voucher import (
    CustomerVoucherResponse,
    RedeemVoucherRequest,
    RedemptionResponse,
    ToggleVoucherRequest,
    ValidateVoucherRequest,
    ValidationResponse,
    VoucherCreate,
    VoucherListResponse,
    VoucherResponse,
    VoucherUpdate,
)
from voucher_engine.services.monetary_refund_service import MonetaryRefundService
from voucher_engine.services.redemption_service import RedemptionService
from voucher_engine.services.validation_service import ValidationService
from voucher_engine.services.voucher_service import VoucherService
from voucher_engine.utils.helpers import get_current_timestamp

router = APIRouter()


@router.post("", response_model=VoucherResponse, status_code=status.HTTP_201_CREATED)
async def create_voucher(
    voucher: VoucherCreate,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """
    Create a voucher.

    Leave `code` empty to generate one from `code_prefix` (PREFIX-XXXXXX).
    """
    created = await VoucherService.create_voucher(voucher, db)
    return VoucherService.with_computed_status(created, get_current_timestamp())


@router.get("", response_model=VoucherListResponse)
async def list_vouchers(
    organization_id: Optional[str] = None,
    is_active: Optional[bool] = None,
    discount_type: Optional[DiscountType] = None,
    search: Optional[str] = None,
    include_expired: bool = False,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """List vouchers with their computed status, newest first."""
    return await VoucherService.list_vouchers(
        db,
        organization_id=organization_id,
        is_active=is_active,
        discount_type=discount_type,
        search=search,
        include_expired=include_expired,
        page=page,
        page_size=page_size
    )


@router.post("/validate", response_model=ValidationResponse)
async def validate_voucher(
    request: ValidateVoucherRequest,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """
    Check a voucher code against an order and quote the discount.

    Business rejections come back with `valid: false` and an `error_code`.
    """
    try:
        return await ValidationService.validate_voucher(
            code=request.code,
            order_amount=request.order_amount,
            db=db,
            user_id=request.user_id,
            organization_id=request.organization_id,
            product_ids=request.product_ids,
            category_ids=request.category_ids
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )


@router.post("/redeem", response_model=RedemptionResponse)
async def redeem_voucher(
    request: RedeemVoucherRequest,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """Record a voucher use for an order. Repeating the call for the same order is safe."""
    return await RedemptionService.redeem_voucher(
        voucher_id=request.voucher_id,
        user_id=request.user_id,
        order_id=request.order_id,
        order_amount=request.order_amount,
        db=db,
        organization_id=request.organization_id,
        product_ids=request.product_ids,
        category_ids=request.category_ids
    )


@router.get("/code/{code}", response_model=VoucherResponse)
async def get_voucher_by_code(
    code: str,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    voucher = await VoucherService.get_voucher_by_code(code, db)
    if not voucher:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Voucher not found"
        )
    return VoucherService.with_computed_status(voucher, get_current_timestamp())


@router.get("/users/{user_id}", response_model=List[CustomerVoucherResponse])
async def list_user_vouchers(
    user_id: str,
    include_used: bool = False,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """A customer's personal vouchers (refund vouchers included)."""
    return await VoucherService.list_user_vouchers(user_id, db, include_used=include_used)


@router.get("/{voucher_id}", response_model=VoucherResponse)
async def get_voucher(
    voucher_id: str,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    voucher = await VoucherService.get_voucher(voucher_id, db)
    if not voucher:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Voucher not found"
        )
    return VoucherService.with_computed_status(voucher, get_current_timestamp())


@router.patch("/{voucher_id}", response_model=VoucherResponse)
async def update_voucher(
    voucher_id: str,
    updates: VoucherUpdate,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    updated = await VoucherService.update_voucher(voucher_id, updates, db)
    return VoucherService.with_computed_status(updated, get_current_timestamp())


@router.patch("/{voucher_id}/active", response_model=VoucherResponse)
async def toggle_voucher_active(
    voucher_id: str,
    request: ToggleVoucherRequest,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    updated = await VoucherService.toggle_voucher_active(voucher_id, request.is_active, db)
    return VoucherService.with_computed_status(updated, get_current_timestamp())


@router.delete("/{voucher_id}")
async def delete_voucher(
    voucher_id: str,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    return await VoucherService.delete_voucher(voucher_id, db)


@router.get("/{voucher_id}/usages")
async def list_voucher_usages(
    voucher_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    return await VoucherService.list_voucher_usages(voucher_id, db, page=page, page_size=page_size)


@router.get("/{voucher_id}/monetary-refund", response_model=MonetaryRefundStateResponse)
async def get_monetary_refund_state(
    voucher_id: str,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """Where a refund voucher stands in its conversion to cash."""
    return await MonetaryRefundService.get_monetary_refund_state(voucher_id, db)
