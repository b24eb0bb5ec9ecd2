from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from voucher_engine.models.voucher import DiscountType


class VoucherCreate(BaseModel):
    """Schema for admin-authored voucher creation."""
    organization_id: Optional[str] = None

    # Either a manual code or an optional prefix for an auto-generated one
    code: Optional[str] = None
    code_prefix: Optional[str] = None

    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None

    discount_type: DiscountType
    discount_value: float = Field(ge=0)
    min_order_amount: Optional[float] = Field(None, ge=0)
    max_discount_amount: Optional[float] = Field(None, gt=0)
    applicable_product_ids: List[str] = Field(default_factory=list)
    applicable_category_ids: List[str] = Field(default_factory=list)

    usage_limit: Optional[int] = Field(None, gt=0)
    usage_limit_per_user: Optional[int] = Field(1, gt=0)

    valid_from: datetime
    valid_until: Optional[datetime] = None
    is_active: bool = True

    created_by: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "code": "SAVE20",
                "name": "Save 20%",
                "discount_type": "PERCENTAGE",
                "discount_value": 20,
                "max_discount_amount": 500,
                "min_order_amount": 1000,
                "usage_limit": 100,
                "valid_from": "2025-01-01T00:00:00"
            }
        }


class VoucherUpdate(BaseModel):
    """Schema for partial voucher updates. Only fields that are sent change."""
    code: Optional[str] = None
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(None, ge=0)
    min_order_amount: Optional[float] = Field(None, ge=0)
    max_discount_amount: Optional[float] = Field(None, gt=0)
    applicable_product_ids: Optional[List[str]] = None
    applicable_category_ids: Optional[List[str]] = None
    usage_limit: Optional[int] = Field(None, gt=0)
    usage_limit_per_user: Optional[int] = Field(None, gt=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None


class ToggleVoucherRequest(BaseModel):
    """Schema for activating or deactivating a voucher."""
    is_active: bool


class ValidateVoucherRequest(BaseModel):
    """Schema for validating a voucher against an order."""
    code: str = Field(min_length=1)
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    order_amount: float = Field(ge=0)
    product_ids: Optional[List[str]] = None
    category_ids: Optional[List[str]] = None

    class Config:
        json_schema_extra = {
            "example": {
                "code": " save20 ",
                "user_id": "user123",
                "organization_id": "org123",
                "order_amount": 5000,
                "product_ids": ["prod123"]
            }
        }


class RedeemVoucherRequest(BaseModel):
    """Schema for applying a validated voucher to an order."""
    voucher_id: str
    user_id: str
    order_id: str
    order_amount: float = Field(ge=0)
    organization_id: Optional[str] = None
    product_ids: Optional[List[str]] = None
    category_ids: Optional[List[str]] = None


class AppliedVoucher(BaseModel):
    """Voucher fields returned with a successful validation."""
    voucher_id: str
    code: str
    name: Optional[str] = None
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: float
    min_order_amount: Optional[float] = None
    max_discount_amount: Optional[float] = None


class ValidationResponse(BaseModel):
    """Result of a validation. Rejections carry error_code and message."""
    valid: bool
    voucher: Optional[AppliedVoucher] = None
    discount_amount: Optional[float] = None
    error_code: Optional[str] = None
    message: Optional[str] = None


class VoucherUsageResponse(BaseModel):
    """Schema for a usage ledger row."""
    usage_id: str
    voucher_id: str
    user_id: str
    order_id: str
    organization_id: Optional[str] = None
    order_amount: float
    discount_amount: float
    created_at: datetime


class RedemptionResponse(BaseModel):
    """Result of a redemption attempt."""
    success: bool
    usage: Optional[VoucherUsageResponse] = None
    already_redeemed: bool = False
    error_code: Optional[str] = None
    message: Optional[str] = None


class VoucherResponse(BaseModel):
    """Schema for voucher response."""
    voucher_id: str
    code: str
    name: str
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: float
    min_order_amount: Optional[float] = None
    max_discount_amount: Optional[float] = None
    organization_id: Optional[str] = None
    applicable_product_ids: List[str] = Field(default_factory=list)
    applicable_category_ids: List[str] = Field(default_factory=list)
    assigned_to_user_id: Optional[str] = None
    usage_limit: Optional[int] = None
    usage_limit_per_user: Optional[int] = None
    used_count: int
    valid_from: datetime
    valid_until: Optional[datetime] = None
    is_active: bool
    cancellation_initiator: Optional[str] = None
    monetary_refund_eligible_at: Optional[datetime] = None
    monetary_refund_requested_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    # Derived on read
    computed_status: Optional[str] = None
    is_expired: Optional[bool] = None
    is_usage_limit_reached: Optional[bool] = None
    remaining_uses: Optional[int] = None


class VoucherListResponse(BaseModel):
    """Schema for a page of vouchers."""
    vouchers: List[VoucherResponse]
    total: int
    page: int
    page_size: int
    page_count: int
    has_more: bool


class CustomerVoucherResponse(VoucherResponse):
    """Voucher as shown in a customer's wallet."""
    is_used: bool = False
    is_monetary_refund_eligible: bool = False
    days_until_monetary_refund_eligible: Optional[int] = None
