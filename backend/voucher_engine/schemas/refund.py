from typing import Optional
from datetime import datetime
from pydantic import BaseModel, Field

from voucher_engine.models.refund import RefundReason
from voucher_engine.models.voucher import CancellationInitiator


class IssueRefundVoucherRequest(BaseModel):
    """Schema for compensating a cancelled order with a refund voucher."""
    order_id: str
    initiator: CancellationInitiator
    amount: float = Field(gt=0)
    customer_id: str
    created_by: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "order_id": "order123",
                "initiator": "SELLER",
                "amount": 1500,
                "customer_id": "user123"
            }
        }


class RefundRequestCreate(BaseModel):
    """Schema for a customer's order refund request."""
    order_id: str
    user_id: str
    organization_id: Optional[str] = None
    amount: float = Field(gt=0)
    reason: RefundReason
    customer_message: Optional[str] = Field(None, max_length=2000)


class ReviewRequest(BaseModel):
    """Admin decision on an order refund request."""
    admin_id: str
    admin_message: str = Field(min_length=10, max_length=1000)


class MonetaryRefundCreate(BaseModel):
    """Schema for requesting cash for a refund voucher."""
    voucher_id: str
    user_id: str


class ApproveMonetaryRefundRequest(BaseModel):
    admin_id: str
    admin_message: Optional[str] = Field(None, min_length=10, max_length=1000)


class RejectMonetaryRefundRequest(BaseModel):
    admin_id: str
    reason: str = Field(min_length=10, max_length=1000)
    block_further_requests: bool = False


class RefundRequestResponse(BaseModel):
    """Schema for order refund request response."""
    request_id: str
    order_id: str
    user_id: str
    organization_id: Optional[str] = None
    refund_amount: float
    reason: RefundReason
    customer_message: Optional[str] = None
    status: str
    admin_message: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    voucher_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class VoucherRefundRequestResponse(BaseModel):
    """Schema for monetary refund request response."""
    request_id: str
    voucher_id: str
    user_id: str
    voucher_code: str
    source_order_id: Optional[str] = None
    requested_amount: float
    status: str
    admin_message: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    payout_status: Optional[str] = None
    payout_reference: Optional[str] = None
    payout_failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class MonetaryRefundStateResponse(BaseModel):
    voucher_id: str
    state: str
    eligible_at: Optional[datetime] = None
    days_until_eligible: Optional[int] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
