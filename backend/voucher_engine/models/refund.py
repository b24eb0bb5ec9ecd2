"""Refund request models for MongoDB."""

from datetime import datetime
from typing import Optional
from enum import Enum
from pydantic import BaseModel, Field
import secrets

from voucher_engine.utils.helpers import get_current_timestamp


class RefundRequestStatus(str, Enum):
    """Refund request status enumeration. APPROVED and REJECTED are terminal."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class RefundReason(str, Enum):
    """Why the customer asked for the order to be refunded."""
    WRONG_SIZE = "WRONG_SIZE"
    WRONG_ITEM = "WRONG_ITEM"
    WRONG_PAYMENT = "WRONG_PAYMENT"
    DEFECTIVE_ITEM = "DEFECTIVE_ITEM"
    NOT_AS_DESCRIBED = "NOT_AS_DESCRIBED"
    CHANGED_MIND = "CHANGED_MIND"
    DUPLICATE_ORDER = "DUPLICATE_ORDER"
    DELIVERY_ISSUE = "DELIVERY_ISSUE"
    OTHER = "OTHER"


class PayoutStatus(str, Enum):
    """Outcome of the cash transfer handed off after a monetary refund approval."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def generate_refund_request_id() -> str:
    """Generate a unique order refund request ID."""
    return f"rfq_{secrets.token_urlsafe(16)}"


def generate_voucher_refund_request_id() -> str:
    """Generate a unique monetary refund request ID."""
    return f"vrr_{secrets.token_urlsafe(16)}"


class RefundRequest(BaseModel):
    """Order-level refund request. Approval mints a refund voucher."""
    id: Optional[str] = Field(None, alias="_id")
    request_id: str = Field(default_factory=generate_refund_request_id)

    # References
    order_id: str
    user_id: str  # Customer
    organization_id: Optional[str] = None

    # Details
    refund_amount: float = Field(gt=0)
    reason: RefundReason
    customer_message: Optional[str] = None

    # Review
    status: RefundRequestStatus = RefundRequestStatus.PENDING
    admin_message: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    voucher_id: Optional[str] = None  # set on approval

    # Timestamps
    created_at: datetime = Field(default_factory=get_current_timestamp)
    updated_at: datetime = Field(default_factory=get_current_timestamp)

    class Config:
        populate_by_name = True
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "request_id": "rfq_abc123xyz",
                "order_id": "order123",
                "user_id": "user123",
                "organization_id": "org123",
                "refund_amount": 1500,
                "reason": "DEFECTIVE_ITEM",
                "status": "PENDING"
            }
        }


class VoucherRefundRequest(BaseModel):
    """Request to exchange a seller-issued refund voucher for cash."""
    id: Optional[str] = Field(None, alias="_id")
    request_id: str = Field(default_factory=generate_voucher_refund_request_id)

    # References
    voucher_id: str
    user_id: str  # Customer
    voucher_code: str
    source_order_id: Optional[str] = None

    requested_amount: float = Field(gt=0)

    # Review
    status: RefundRequestStatus = RefundRequestStatus.PENDING
    admin_message: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None

    # Payout hand-off (filled after approval)
    payout_status: Optional[PayoutStatus] = None
    payout_reference: Optional[str] = None
    payout_failure_reason: Optional[str] = None

    # Timestamps
    created_at: datetime = Field(default_factory=get_current_timestamp)
    updated_at: datetime = Field(default_factory=get_current_timestamp)

    class Config:
        populate_by_name = True
        use_enum_values = True
