"""Voucher and voucher usage models for MongoDB."""

from datetime import datetime
from typing import Dict, Any, List, Optional
from enum import Enum
from pydantic import BaseModel, Field
import secrets

from voucher_engine.utils.helpers import get_current_timestamp


class DiscountType(str, Enum):
    """Discount type enumeration."""
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    FREE_ITEM = "FREE_ITEM"
    FREE_SHIPPING = "FREE_SHIPPING"


class CancellationInitiator(str, Enum):
    """Who cancelled the order a refund voucher was minted from."""
    CUSTOMER = "CUSTOMER"
    SELLER = "SELLER"


class VoucherStatus(str, Enum):
    """Admin-facing computed status. Derived on read, never stored."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    SCHEDULED = "scheduled"
    EXHAUSTED = "exhausted"


class CustomerVoucherStatus(str, Enum):
    """Customer-facing computed status. Derived on read, never stored."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    USED = "used"
    REFUNDED = "refunded"


def generate_voucher_id() -> str:
    """Generate a unique voucher ID."""
    return f"vch_{secrets.token_urlsafe(16)}"


def generate_usage_id() -> str:
    """Generate a unique voucher usage ID."""
    return f"vus_{secrets.token_urlsafe(16)}"


def generate_redemption_cost_id() -> str:
    """Generate a unique redemption cost ID."""
    return f"vrc_{secrets.token_urlsafe(16)}"


class Voucher(BaseModel):
    """Voucher model for MongoDB."""
    id: Optional[str] = Field(None, alias="_id")
    voucher_id: str = Field(default_factory=generate_voucher_id)

    # Identity
    code: str  # normalized: trimmed, uppercase
    name: str
    description: Optional[str] = None

    # Discount
    discount_type: DiscountType
    discount_value: float = Field(ge=0)
    max_discount_amount: Optional[float] = Field(None, gt=0)  # PERCENTAGE cap
    min_order_amount: Optional[float] = Field(None, ge=0)

    # Scope
    organization_id: Optional[str] = None  # None = platform-wide
    applicable_product_ids: List[str] = Field(default_factory=list)
    applicable_category_ids: List[str] = Field(default_factory=list)
    assigned_to_user_id: Optional[str] = None  # personal voucher

    # Eligibility window (both bounds inclusive)
    valid_from: datetime = Field(default_factory=get_current_timestamp)
    valid_until: Optional[datetime] = None

    # Quotas
    usage_limit: Optional[int] = Field(None, gt=0)
    usage_limit_per_user: Optional[int] = Field(1, gt=0)
    used_count: int = Field(default=0, ge=0)

    # Lifecycle flags
    is_active: bool = True
    is_deleted: bool = False

    # Refund origin (only on vouchers minted from a cancelled order)
    cancellation_initiator: Optional[CancellationInitiator] = None
    source_order_id: Optional[str] = None
    source_refund_request_id: Optional[str] = None
    monetary_refund_eligible_at: Optional[datetime] = None
    monetary_refund_requested_at: Optional[datetime] = None
    monetary_refunded_at: Optional[datetime] = None
    monetary_refund_rejected_at: Optional[datetime] = None
    monetary_refund_rejection_count: int = Field(default=0, ge=0)
    monetary_refund_blocked: bool = False

    # Audit
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=get_current_timestamp)
    updated_at: datetime = Field(default_factory=get_current_timestamp)

    class Config:
        populate_by_name = True
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "voucher_id": "vch_abc123xyz",
                "code": "SAVE20",
                "name": "Save 20%",
                "discount_type": "PERCENTAGE",
                "discount_value": 20,
                "max_discount_amount": 500,
                "min_order_amount": 1000,
                "usage_limit": 100,
                "usage_limit_per_user": 1,
                "used_count": 0,
                "is_active": True
            }
        }


class VoucherUsage(BaseModel):
    """
    One successful redemption. The usage ledger is strictly append-only:
    rows are inserted once and never updated or deleted.
    """
    id: Optional[str] = Field(None, alias="_id")
    usage_id: str = Field(default_factory=generate_usage_id)

    # References
    voucher_id: str
    user_id: str
    order_id: str
    organization_id: Optional[str] = None

    # Amounts
    order_amount: float = Field(ge=0)
    discount_amount: float = Field(ge=0)  # post-cap, post-floor

    # Position of this row among the user's usages of the voucher (1-based)
    user_slot: Optional[int] = Field(None, gt=0)

    voucher_snapshot: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=get_current_timestamp)

    class Config:
        populate_by_name = True
        use_enum_values = True


class VoucherRedemptionCost(BaseModel):
    """
    Amount the platform covers when a refund voucher is spent at a seller.

    Written once per (voucher, order) next to the usage row.
    """
    id: Optional[str] = Field(None, alias="_id")
    cost_id: str = Field(default_factory=generate_redemption_cost_id)

    voucher_id: str
    order_id: str
    seller_organization_id: str
    amount_covered: float = Field(ge=0)

    voucher_snapshot: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=get_current_timestamp)

    class Config:
        populate_by_name = True
