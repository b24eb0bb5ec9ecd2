"""
Tests for converting refund vouchers to cash.

This test suite validates:
- Seller-initiated vouchers become requestable only after the eligibility date
- Customer-initiated vouchers never do
- Only one request can claim a voucher, even concurrently
- Approval deactivates the voucher and records the payout
- Approval and redemption of the same voucher cannot both succeed
- Rejection reopens the voucher, subject to blocking, max rejections and cooldown
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import HTTPException

from conftest import build_refund_voucher
from voucher_engine.core.config import settings
from voucher_engine.models.voucher import CancellationInitiator
from voucher_engine.services.monetary_refund_service import (
    MonetaryRefundService,
    evaluate_monetary_refund_eligibility,
)
from voucher_engine.services.redemption_service import RedemptionService
from voucher_engine.services.refund_voucher_service import RefundVoucherService
from voucher_engine.services.validation_service import ValidationService

REVIEW_MESSAGE = "Checked the order history, this is fine."


async def request_for(voucher, db, now, user_id="user123"):
    result = await MonetaryRefundService.request_monetary_refund(voucher["voucher_id"], user_id, db, now=now)
    assert result["success"] is True, result
    return result["request"]


class TestRequestMonetaryRefund:
    """Test monetary refund requests."""

    @pytest.mark.asyncio
    async def test_seller_voucher_eligible_after_delay(self, db, now):
        """Issued at T: a request at T+10d is NOT_ELIGIBLE, at T+15d it succeeds."""
        voucher = await RefundVoucherService.issue_refund_voucher(
            "order123", CancellationInitiator.SELLER, 1500, "user123", db, now=now
        )

        early = await MonetaryRefundService.request_monetary_refund(
            voucher["voucher_id"], "user123", db, now=now + timedelta(days=10)
        )
        assert early["success"] is False
        assert early["error_code"] == "NOT_ELIGIBLE"
        assert "4 days" in early["message"]

        later = await MonetaryRefundService.request_monetary_refund(
            voucher["voucher_id"], "user123", db, now=now + timedelta(days=15)
        )
        assert later["success"] is True
        request = later["request"]
        assert request["request_id"].startswith("vrr_")
        assert request["status"] == "PENDING"
        assert request["requested_amount"] == 1500
        assert request["voucher_code"] == voucher["code"]
        assert request["source_order_id"] == "order123"

        state = await MonetaryRefundService.get_monetary_refund_state(
            voucher["voucher_id"], db, now=now + timedelta(days=15)
        )
        assert state["state"] == "REQUESTED"

    @pytest.mark.asyncio
    async def test_customer_voucher_never_eligible(self, db, now):
        voucher = await RefundVoucherService.issue_refund_voucher(
            "order123", CancellationInitiator.CUSTOMER, 1500, "user123", db, now=now
        )

        for days in (0, 15, 365):
            result = await MonetaryRefundService.request_monetary_refund(
                voucher["voucher_id"], "user123", db, now=now + timedelta(days=days)
            )
            assert result["error_code"] == "INELIGIBLE_ORIGIN"

    @pytest.mark.asyncio
    async def test_not_owner(self, db, insert_voucher, now):
        voucher = await insert_voucher(build_refund_voucher())
        result = await MonetaryRefundService.request_monetary_refund(voucher["voucher_id"], "intruder", db, now=now)
        assert result["error_code"] == "NOT_OWNER"

    @pytest.mark.asyncio
    async def test_used_voucher_is_consumed(self, db, insert_voucher, now):
        voucher = await insert_voucher(build_refund_voucher(used_count=1))
        result = await MonetaryRefundService.request_monetary_refund(voucher["voucher_id"], "user123", db, now=now)
        assert result["error_code"] == "VOUCHER_CONSUMED"

    @pytest.mark.asyncio
    async def test_already_requested(self, db, insert_voucher, now):
        voucher = await insert_voucher(build_refund_voucher())
        await request_for(voucher, db, now)

        result = await MonetaryRefundService.request_monetary_refund(voucher["voucher_id"], "user123", db, now=now)
        assert result["error_code"] == "ALREADY_REQUESTED"

    @pytest.mark.asyncio
    async def test_concurrent_requests_claim_once(self, db, insert_voucher, now):
        voucher = await insert_voucher(build_refund_voucher())

        results = await asyncio.gather(*[
            MonetaryRefundService.request_monetary_refund(voucher["voucher_id"], "user123", db, now=now)
            for _ in range(5)
        ])

        assert sum(1 for r in results if r["success"]) == 1
        assert {r["error_code"] for r in results if not r["success"]} == {"ALREADY_REQUESTED"}
        assert await db.voucher_refund_requests.count_documents({}) == 1

    @pytest.mark.asyncio
    async def test_missing_voucher(self, db, now):
        with pytest.raises(HTTPException) as exc_info:
            await MonetaryRefundService.request_monetary_refund("vch_missing", "user123", db, now=now)
        assert exc_info.value.status_code == 404


class TestApproveMonetaryRefund:
    """Test approval and payout hand-off."""

    @pytest.mark.asyncio
    async def test_approve_deactivates_and_pays_out(self, db, insert_voucher, now):
        voucher = await insert_voucher(build_refund_voucher())
        request = await request_for(voucher, db, now)

        with patch("voucher_engine.services.payout_service.PAYOUT_MODE", "SIMULATION"):
            result = await MonetaryRefundService.approve_monetary_refund(
                request["request_id"], "admin1", db, admin_message=REVIEW_MESSAGE, now=now
            )

        assert result["success"] is True
        approved = result["request"]
        assert approved["status"] == "APPROVED"
        assert approved["reviewed_by"] == "admin1"
        assert approved["payout_status"] == "completed"
        assert approved["payout_reference"].startswith("SIM_REF_")

        stored = await db.vouchers.find_one({"voucher_id": voucher["voucher_id"]})
        assert stored["is_active"] is False
        assert stored["monetary_refunded_at"] == now

        state = await MonetaryRefundService.get_monetary_refund_state(voucher["voucher_id"], db, now=now)
        assert state["state"] == "APPROVED"

        validation = await ValidationService.validate_voucher(voucher["code"], 2000, db, user_id="user123", now=now)
        assert validation["error_code"] == "INACTIVE"

    @pytest.mark.asyncio
    async def test_failed_payout_is_recorded(self, db, insert_voucher, now):
        voucher = await insert_voucher(build_refund_voucher())
        request = await request_for(voucher, db, now)

        failed_transfer = {
            "success": False,
            "status": "failed",
            "reference": None,
            "message": "No payout provider configured for PRODUCTION mode"
        }
        with patch(
            "voucher_engine.services.monetary_refund_service.PayoutService.issue_transfer",
            AsyncMock(return_value=failed_transfer)
        ) as mock_transfer:
            result = await MonetaryRefundService.approve_monetary_refund(request["request_id"], "admin1", db, now=now)

        assert result["success"] is True
        assert result["request"]["status"] == "APPROVED"
        assert result["request"]["payout_status"] == "failed"
        assert result["request"]["payout_failure_reason"] == failed_transfer["message"]
        mock_transfer.assert_called_once_with(
            amount=1500,
            user_id="user123",
            request_id=request["request_id"],
            voucher_code=voucher["code"]
        )

    @pytest.mark.asyncio
    async def test_consumed_voucher_cannot_be_approved(self, db, insert_voucher, now):
        voucher = await insert_voucher(build_refund_voucher())
        request = await request_for(voucher, db, now)
        await db.vouchers.update_one({"voucher_id": voucher["voucher_id"]}, {"$inc": {"used_count": 1}})

        result = await MonetaryRefundService.approve_monetary_refund(request["request_id"], "admin1", db, now=now)

        assert result["success"] is False
        assert result["error_code"] == "VOUCHER_CONSUMED"
        pending = await db.voucher_refund_requests.find_one({"request_id": request["request_id"]})
        assert pending["status"] == "PENDING"

    @pytest.mark.asyncio
    async def test_approve_races_redemption(self, db, insert_voucher, now):
        """Approving and redeeming the same voucher at once: exactly one wins."""
        voucher = await insert_voucher(build_refund_voucher())
        request = await request_for(voucher, db, now)

        approval, redemption = await asyncio.gather(
            MonetaryRefundService.approve_monetary_refund(request["request_id"], "admin1", db, now=now),
            RedemptionService.redeem_voucher(voucher["voucher_id"], "user123", "order999", 2000, db, now=now)
        )

        assert approval["success"] != redemption["success"]
        stored = await db.vouchers.find_one({"voucher_id": voucher["voucher_id"]})
        if approval["success"]:
            assert stored["used_count"] == 0
            assert redemption["error_code"] == "INACTIVE"
        else:
            assert stored["used_count"] == 1
            assert stored["is_active"] is True
            assert approval["error_code"] == "VOUCHER_CONSUMED"

    @pytest.mark.asyncio
    async def test_second_approval_not_pending(self, db, insert_voucher, now):
        voucher = await insert_voucher(build_refund_voucher())
        request = await request_for(voucher, db, now)
        await MonetaryRefundService.approve_monetary_refund(request["request_id"], "admin1", db, now=now)

        result = await MonetaryRefundService.approve_monetary_refund(request["request_id"], "admin2", db, now=now)

        assert result["error_code"] == "REQUEST_NOT_PENDING"

    @pytest.mark.asyncio
    async def test_missing_request(self, db, now):
        with pytest.raises(HTTPException) as exc_info:
            await MonetaryRefundService.approve_monetary_refund("vrr_missing", "admin1", db, now=now)
        assert exc_info.value.status_code == 404


class TestRejectMonetaryRefund:
    """Test rejection and the re-request policy."""

    @pytest.mark.asyncio
    async def test_rejection_reopens_voucher(self, db, insert_voucher, now):
        voucher = await insert_voucher(build_refund_voucher())
        request = await request_for(voucher, db, now)

        result = await MonetaryRefundService.reject_monetary_refund(
            request["request_id"], "admin1", REVIEW_MESSAGE, db, now=now
        )

        assert result["success"] is True
        assert result["request"]["status"] == "REJECTED"
        assert result["request"]["admin_message"] == REVIEW_MESSAGE
        assert result["requests_blocked"] is False

        stored = await db.vouchers.find_one({"voucher_id": voucher["voucher_id"]})
        assert stored["monetary_refund_requested_at"] is None
        assert stored["monetary_refund_rejection_count"] == 1
        assert stored["is_active"] is True

        again = await MonetaryRefundService.request_monetary_refund(voucher["voucher_id"], "user123", db, now=now)
        assert again["success"] is True

    @pytest.mark.asyncio
    async def test_explicit_block(self, db, insert_voucher, now):
        voucher = await insert_voucher(build_refund_voucher())
        request = await request_for(voucher, db, now)

        result = await MonetaryRefundService.reject_monetary_refund(
            request["request_id"], "admin1", REVIEW_MESSAGE, db, block_further_requests=True, now=now
        )
        assert result["requests_blocked"] is True

        again = await MonetaryRefundService.request_monetary_refund(voucher["voucher_id"], "user123", db, now=now)
        assert again["error_code"] == "REQUESTS_BLOCKED"

    @pytest.mark.asyncio
    async def test_max_rejections(self, db, insert_voucher, now):
        voucher = await insert_voucher(build_refund_voucher())

        with patch.object(settings, "MONETARY_REFUND_MAX_REJECTIONS", 2):
            for _ in range(2):
                request = await request_for(voucher, db, now)
                result = await MonetaryRefundService.reject_monetary_refund(
                    request["request_id"], "admin1", REVIEW_MESSAGE, db, now=now
                )

            assert result["requests_blocked"] is True
            again = await MonetaryRefundService.request_monetary_refund(voucher["voucher_id"], "user123", db, now=now)
            assert again["error_code"] == "REQUESTS_BLOCKED"

    @pytest.mark.asyncio
    async def test_rerequest_cooldown(self, db, insert_voucher, now):
        voucher = await insert_voucher(build_refund_voucher())
        request = await request_for(voucher, db, now)

        with patch.object(settings, "MONETARY_REFUND_REREQUEST_COOLDOWN_HOURS", 48):
            await MonetaryRefundService.reject_monetary_refund(
                request["request_id"], "admin1", REVIEW_MESSAGE, db, now=now
            )

            cooling = await MonetaryRefundService.request_monetary_refund(
                voucher["voucher_id"], "user123", db, now=now + timedelta(hours=1)
            )
            assert cooling["error_code"] == "NOT_ELIGIBLE"
            assert "2 days" in cooling["message"]

            state = await MonetaryRefundService.get_monetary_refund_state(
                voucher["voucher_id"], db, now=now + timedelta(hours=1)
            )
            assert state["state"] == "NOT_ELIGIBLE"

            after = await MonetaryRefundService.request_monetary_refund(
                voucher["voucher_id"], "user123", db, now=now + timedelta(hours=49)
            )
            assert after["success"] is True

    @pytest.mark.asyncio
    async def test_reason_is_required(self, db, insert_voucher, now):
        voucher = await insert_voucher(build_refund_voucher())
        request = await request_for(voucher, db, now)

        with pytest.raises(HTTPException) as exc_info:
            await MonetaryRefundService.reject_monetary_refund(request["request_id"], "admin1", "no", db, now=now)

        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_list_requests(self, db, insert_voucher, now):
        voucher = await insert_voucher(build_refund_voucher())
        request = await request_for(voucher, db, now)
        await MonetaryRefundService.reject_monetary_refund(request["request_id"], "admin1", REVIEW_MESSAGE, db, now=now)
        await request_for(voucher, db, now + timedelta(minutes=5))

        pending = await MonetaryRefundService.list_refund_requests(db, status_filter="PENDING")
        everything = await MonetaryRefundService.list_refund_requests(db, voucher_id=voucher["voucher_id"])

        assert len(pending) == 1
        assert len(everything) == 2
        assert everything[0]["status"] == "PENDING"


class TestMonetaryRefundState:
    """Test the eligibility evaluation and lifecycle state."""

    def test_eligibility_order(self, now):
        customer = build_refund_voucher(initiator=CancellationInitiator.CUSTOMER, used_count=1)
        assert evaluate_monetary_refund_eligibility(customer, now, "intruder")["error_code"] == "INELIGIBLE_ORIGIN"

        used = build_refund_voucher(used_count=1)
        assert evaluate_monetary_refund_eligibility(used, now, "intruder")["error_code"] == "NOT_OWNER"
        assert evaluate_monetary_refund_eligibility(used, now, "user123")["error_code"] == "VOUCHER_CONSUMED"

        requested = build_refund_voucher(monetary_refund_requested_at=now, monetary_refund_blocked=True)
        assert evaluate_monetary_refund_eligibility(requested, now)["error_code"] == "ALREADY_REQUESTED"

        assert evaluate_monetary_refund_eligibility(build_refund_voucher(), now) is None

    @pytest.mark.asyncio
    async def test_state_not_eligible_carries_days(self, db, insert_voucher, now):
        voucher = await insert_voucher(build_refund_voucher(issued_at=now - timedelta(days=10)))

        state = await MonetaryRefundService.get_monetary_refund_state(voucher["voucher_id"], db, now=now)

        assert state["state"] == "NOT_ELIGIBLE"
        assert state["days_until_eligible"] == 4
        assert state["error_code"] == "NOT_ELIGIBLE"

    @pytest.mark.asyncio
    async def test_state_eligible(self, db, insert_voucher, now):
        voucher = await insert_voucher(build_refund_voucher())

        state = await MonetaryRefundService.get_monetary_refund_state(voucher["voucher_id"], db, now=now)

        assert state["state"] == "ELIGIBLE"
        assert state["days_until_eligible"] == 0
