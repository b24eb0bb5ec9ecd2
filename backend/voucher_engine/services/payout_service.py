"""
Payout hand-off for approved monetary refunds.

In SIMULATION mode transfers complete immediately with a SIM_REF_ reference,
for local development and testing. SANDBOX and PRODUCTION queue transfers
with the configured provider for manual processing and report them as
pending; without a provider they are reported as failed. Nothing is raised, so
an approval is never rolled back by the payout step.
"""

import secrets
import logging
from typing import Dict, Any

from voucher_engine.config.payout_config import (
    PAYOUT_CONFIG,
    PAYOUT_MODE,
    get_provider_url,
    is_provider_configured,
)
from voucher_engine.models.refund import PayoutStatus

logger = logging.getLogger(__name__)


class PayoutService:
    """Cash transfer to a customer for a converted voucher."""

    @staticmethod
    async def issue_transfer(
        amount: float,
        user_id: str,
        request_id: str,
        voucher_code: str
    ) -> Dict[str, Any]:
        """
        Hand a transfer off to the payout provider.

        Args:
            amount: Amount to pay out
            user_id: Customer receiving the transfer
            request_id: Monetary refund request being paid
            voucher_code: Code of the voucher being converted

        Returns:
            {"success": bool, "status": PayoutStatus value,
             "reference": str | None, "message": str}
        """
        if amount < PAYOUT_CONFIG["min_amount"]:
            logger.warning(f"Payout for {request_id} below minimum amount: {amount}")
            return {
                "success": False,
                "status": PayoutStatus.FAILED.value,
                "reference": None,
                "message": f"Payout amount is below the minimum of {PAYOUT_CONFIG['min_amount']}"
            }

        if PAYOUT_MODE == "SIMULATION":
            reference = f"{PAYOUT_CONFIG['simulation']['reference_prefix']}{secrets.token_hex(8).upper()}"
            logger.info(
                f"[SIMULATION] Transfer of {amount} {PAYOUT_CONFIG['currency']} to user {user_id} "
                f"for voucher {voucher_code}: {reference}"
            )
            return {
                "success": True,
                "status": PayoutStatus.COMPLETED.value,
                "reference": reference,
                "message": "Simulated transfer completed"
            }

        if not is_provider_configured():
            logger.error(f"No payout provider configured for {PAYOUT_MODE} mode; request {request_id} not paid")
            return {
                "success": False,
                "status": PayoutStatus.FAILED.value,
                "reference": None,
                "message": f"No payout provider configured for {PAYOUT_MODE} mode"
            }

        # Manual processing: finance settles the transfer with the provider
        logger.info(
            f"Transfer of {amount} {PAYOUT_CONFIG['currency']} to user {user_id} for voucher {voucher_code} "
            f"queued with {PAYOUT_CONFIG['provider']['name']} ({get_provider_url()}) for manual processing"
        )
        return {
            "success": False,
            "status": PayoutStatus.PENDING.value,
            "reference": None,
            "message": "Transfer queued for manual processing"
        }
