"""
Payout configuration for monetary refunds of vouchers.

Supports three operating modes:
- SIMULATION: Transfers complete immediately with a mock reference (no real API calls)
- SANDBOX: Test against a provider sandbox (for development/staging)
- PRODUCTION: Real transfers with a live provider
"""

import os
from typing import Dict, Any


# Payout operating mode
PAYOUT_MODE = os.getenv("PAYOUT_MODE", "SIMULATION")  # SIMULATION | SANDBOX | PRODUCTION

PAYOUT_CONFIG: Dict[str, Any] = {
    "mode": PAYOUT_MODE,

    # Provider endpoints used outside SIMULATION mode
    "provider": {
        "name": os.getenv("PAYOUT_PROVIDER", ""),
        "sandbox_url": os.getenv("PAYOUT_SANDBOX_URL", ""),
        "production_url": os.getenv("PAYOUT_PRODUCTION_URL", ""),
        "api_key": os.getenv("PAYOUT_API_KEY", "")
    },

    # Transfer Settings
    "currency": os.getenv("PAYOUT_CURRENCY", "PHP"),
    "min_amount": float(os.getenv("PAYOUT_MIN_AMOUNT", "1")),

    # Simulation Settings (for SIMULATION mode only)
    "simulation": {
        "reference_prefix": "SIM_REF_"
    }
}


def get_provider_url() -> str:
    """
    Get the payout provider URL for the current mode.

    Returns:
        Provider URL, or an empty string in SIMULATION mode
    """
    provider = PAYOUT_CONFIG["provider"]
    if PAYOUT_MODE == "PRODUCTION":
        return provider.get("production_url", "")
    if PAYOUT_MODE == "SANDBOX":
        return provider.get("sandbox_url", "")
    return ""


def is_provider_configured() -> bool:
    """Whether a real payout provider has been wired in."""
    provider = PAYOUT_CONFIG["provider"]
    return bool(provider.get("name") and provider.get("api_key") and get_provider_url())
