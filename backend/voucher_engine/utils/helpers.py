import math
import re
import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from voucher_engine.core.config import settings

CODE_PATTERN = re.compile(r"^[A-Z0-9_-]+$")
SECONDS_PER_DAY = 24 * 60 * 60


def normalize_code(code: str) -> str:
    """Normalize a voucher code for storage and lookup (trimmed, uppercase)."""
    return code.strip().upper()


def is_valid_code(code: str) -> bool:
    """Manual codes are 3-30 chars of letters, digits, hyphens and underscores."""
    return 3 <= len(code) <= 30 and bool(CODE_PATTERN.match(code))


def random_code_suffix(length: int = 6) -> str:
    characters = string.ascii_uppercase + string.digits
    return ''.join(secrets.choice(characters) for _ in range(length))


def generate_voucher_code(prefix: Optional[str] = None) -> str:
    """
    Generate a voucher code as PREFIX-XXXXXX.

    The prefix is uppercased, stripped of anything that is not a letter or
    digit and cut to 10 characters. Without a prefix the code is VOUCHER-XXXXXX.
    """
    if prefix:
        clean_prefix = re.sub(r"[^A-Z0-9]", "", prefix.upper())[:10]
        if clean_prefix:
            return f"{clean_prefix}-{random_code_suffix()}"
    return f"VOUCHER-{random_code_suffix()}"


def round_money(amount: float) -> float:
    """Round a monetary amount to 2 decimal places, half-up."""
    return float(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_currency(amount: float) -> str:
    return f"{settings.CURRENCY_SYMBOL}{amount:,.2f}"


def format_date(value: datetime) -> str:
    return value.strftime(settings.DATE_DISPLAY_FORMAT)


def days_until(target: datetime, now: datetime) -> int:
    """Whole days (rounded up) from now until target; 0 once target has passed."""
    remaining = (target - now).total_seconds()
    if remaining <= 0:
        return 0
    return math.ceil(remaining / SECONDS_PER_DAY)


def format_document(document: dict) -> dict:
    """Format MongoDB document for API response."""
    if document and "_id" in document:
        del document["_id"]
    return document


def get_current_timestamp() -> datetime:
    """Get current UTC timestamp (naive, as stored by MongoDB)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
