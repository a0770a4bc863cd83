"""
Receipt numbers for fee payments.

- Format: PREFIX-YYYYMMDD-XXXXXX (prefix from RECEIPT_PREFIX, default REC).
- Caller-supplied receipt numbers are kept as given; uniqueness is enforced by
  the fee_payments.receipt_number constraint.
"""
import secrets
from datetime import date
from typing import Optional

from fastapi import status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ServiceError
from app.core.models import FeePayment

# exclude ambiguous 0/O, 1/I
RECEIPT_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
RECEIPT_SUFFIX_LENGTH = 6


def generate_receipt_number_candidate(
    prefix: Optional[str] = None,
    issued_on: Optional[date] = None,
) -> str:
    """Generate a single candidate receipt number (no DB check)."""
    prefix = (prefix or settings.receipt_prefix).strip().upper()
    day = (issued_on or date.today()).strftime("%Y%m%d")
    suffix = "".join(secrets.choice(RECEIPT_ALPHABET) for _ in range(RECEIPT_SUFFIX_LENGTH))
    return f"{prefix}-{day}-{suffix}"


async def generate_receipt_number(
    db: AsyncSession,
    issued_on: Optional[date] = None,
    max_attempts: int = 10,
) -> str:
    """Generate a receipt number not yet used by any payment (retries with a new suffix on collision)."""
    for _ in range(max_attempts):
        candidate = generate_receipt_number_candidate(issued_on=issued_on)
        result = await db.execute(
            select(FeePayment.id).where(FeePayment.receipt_number == candidate)
        )
        if result.scalar_one_or_none() is None:
            return candidate
    raise ServiceError(
        "Could not generate unique receipt number",
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
