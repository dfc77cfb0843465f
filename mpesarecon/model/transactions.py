# model/transactions.py
"""
TransactionStore: one row per payment attempt, correlated with Daraja
callbacks through `checkout_request_id`.

Terminal status is write-once. Both terminal writes below are conditional
on `status = 'pending'` and report whether they won, so a caller running
them as the first statement of a database transaction holds the
idempotency gate for the rest of that transaction.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from .db import Transaction

logger = logging.getLogger(__name__)

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL = frozenset({COMPLETED, FAILED})


async def get(db: AsyncSession, tx_id: str) -> Optional[Transaction]:
    return await db.get(Transaction, tx_id)


async def find_by_checkout_ref(
    db: AsyncSession, checkout_request_id: str
) -> Optional[Transaction]:
    """Exactly one match is expected. More than one is a data-integrity
    fault: the oldest is used so redeliveries always pick the same row."""
    rows = (await db.execute(
        select(Transaction)
        .where(Transaction.checkout_request_id == checkout_request_id)
        .order_by(Transaction.created_at, Transaction.id)
        .limit(2)
    )).scalars().all()
    if not rows:
        return None
    if len(rows) > 1:
        logger.warning(
            "Multiple transactions share CheckoutRequestID %s; "
            "processing %s", checkout_request_id, rows[0].id,
        )
    return rows[0]


async def claim_completed(
    db: AsyncSession,
    tx_id: str,
    *,
    receipt_code: Optional[str],
    provider_transaction_date: Optional[str],
    paid_at: Optional[float],
    payer_phone: Optional[str],
    callback_data: Dict[str, Any],
) -> bool:
    res = await db.execute(
        update(Transaction)
        .where(Transaction.id == tx_id, Transaction.status == PENDING)
        .values(
            status=COMPLETED,
            receipt_code=receipt_code,
            provider_transaction_date=provider_transaction_date,
            paid_at=paid_at,
            payer_phone=payer_phone,
            fail_reason=None,
            callback_data=callback_data,
            updated_at=now_ts(),
        )
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def claim_failed(
    db: AsyncSession,
    tx_id: str,
    *,
    fail_reason: str,
    callback_data: Dict[str, Any],
) -> bool:
    res = await db.execute(
        update(Transaction)
        .where(Transaction.id == tx_id, Transaction.status == PENDING)
        .values(
            status=FAILED,
            fail_reason=fail_reason,
            retry_count=Transaction.retry_count + 1,
            callback_data=callback_data,
            updated_at=now_ts(),
        )
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


# buyer-facing text for the ResultDesc values Daraja commonly sends
def translate_fail_reason(reason: Optional[str]) -> str:
    if not reason:
        return "An unknown error occurred."
    if "1032" in reason or "cancelled by user" in reason.lower():
        return ("You cancelled the M-Pesa request on your phone. "
                "Please try again when you're ready.")
    if "1037" in reason:
        return ("The M-Pesa prompt on your phone timed out. Please try "
                "again and enter your PIN more quickly.")
    if "2001" in reason or "insufficient" in reason.lower():
        return ("You have insufficient funds in your M-Pesa account to "
                "complete this transaction.")
    if "already in process" in reason:
        return ("Another payment is already in progress for this order. "
                "Please wait a moment for it to complete.")
    return reason
