# model/orders.py
"""
OrderStore: ticket Orders, MerchOrders, and the counters a completed ticket
order feeds (promocode usage, tracking-link purchases, listing revenue).

All functions are un-gated and run inside the caller's transaction.
"""
from __future__ import annotations
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from .db import Listing, MerchOrder, Order, Promocode, TrackingLink, User

logger = logging.getLogger(__name__)

# Order statuses
O_PENDING = "pending"
O_COMPLETED = "completed"
O_FAILED = "failed"
O_REFUNDED = "refunded"

# MerchOrder statuses
M_PENDING = "pending"
M_AWAITING_PICKUP = "awaiting_pickup"
M_FAILED = "failed"

PAYMENT_FULL = "full"


async def get_order(db: AsyncSession, order_id: str) -> Optional[Order]:
    return (await db.execute(
        select(Order).where(Order.id == order_id).with_for_update()
    )).scalar_one_or_none()


async def get_merch_order(
    db: AsyncSession, order_id: str
) -> Optional[MerchOrder]:
    return (await db.execute(
        select(MerchOrder).where(MerchOrder.id == order_id).with_for_update()
    )).scalar_one_or_none()


async def get_listing(db: AsyncSession, listing_id: str) -> Optional[Listing]:
    return await db.get(Listing, listing_id)


async def set_order_status(
    db: AsyncSession, order_id: str, *, expect: str, status: str
) -> bool:
    res = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == expect)
        .values(status=status, updated_at=now_ts())
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def set_merch_status(
    db: AsyncSession, order_id: str, *, expect: str, status: str
) -> bool:
    res = await db.execute(
        update(MerchOrder)
        .where(MerchOrder.id == order_id, MerchOrder.status == expect)
        .values(status=status, updated_at=now_ts())
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def record_promocode_use(
    db: AsyncSession, promocode_id: str, revenue: float
) -> bool:
    res = await db.execute(
        update(Promocode)
        .where(Promocode.id == promocode_id)
        .values(
            usage_count=Promocode.usage_count + 1,
            revenue_generated=Promocode.revenue_generated + revenue,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        logger.warning("Promocode %s not found, usage not recorded",
                       promocode_id)
    return res.rowcount == 1


def tracking_link_scope(promocode_id: Optional[str]) -> str:
    # influencer sub-links live under their promocode, the rest top-level
    return promocode_id or ""


async def record_tracking_purchase(
    db: AsyncSession, tracking_link_id: str, promocode_id: Optional[str]
) -> bool:
    scope = tracking_link_scope(promocode_id)
    res = await db.execute(
        update(TrackingLink)
        .where(TrackingLink.scope == scope,
               TrackingLink.id == tracking_link_id)
        .values(purchases=TrackingLink.purchases + 1)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        logger.warning("Tracking link %s (scope %r) not found",
                       tracking_link_id, scope)
    return res.rowcount == 1


async def add_listing_revenue(
    db: AsyncSession, listing_id: str, amount: float
) -> bool:
    res = await db.execute(
        update(Listing)
        .where(Listing.id == listing_id)
        .values(total_revenue=Listing.total_revenue + amount)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def add_user_purchases(
    db: AsyncSession, user_id: str, amount: float
) -> bool:
    res = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(total_purchases=User.total_purchases + amount)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        logger.warning("User %s not found, lifetime spend not recorded",
                       user_id)
    return res.rowcount == 1
