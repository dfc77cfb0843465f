# model/notifications.py
from __future__ import annotations
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from .db import Notification

N_NEW_ORDER = "new_order"
N_PAYMENT_INTEGRITY = "payment_integrity"


def create(
    db: AsyncSession,
    *,
    type: str,
    message: str,
    link: str,
    target_roles: List[str],
    target_users: Optional[List[str]] = None,
) -> Notification:
    n = Notification(
        type=type,
        message=message,
        link=link,
        target_roles=list(target_roles),
        target_users=list(target_users or []),
        read_by=[],
        created_at=now_ts(),
    )
    db.add(n)
    return n


async def recent(db: AsyncSession, limit: int = 50) -> List[Notification]:
    return list((await db.execute(
        select(Notification)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
    )).scalars().all())
