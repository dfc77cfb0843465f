# model/tickets.py
from __future__ import annotations
from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_id, new_ticket_code, now_ts
from .db import Order, Ticket

T_VALID = "valid"
GENERATED_ONLINE = "online_sale"


def issue(db: AsyncSession, order: Order, ticket_type: str) -> Ticket:
    """Stage one admission ticket for `order`; flushed with the caller's
    transaction."""
    ticket = Ticket(
        id=new_id(),
        order_id=order.id,
        user_id=order.user_id,
        user_name=order.user_name,
        listing_id=order.listing_id,
        ticket_type=ticket_type,
        qr_code=new_ticket_code(),
        status=T_VALID,
        generated_by=GENERATED_ONLINE,
        created_at=now_ts(),
    )
    db.add(ticket)
    return ticket


def issue_for_order(db: AsyncSession, order: Order) -> List[Ticket]:
    # one row per admission unit: quantity 3 -> three tickets
    out = []
    for line in order.tickets or []:
        for _ in range(int(line.get("quantity", 0))):
            out.append(issue(db, order, str(line["name"])))
    return out


async def for_order(db: AsyncSession, order_id: str) -> List[Ticket]:
    return list((await db.execute(
        select(Ticket).where(Ticket.order_id == order_id)
        .order_by(Ticket.created_at, Ticket.id)
    )).scalars().all())
