# model/inventory.py
"""
InventoryStore: Product.stock is the one shared counter with a hard
invariant (never negative).

`decrement_stock` re-reads the row inside the caller's transaction (row lock
on PostgreSQL) and then applies a decrement that is itself conditional on
`stock >= qty`, so a stale read can never push the counter below zero.
"""
from __future__ import annotations
from typing import Dict, Iterable, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import MalformedLineItem, ProductMissing, StockInsufficient
from .db import Product


# UN-GATED internal function
async def current_stock(db: AsyncSession, product_id: str) -> int:
    row = (await db.execute(
        select(Product.stock).where(Product.id == product_id)
        .with_for_update()
    )).first()
    if row is None:
        raise ProductMissing(product_id)
    return int(row[0])


# UN-GATED internal function
async def decrement_stock(db: AsyncSession, product_id: str, qty: int) -> int:
    """Returns the remaining stock. Raises StockInsufficient or
    ProductMissing; the caller must let that roll back its transaction."""
    available = await current_stock(db, product_id)
    if available < qty:
        raise StockInsufficient(product_id, qty, available)
    res = await db.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock >= qty)
        .values(stock=Product.stock - qty)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        # lost a race between the read and the write
        raise StockInsufficient(
            product_id, qty, await current_stock(db, product_id)
        )
    return available - qty


def merge_line_items(items: Iterable[dict]) -> Dict[str, int]:
    """productId -> total quantity; a product listed twice (different size
    or colour) is checked against its combined quantity."""
    wanted: Dict[str, int] = {}
    for item in items:
        pid = item.get("productId") if isinstance(item, dict) else None
        if not pid:
            raise MalformedLineItem(item, "no productId")
        try:
            qty = int(item.get("quantity", 0))
        except (TypeError, ValueError):
            raise MalformedLineItem(item, "quantity is not a number")
        wanted[str(pid)] = wanted.get(str(pid), 0) + qty
    return wanted


async def decrement_for_items(
    db: AsyncSession, items: Iterable[dict]
) -> Tuple[Tuple[str, int], ...]:
    done = []
    for pid, qty in sorted(merge_line_items(items).items()):
        if qty <= 0:
            continue
        remaining = await decrement_stock(db, pid, qty)
        done.append((pid, remaining))
    return tuple(done)
