from __future__ import annotations
from typing import Any, Dict, List, Tuple

import orjson
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, AsyncConnection

from ...helpers import now_ts
from ...infra.sql import Gated
from ...mpesa import StkCallback


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_CALLBACK_DELIVERIES = r"""
-- one row per CheckoutRequestID; every redelivery bumps `deliveries`
CREATE TABLE IF NOT EXISTS callback_deliveries (
  checkout_request_id TEXT PRIMARY KEY,
  result_code  INTEGER NOT NULL,
  result_desc  TEXT NOT NULL,
  deliveries   INTEGER NOT NULL,
  first_seen   DOUBLE PRECISION NOT NULL,
  last_seen    DOUBLE PRECISION NOT NULL,
  last_body    TEXT NOT NULL
);
"""

SQL_CREATE_IDX_DELIVERIES_LAST_SEEN = r"""
CREATE INDEX IF NOT EXISTS idx_callback_deliveries_last_seen
  ON callback_deliveries (last_seen DESC);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_CALLBACK_DELIVERIES))
    await exec_(text(SQL_CREATE_IDX_DELIVERIES_LAST_SEEN))


class CallbackJournal:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def record(self, cb: StkCallback) -> int:
        """Append a delivery; returns how many times this reference has
        been delivered, this one included."""
        now = now_ts()
        async with self.gated():
            async with self.db.begin():
                deliveries = (await self.db.execute(text("""
                  INSERT INTO callback_deliveries(
                    checkout_request_id, result_code, result_desc,
                    deliveries, first_seen, last_seen, last_body
                  ) VALUES (
                    :ref, :code, :rdesc, 1, :now, :now, :body
                  )
                  ON CONFLICT (checkout_request_id) DO UPDATE SET
                    result_code=EXCLUDED.result_code,
                    result_desc=EXCLUDED.result_desc,
                    deliveries=callback_deliveries.deliveries + 1,
                    last_seen=EXCLUDED.last_seen,
                    last_body=EXCLUDED.last_body
                  RETURNING deliveries
                """), {
                    "ref": cb.checkout_request_id,
                    "code": cb.result_code,
                    "rdesc": cb.result_desc,
                    "now": now,
                    "body": orjson.dumps(cb.raw).decode(),
                })).scalar_one()
        return int(deliveries)

    async def get_recent(
        self, limit: int = 100
    ) -> Tuple[int, List[Dict[str, Any]]]:
        async with self.gated():
            async with self.db.begin():
                total = (await self.db.execute(
                    text("SELECT COUNT(*) FROM callback_deliveries")
                )).scalar_one()
                rows = (await self.db.execute(text("""
                    SELECT checkout_request_id, result_code, result_desc,
                           deliveries, first_seen, last_seen
                    FROM callback_deliveries
                    ORDER BY last_seen DESC
                    LIMIT :lim
                """), {"lim": int(limit)})).mappings().all()

        items = [{
            "checkout_request_id": r["checkout_request_id"],
            "result_code": int(r["result_code"]),
            "result_desc": r["result_desc"],
            "deliveries": int(r["deliveries"]),
            "first_seen": float(r["first_seen"]),
            "last_seen": float(r["last_seen"]),
        } for r in rows]
        return int(total), items
