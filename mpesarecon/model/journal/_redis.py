from __future__ import annotations
from typing import Any, Dict, List, Tuple

import orjson
import redis.asyncio as redis

from ...helpers import now_ts
from ...mpesa import StkCallback


# ---- keys
def k_cb(ref: str) -> str: return f"cb:{ref}"


DELIVERY_INDEX = "callbacks"


class CallbackJournal:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def record(self, cb: StkCallback) -> int:
        now = now_ts()
        key = k_cb(cb.checkout_request_id)
        pipe = self.r.pipeline(transaction=True)
        pipe.hsetnx(key, "first_seen", str(now))
        pipe.hset(key, mapping={
            "result_code": str(cb.result_code),
            "result_desc": cb.result_desc,
            "last_seen": str(now),
            "last_body": orjson.dumps(cb.raw).decode(),
        })
        pipe.hincrby(key, "deliveries", 1)
        pipe.expire(key, self.ttl)
        pipe.zadd(DELIVERY_INDEX, {cb.checkout_request_id: now})
        res = await pipe.execute()
        return int(res[2])

    async def get_recent(
        self, limit: int = 100
    ) -> Tuple[int, List[Dict[str, Any]]]:
        total = await self.r.zcard(DELIVERY_INDEX)
        refs = await self.r.zrevrange(DELIVERY_INDEX, 0, max(0, limit - 1))

        pipe = self.r.pipeline()
        for ref in refs:
            pipe.hgetall(k_cb(ref))
        rows = await pipe.execute()

        items = []
        for ref, h in zip(refs, rows):
            # expired hash, drop it from the index
            if not h:
                await self.r.zrem(DELIVERY_INDEX, ref)
                total -= 1
                continue
            items.append({
                "checkout_request_id": ref,
                "result_code": int(h.get("result_code", "0")),
                "result_desc": h.get("result_desc", ""),
                "deliveries": int(h.get("deliveries", "0")),
                "first_seen": float(h.get("first_seen", "0")),
                "last_seen": float(h.get("last_seen", "0")),
            })
        return int(total), items
