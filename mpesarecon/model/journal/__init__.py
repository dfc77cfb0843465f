# model/journal/__init__.py
import os
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ...infra.sql import Gated

BACKEND = os.getenv("JOURNAL_BACKEND", "pg").lower()  # 'pg' | 'redis'

if BACKEND == "redis":
    from ._redis import CallbackJournal as _CallbackJournal
else:
    from ._postgres import CallbackJournal as _CallbackJournal


# Factory keeps server.py simple and constructor-agnostic:
def new_journal(*, db: Optional[AsyncSession] = None,
                r: Optional[redis.Redis] = None,
                ttl_seconds: int = 7 * 24 * 3600,
                gated: Optional[Gated] = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "CallbackJournal(redis) requires r=redis.Redis"
            )
        return _CallbackJournal(r=r, ttl_seconds=ttl_seconds)
    if db is None:
        raise RuntimeError("CallbackJournal(pg) requires db=AsyncSession")
    if gated is None:
        raise RuntimeError("CallbackJournal(pg) requires gated=Gated")
    return _CallbackJournal(db=db, gated=gated)


CallbackJournal = _CallbackJournal
__all__ = ["CallbackJournal", "new_journal", "BACKEND"]
