from __future__ import annotations
import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as redis
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .errors import CallbackError, MalformedCallback
from .helpers import to_iso
from .infra import timings
from .infra.sql import Database, make_database
from .infra.timings import timeit
from .model.db import Base
from .model import notifications, transactions
from .model.journal import (
    CallbackJournal, new_journal, BACKEND as JOURNAL_BACKEND
)
from .mpesa import CallbackAdapter, Daraja, StkCallback
from .notify import ZeptoMailSink
from .reconciler import PaymentReconciler

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ---
# startup / shutdown
# ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    database = make_database(config.DATABASE_URL)
    app.state.database = database

    # Create SQL tables
    async with database.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if JOURNAL_BACKEND == "pg":
            from .model.journal._postgres import create_schema
            await create_schema(conn)

    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(max_connections=64, max_keepalive_connections=16),
    )
    if JOURNAL_BACKEND == "redis":
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            max_connections=config.REDIS_MAX_CONN,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )

    app.state.adapter = Daraja(config.MPESA_CALLBACK_SECRET)
    app.state.sink = ZeptoMailSink(
        app.state.http,
        url=config.ZEPTO_MAIL_URL,
        api_key=config.ZEPTO_MAIL_API_KEY,
        from_address=config.MAIL_FROM_ADDRESS,
        from_name=config.MAIL_FROM_NAME,
        app_url=config.APP_URL,
    )
    app.state.reconciler = PaymentReconciler(
        database,
        app.state.sink,
        ticketed_listing_types=config.TICKETED_LISTING_TYPES,
    )
    logger.info(
        "mpesarecon starting: journal backend %s, ticketed listings %s",
        JOURNAL_BACKEND, ",".join(sorted(config.TICKETED_LISTING_TYPES)),
    )
    if not config.MPESA_CALLBACK_SECRET:
        logger.error("MPESA_CALLBACK_SECRET is not set; all callbacks will "
                     "be rejected")

    yield

    timings.log_summary()
    timings.reset()
    await app.state.http.aclose()
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None
    await database.dispose()


app = FastAPI(
    title="mpesarecon",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)


@app.exception_handler(CallbackError)
async def _callback_error(request: Request, exc: CallbackError):
    return ORJSONResponse(
        {"ResultCode": 1, "ResultDesc": exc.result_desc},
        status_code=exc.status_code,
    )


# ----------------------------
# Dependencies
# ----------------------------
def get_database(request: Request) -> Database:
    return request.app.state.database


async def get_db(database: Database = Depends(get_database)) -> AsyncSession:
    async with database.SessionAsync() as session:
        yield session


def get_adapter(request: Request) -> CallbackAdapter:
    return request.app.state.adapter


def get_reconciler(request: Request) -> PaymentReconciler:
    return request.app.state.reconciler


async def callback_journal(
    request: Request, database: Database = Depends(get_database)
) -> CallbackJournal:
    if JOURNAL_BACKEND == "redis":
        yield new_journal(r=request.app.state.redis,
                          ttl_seconds=config.JOURNAL_TTL_SECONDS)
    else:
        async with database.SessionAsync() as session:
            yield new_journal(db=session, gated=database.gated)


# ----------------------------
# Webhook endpoint (Daraja STK push result)
# ----------------------------
@app.post("/api/mpesa-callback/{secret}")
async def mpesa_callback(
    secret: str,
    request: Request,
    background_tasks: BackgroundTasks,
    adapter: CallbackAdapter = Depends(get_adapter),
    reconciler: PaymentReconciler = Depends(get_reconciler),
    journal: CallbackJournal = Depends(callback_journal),
):
    # secret first: no body parsing for unauthenticated callers
    adapter.verify_secret(secret)
    payload = await request.body()
    async with timeit("callback.parse"):
        try:
            cb = adapter.parse_callback(payload)
        except MalformedCallback as e:
            logger.error("Rejected M-Pesa callback: %s", e)
            raise
    logger.info("Received M-Pesa callback %s ResultCode=%s",
                cb.checkout_request_id, cb.result_code)

    await _journal_delivery(journal, cb)

    try:
        outcome = await reconciler.handle(cb)
    except CallbackError:
        raise
    except Exception:
        # storage fault or writer conflict: answer 500 so Daraja redelivers
        logger.exception("Error processing M-Pesa callback %s",
                         cb.checkout_request_id)
        return ORJSONResponse(
            {"ResultCode": 1, "ResultDesc": "Internal Server Error"},
            status_code=500,
        )

    if outcome.has_side_effects:
        background_tasks.add_task(reconciler.run_side_effects, outcome)
    return {"ResultCode": 0, "ResultDesc": outcome.result_desc}


async def _journal_delivery(journal: CallbackJournal, cb: StkCallback) -> None:
    # audit trail only, never the idempotency gate
    try:
        n = await journal.record(cb)
    except Exception:
        logger.warning("Could not journal callback %s",
                       cb.checkout_request_id, exc_info=True)
        return
    if n > 1:
        logger.info("CheckoutRequestID %s delivered %d times",
                    cb.checkout_request_id, n)


# ----------------------------
# API: Transaction status (polled by the checkout page)
# ----------------------------
@app.get("/api/transactions/{tx_id}")
async def get_transaction_status(
    tx_id: str,
    db: AsyncSession = Depends(get_db),
    database: Database = Depends(get_database),
):
    async with database.gated():
        async with db.begin():
            tx = await transactions.get(db, tx_id)
    if tx is None:
        raise HTTPException(404, detail="Transaction not found.")
    return {
        "transaction_id": tx.id,
        "order_id": tx.order_id,
        "status": tx.status,
        "failReason": (
            transactions.translate_fail_reason(tx.fail_reason)
            if tx.status == transactions.FAILED else None
        ),
        "retryCount": tx.retry_count or 0,
        "receipt_code": tx.receipt_code,
        "paid_at": to_iso(tx.paid_at),
    }


# ----------------------------
# Admin JSON feeds
# ----------------------------
@app.get("/api/admin/callbacks")
async def api_admin_callbacks(
    limit: int = 100,
    journal: CallbackJournal = Depends(callback_journal),
):
    limit = max(1, min(limit, 500))
    total, items = await journal.get_recent(limit=limit)
    return {"items": items, "total": total, "limit": limit}


@app.get("/api/admin/notifications")
async def api_admin_notifications(
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
    database: Database = Depends(get_database),
):
    async with database.gated():
        async with db.begin():
            rows = await notifications.recent(db, max(1, min(limit, 200)))
    return {"items": [{
        "id": n.id,
        "type": n.type,
        "message": n.message,
        "link": n.link,
        "target_roles": n.target_roles,
        "target_users": n.target_users,
        "created_at": to_iso(n.created_at),
    } for n in rows]}


@app.get("/api/timings")
async def api_timings():
    return {"items": timings.summary()}


@app.get("/healthz")
async def healthz(
    db: AsyncSession = Depends(get_db),
    database: Database = Depends(get_database),
):
    async with database.gated():
        await db.execute(text("SELECT 1"))
    return {"ok": True}
