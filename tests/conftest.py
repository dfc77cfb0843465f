"""Shared pytest fixtures for the test suite"""
from typing import Any, Dict, List, Optional

import httpx
import orjson
import pytest
import pytest_asyncio

from mpesarecon import config
from mpesarecon.helpers import new_id, now_ts
from mpesarecon.infra.sql import make_database
from mpesarecon.model.db import (
    Base, Listing, MerchOrder, Order, Product, Promocode, TrackingLink,
    Transaction, User,
)
from mpesarecon.model.journal._postgres import create_schema
from mpesarecon.mpesa import Daraja, StkCallback
from mpesarecon.notify import NotificationSink, TicketSummary
from mpesarecon.reconciler import PaymentReconciler

CALLBACK_SECRET = "s3cret-path-token"


class RecordingSink(NotificationSink):
    """Keeps every ticket email instead of sending it."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    async def send_ticket_email(
        self,
        buyer_email: str,
        buyer_name: str,
        order_id: str,
        listing_name: str,
        tickets: List[TicketSummary],
    ) -> bool:
        if self.fail:
            raise RuntimeError("mail provider down")
        self.sent.append({
            "buyer_email": buyer_email,
            "buyer_name": buyer_name,
            "order_id": order_id,
            "listing_name": listing_name,
            "tickets": list(tickets),
        })
        return True


def stk_body(
    ref: str,
    result_code: int = 0,
    result_desc: str = "The service request is processed successfully.",
    receipt: Optional[str] = "SGR7XK2LQ1",
    transaction_date: Optional[int] = 20240518143005,
    phone: Optional[int] = 254712345678,
    amount: float = 1000,
) -> Dict[str, Any]:
    stk: Dict[str, Any] = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": ref,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        items: List[Dict[str, Any]] = [{"Name": "Amount", "Value": amount}]
        if receipt is not None:
            items.append({"Name": "MpesaReceiptNumber", "Value": receipt})
        if transaction_date is not None:
            items.append({"Name": "TransactionDate",
                          "Value": transaction_date})
        if phone is not None:
            items.append({"Name": "PhoneNumber", "Value": phone})
        stk["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": stk}}


def stk_callback(ref: str, **kw) -> StkCallback:
    return Daraja(CALLBACK_SECRET).parse_callback(
        orjson.dumps(stk_body(ref, **kw))
    )


class Seeder:
    """Writes fixture rows the way the checkout flow would leave them."""

    def __init__(self, database) -> None:
        self.database = database

    async def add(self, *rows) -> None:
        async with self.database.SessionAsync() as db:
            async with db.begin():
                db.add_all(rows)

    async def listing(self, listing_type: str = "event",
                      name: str = "Nairobi Jazz Night",
                      organizer_id: str = "org-1") -> Listing:
        row = Listing(id=new_id(), name=name, listing_type=listing_type,
                      organizer_id=organizer_id, total_revenue=0.0)
        await self.add(row)
        return row

    async def order(
        self,
        listing: Listing,
        lines: Optional[List[Dict[str, Any]]] = None,
        *,
        payment_type: str = "full",
        status: str = "pending",
        promocode_id: Optional[str] = None,
        tracking_link_id: Optional[str] = None,
        user_id: Optional[str] = "user-1",
    ) -> Order:
        lines = lines if lines is not None else [
            {"name": "Regular", "quantity": 2, "price": 500.0}
        ]
        total = sum(line["quantity"] * line["price"] for line in lines)
        row = Order(
            id=new_id(),
            user_id=user_id,
            user_email="wanjiku@example.com",
            user_name="Wanjiku Kamau",
            user_phone="0712345678",
            listing_id=listing.id,
            organizer_id=listing.organizer_id,
            listing_type=listing.listing_type,
            payment_type=payment_type,
            tickets=lines,
            subtotal=total,
            total=total,
            promocode_id=promocode_id,
            tracking_link_id=tracking_link_id,
            status=status,
            created_at=now_ts(),
            updated_at=now_ts(),
        )
        await self.add(row)
        return row

    async def user(self, user_id: str = "user-1") -> User:
        row = User(id=user_id, name="Wanjiku Kamau",
                   email="wanjiku@example.com", total_purchases=0.0)
        await self.add(row)
        return row

    async def product(self, stock: int, name: str = "Tour T-Shirt") -> Product:
        row = Product(id=new_id(), name=name, price=1500.0, stock=stock)
        await self.add(row)
        return row

    async def merch_order(self, items: List[Dict[str, Any]],
                          status: str = "pending") -> MerchOrder:
        row = MerchOrder(
            id=new_id(),
            user_name="Otieno Odhiambo",
            user_email="otieno@example.com",
            items=items,
            total=sum(i["quantity"] * i["price"] for i in items),
            status=status,
            confirmation_code="K7QX2M9A",
            created_at=now_ts(),
            updated_at=now_ts(),
        )
        await self.add(row)
        return row

    async def transaction(self, order_id: str, ref: Optional[str] = None,
                          amount: float = 1000.0,
                          created_at: Optional[float] = None) -> Transaction:
        ts = created_at if created_at is not None else now_ts()
        row = Transaction(
            id=new_id(),
            order_id=order_id,
            amount=amount,
            method="mpesa",
            status="pending",
            checkout_request_id=ref or f"ws_CO_{new_id()}",
            retry_count=0,
            created_at=ts,
            updated_at=ts,
        )
        await self.add(row)
        return row

    async def promocode(self) -> Promocode:
        row = Promocode(id=new_id(), code="JAZZ10", usage_count=0,
                        revenue_generated=0.0)
        await self.add(row)
        return row

    async def tracking_link(self, scope: str = "") -> TrackingLink:
        row = TrackingLink(scope=scope, id=new_id(), name="ig-bio",
                           clicks=0, purchases=0)
        await self.add(row)
        return row

    async def get(self, model, *key):
        async with self.database.SessionAsync() as db:
            return await db.get(model, key[0] if len(key) == 1 else key)

    async def all(self, model, *where):
        from sqlalchemy import select
        async with self.database.SessionAsync() as db:
            return list((await db.execute(
                select(model).where(*where)
            )).scalars().all())


@pytest_asyncio.fixture
async def database(tmp_path):
    database = make_database(f"sqlite:///{tmp_path}/recon.db")
    async with database.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await create_schema(conn)
    yield database
    await database.dispose()


@pytest.fixture
def seed(database) -> Seeder:
    return Seeder(database)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def reconciler(database, sink) -> PaymentReconciler:
    return PaymentReconciler(database, sink)


@pytest_asyncio.fixture
async def app_client(tmp_path, monkeypatch):
    """HTTP client against the real app, lifespan included."""
    monkeypatch.setattr(config, "DATABASE_URL",
                        f"sqlite:///{tmp_path}/server.db")
    monkeypatch.setattr(config, "MPESA_CALLBACK_SECRET", CALLBACK_SECRET)
    monkeypatch.setattr(config, "ZEPTO_MAIL_API_KEY", "")

    from mpesarecon.server import app, lifespan

    async with lifespan(app):
        sink = RecordingSink()
        app.state.sink = sink
        app.state.reconciler.sink = sink
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport,
                                     base_url="http://test") as client:
            client.sink = sink
            client.seed = Seeder(app.state.database)
            yield client
