"""
PaymentReconciler: applies one Daraja STK callback to the stored purchase
state, exactly once.

Flow per callback:
  1) locate the Transaction by CheckoutRequestID (plain read)
  2) open one database transaction and, as its first statement, claim the
     Transaction's terminal status with a conditional UPDATE; losing the
     claim means another delivery already got there
  3) re-read the owning Order / MerchOrder under the same transaction and
     apply the compound transition (tickets, counters, stock)
  4) commit, then run the slow side effects (e-mail, in-app notifications)

Any exception inside (2)-(3) rolls everything back, leaving the Transaction
pending so a redelivery can try again.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import AlreadyProcessed, ReconcileFault
from .helpers import now_ts, parse_mpesa_timestamp
from .infra.sql import Database
from .infra.timings import timeit
from .model import inventory, notifications, orders, tickets, transactions
from .model.db import MerchOrder, Order, Transaction
from .mpesa import StkCallback
from .notify import NotificationSink, TicketSummary

logger = logging.getLogger(__name__)

# Outcome.status values
R_COMPLETED = "completed"
R_FAILED = "failed"
R_DUPLICATE = "duplicate"
R_NOT_FOUND = "not_found"
R_ORPHANED = "orphaned"

DEFAULT_LISTING_NAME = "Your Booking"


@dataclass
class TicketConfirmation:
    buyer_email: str
    buyer_name: str
    order_id: str
    listing_name: str
    tickets: List[TicketSummary]


@dataclass
class Notice:
    type: str
    message: str
    link: str
    target_roles: List[str]
    target_users: List[str] = field(default_factory=list)


@dataclass
class Outcome:
    status: str
    result_desc: str
    checkout_request_id: str
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    kind: Optional[str] = None  # order | merch
    tickets_issued: int = 0
    confirmation: Optional[TicketConfirmation] = None
    notices: List[Notice] = field(default_factory=list)

    @property
    def has_side_effects(self) -> bool:
        return self.confirmation is not None or bool(self.notices)


class PaymentReconciler:

    def __init__(
        self,
        database: Database,
        sink: NotificationSink,
        *,
        ticketed_listing_types: FrozenSet[str] = frozenset({"event", "tour"}),
    ) -> None:
        self.database = database
        self.sink = sink
        self.ticketed_listing_types = ticketed_listing_types

    async def handle(self, cb: StkCallback) -> Outcome:
        ref = cb.checkout_request_id

        async with timeit("tx.lookup"):
            tx = await self._lookup(ref)
        if tx is None:
            # stale/test callback or purged records: erroring would only
            # make Daraja retry something that can never succeed
            logger.warning(
                "Transaction not found for CheckoutRequestID %s; "
                "acknowledging", ref,
            )
            return Outcome(R_NOT_FOUND, "Accepted", ref)

        if tx.status in transactions.TERMINAL:
            logger.info("Transaction %s already %s, ignoring callback %s",
                        tx.id, tx.status, ref)
            return self._duplicate(tx, ref)

        try:
            if cb.succeeded:
                async with timeit("reconcile.success"):
                    outcome = await self._apply_success(tx, cb)
            else:
                async with timeit("reconcile.failure"):
                    outcome = await self._apply_failure(tx, cb)
        except AlreadyProcessed as e:
            logger.info("Idempotency gate: %s; ignoring callback %s",
                        e.reason, ref)
            return self._duplicate(tx, ref)
        except ReconcileFault as e:
            logger.error("Rolled back callback %s for transaction %s: %s",
                         ref, tx.id, e)
            raise

        logger.info("Processed callback %s for transaction %s: %s",
                    ref, tx.id, outcome.status)
        return outcome

    def _duplicate(self, tx: Transaction, ref: str) -> Outcome:
        return Outcome(R_DUPLICATE, "Already processed", ref,
                       transaction_id=tx.id, order_id=tx.order_id)

    async def _lookup(self, ref: str) -> Optional[Transaction]:
        async with self.database.gated():
            async with self.database.SessionAsync() as db:
                async with db.begin():
                    return await transactions.find_by_checkout_ref(db, ref)

    # ------------------------------------------------------------------
    # success path (ResultCode 0)
    # ------------------------------------------------------------------
    async def _apply_success(self, tx: Transaction, cb: StkCallback) -> Outcome:
        async with self.database.gated():
            async with self.database.SessionAsync() as db:
                async with db.begin():
                    claimed = await transactions.claim_completed(
                        db, tx.id,
                        receipt_code=cb.receipt_code,
                        provider_transaction_date=cb.transaction_date,
                        paid_at=(parse_mpesa_timestamp(cb.transaction_date)
                                 or now_ts()),
                        payer_phone=cb.payer_phone,
                        callback_data=cb.raw,
                    )
                    if not claimed:
                        raise AlreadyProcessed(
                            f"transaction {tx.id} already terminal"
                        )

                    order = await orders.get_order(db, tx.order_id)
                    if order is not None:
                        return await self._complete_order(db, tx, cb, order)

                    merch = await orders.get_merch_order(db, tx.order_id)
                    if merch is not None:
                        return await self._complete_merch(db, tx, cb, merch)

                    # money arrived for a purchase record that is gone:
                    # keep the completed Transaction, a human reconciles
                    logger.critical(
                        "Order or MerchOrder %s not found for completed "
                        "transaction %s (receipt %s); manual reconciliation "
                        "required", tx.order_id, tx.id, cb.receipt_code,
                    )
                    return self._orphaned(tx, cb, "purchase record missing")

    async def _complete_order(
        self, db: AsyncSession, tx: Transaction, cb: StkCallback, order: Order
    ) -> Outcome:
        if order.status == orders.O_COMPLETED:
            raise AlreadyProcessed(f"order {order.id} already completed")
        if order.status != orders.O_PENDING:
            logger.critical(
                "Payment %s received for order %s in status %r; order left "
                "unchanged, manual reconciliation required",
                cb.receipt_code, order.id, order.status,
            )
            return self._orphaned(
                tx, cb, f"order {order.id} is {order.status}"
            )
        if not await orders.set_order_status(
            db, order.id, expect=orders.O_PENDING, status=orders.O_COMPLETED
        ):
            raise AlreadyProcessed(f"order {order.id} changed concurrently")

        listing = await orders.get_listing(db, order.listing_id)
        if listing is not None:
            await orders.add_listing_revenue(db, listing.id, order.total)
        if order.user_id:
            await orders.add_user_purchases(db, order.user_id, order.total)
        listing_name = listing.name if listing else DEFAULT_LISTING_NAME

        issued = []
        if order.payment_type == orders.PAYMENT_FULL \
                and order.listing_type in self.ticketed_listing_types:
            issued = tickets.issue_for_order(db, order)
            await db.flush()

        if order.promocode_id:
            await orders.record_promocode_use(
                db, order.promocode_id, order.total
            )
        if order.tracking_link_id:
            await orders.record_tracking_purchase(
                db, order.tracking_link_id, order.promocode_id
            )

        confirmation = None
        if issued:
            confirmation = TicketConfirmation(
                buyer_email=order.user_email,
                buyer_name=order.user_name,
                order_id=order.id,
                listing_name=listing_name,
                tickets=[TicketSummary(t.ticket_type, t.qr_code)
                         for t in issued],
            )
        organizer = order.organizer_id or (listing and listing.organizer_id)
        notice = Notice(
            type=notifications.N_NEW_ORDER,
            message=(f"New order for {listing_name}: "
                     f"KES {order.total:,.2f} ({order.user_name})"),
            link=f"/admin/transactions/{tx.id}",
            target_roles=["admin", "organizer"],
            target_users=[organizer] if organizer else [],
        )
        return Outcome(
            R_COMPLETED, "Accepted", cb.checkout_request_id,
            transaction_id=tx.id, order_id=order.id, kind="order",
            tickets_issued=len(issued), confirmation=confirmation,
            notices=[notice],
        )

    async def _complete_merch(
        self, db: AsyncSession, tx: Transaction, cb: StkCallback,
        merch: MerchOrder,
    ) -> Outcome:
        if merch.status != orders.M_PENDING:
            raise AlreadyProcessed(
                f"merch order {merch.id} already {merch.status}"
            )
        # raises StockInsufficient / ProductMissing -> whole unit rolls back
        await inventory.decrement_for_items(db, merch.items or [])
        if not await orders.set_merch_status(
            db, merch.id, expect=orders.M_PENDING,
            status=orders.M_AWAITING_PICKUP,
        ):
            raise AlreadyProcessed(f"merch order {merch.id} changed "
                                   "concurrently")
        return Outcome(
            R_COMPLETED, "Accepted", cb.checkout_request_id,
            transaction_id=tx.id, order_id=merch.id, kind="merch",
        )

    def _orphaned(self, tx: Transaction, cb: StkCallback, why: str) -> Outcome:
        notice = Notice(
            type=notifications.N_PAYMENT_INTEGRITY,
            message=(f"Payment {cb.receipt_code or '?'} for transaction "
                     f"{tx.id} needs manual reconciliation: {why}"),
            link=f"/admin/transactions/{tx.id}",
            target_roles=["admin"],
        )
        return Outcome(
            R_ORPHANED, "Accepted (purchase record missing)",
            cb.checkout_request_id, transaction_id=tx.id,
            order_id=tx.order_id, notices=[notice],
        )

    # ------------------------------------------------------------------
    # failure path (ResultCode != 0)
    # ------------------------------------------------------------------
    async def _apply_failure(self, tx: Transaction, cb: StkCallback) -> Outcome:
        async with self.database.gated():
            async with self.database.SessionAsync() as db:
                async with db.begin():
                    claimed = await transactions.claim_failed(
                        db, tx.id,
                        fail_reason=cb.result_desc,
                        callback_data=cb.raw,
                    )
                    if not claimed:
                        raise AlreadyProcessed(
                            f"transaction {tx.id} already terminal"
                        )
                    logger.warning(
                        "Payment failed for %s (ResultCode %s): %s",
                        cb.checkout_request_id, cb.result_code,
                        cb.result_desc,
                    )

                    kind = None
                    order = await orders.get_order(db, tx.order_id)
                    if order is not None:
                        kind = "order"
                        if order.status == orders.O_COMPLETED:
                            raise AlreadyProcessed(
                                f"order {order.id} already completed"
                            )
                        if order.status == orders.O_PENDING:
                            await orders.set_order_status(
                                db, order.id, expect=orders.O_PENDING,
                                status=orders.O_FAILED,
                            )
                    else:
                        merch = await orders.get_merch_order(db, tx.order_id)
                        if merch is not None:
                            kind = "merch"
                            if merch.status != orders.M_PENDING:
                                raise AlreadyProcessed(
                                    f"merch order {merch.id} already "
                                    f"{merch.status}"
                                )
                            # stock is only taken on success, nothing to
                            # give back here
                            await orders.set_merch_status(
                                db, merch.id, expect=orders.M_PENDING,
                                status=orders.M_FAILED,
                            )
                        else:
                            logger.warning(
                                "Failed payment %s references unknown "
                                "purchase record %s",
                                cb.checkout_request_id, tx.order_id,
                            )

        return Outcome(
            R_FAILED, "Accepted", cb.checkout_request_id,
            transaction_id=tx.id, order_id=tx.order_id, kind=kind,
        )

    # ------------------------------------------------------------------
    # post-commit side effects
    # ------------------------------------------------------------------
    async def run_side_effects(self, outcome: Outcome) -> None:
        """Never raises: the payment is already durably recorded."""
        c = outcome.confirmation
        if c is not None:
            async with timeit("notify.email"):
                try:
                    await self.sink.send_ticket_email(
                        c.buyer_email, c.buyer_name, c.order_id,
                        c.listing_name, c.tickets,
                    )
                except Exception:
                    logger.exception(
                        "Ticket email for order %s failed", c.order_id
                    )

        if outcome.notices:
            try:
                async with self.database.gated():
                    async with self.database.SessionAsync() as db:
                        async with db.begin():
                            for n in outcome.notices:
                                notifications.create(
                                    db, type=n.type, message=n.message,
                                    link=n.link,
                                    target_roles=n.target_roles,
                                    target_users=n.target_users,
                                )
            except SQLAlchemyError:
                logger.exception(
                    "Could not store notifications for transaction %s",
                    outcome.transaction_id,
                )
