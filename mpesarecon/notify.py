from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List
import logging
from urllib.parse import quote

import httpx
from jinja2 import Environment, PackageLoader, select_autoescape

from .helpers import is_valid_email

logger = logging.getLogger(__name__)

_templates = Environment(
    loader=PackageLoader("mpesarecon", "templates"),
    autoescape=select_autoescape(["html"]),
)


@dataclass(frozen=True)
class TicketSummary:
    ticket_type: str
    qr_code: str


# ----------------------------
# Notification Sink Interface
# ----------------------------
class NotificationSink(ABC):
    """Best-effort delivery. Implementations log failures and return False;
    they never raise into the payment path."""

    @abstractmethod
    async def send_ticket_email(
        self,
        buyer_email: str,
        buyer_name: str,
        order_id: str,
        listing_name: str,
        tickets: List[TicketSummary],
    ) -> bool: ...


def render_ticket_email(
    *, app_url: str, buyer_name: str, order_id: str, listing_name: str,
    tickets: List[TicketSummary],
) -> str:
    return _templates.get_template("ticket_email.html").render(
        attendee_name=buyer_name,
        order_id=order_id,
        listing_name=listing_name,
        tickets=tickets,
        ticket_center_url=(
            f"{app_url.rstrip('/')}/ticket-center?orderId={quote(order_id)}"
        ),
    )


# ----------------------------
# ZeptoMail implementation
# ----------------------------
class ZeptoMailSink(NotificationSink):

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        url: str,
        api_key: str,
        from_address: str,
        from_name: str,
        app_url: str,
    ) -> None:
        self.http = http
        self.url = url
        self.api_key = api_key
        self.from_address = from_address
        self.from_name = from_name
        self.app_url = app_url

    async def send_ticket_email(
        self,
        buyer_email: str,
        buyer_name: str,
        order_id: str,
        listing_name: str,
        tickets: List[TicketSummary],
    ) -> bool:
        if not self.api_key:
            logger.warning("ZeptoMail not configured, skipping ticket email "
                           "for order %s", order_id)
            return False
        if not is_valid_email(buyer_email):
            logger.warning("Order %s has no usable email address, skipping "
                           "ticket email", order_id)
            return False

        html = render_ticket_email(
            app_url=self.app_url, buyer_name=buyer_name, order_id=order_id,
            listing_name=listing_name, tickets=tickets,
        )
        payload = {
            "from": {"address": self.from_address, "name": self.from_name},
            "to": [{"email_address": {
                "address": buyer_email.strip(), "name": buyer_name,
            }}],
            "subject": f"Your Tickets for {listing_name}",
            "htmlbody": html,
        }
        try:
            r = await self.http.post(
                self.url,
                json=payload,
                headers={"Authorization": f"Zoho-enczapikey {self.api_key}"},
            )
            r.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Failed to send ticket email for order %s: %s",
                         order_id, e)
            return False
        logger.info("Ticket email for order %s sent to %s", order_id,
                    buyer_email)
        return True
