from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import orjson

from .errors import CallbackAuthError, MalformedCallback
from .helpers import ct_equal

logger = logging.getLogger(__name__)

# Daraja CallbackMetadata item names
META_RECEIPT = "MpesaReceiptNumber"
META_TRANSACTION_DATE = "TransactionDate"
META_PHONE = "PhoneNumber"
META_AMOUNT = "Amount"


@dataclass(frozen=True)
class MetadataItem:
    name: str
    value: Any = None


@dataclass
class StkCallback:
    checkout_request_id: str
    result_code: int
    result_desc: str
    metadata: List[MetadataItem] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    @property
    def receipt_code(self) -> Optional[str]:
        v = metadata_value(self.metadata, META_RECEIPT)
        return None if v is None else str(v)

    @property
    def transaction_date(self) -> Optional[str]:
        v = metadata_value(self.metadata, META_TRANSACTION_DATE)
        return None if v is None else str(v)

    @property
    def payer_phone(self) -> Optional[str]:
        v = metadata_value(self.metadata, META_PHONE)
        return None if v is None else str(v)


def metadata_value(items: List[MetadataItem], key: str) -> Optional[Any]:
    """First value named `key`, or None when the item is absent.

    Daraja omits items freely (e.g. no PhoneNumber on some paybill
    callbacks) so every field read through here is best-effort.
    """
    for item in items:
        if item.name == key:
            return item.value
    return None


# ----------------------------
# Callback Adapter Interface
# ----------------------------
class CallbackAdapter(ABC):
    @abstractmethod
    def verify_secret(self, secret: str) -> None: ...

    @abstractmethod
    def parse_callback(self, payload: bytes) -> StkCallback: ...


# ----------------------------
# Daraja STK push implementation
# ----------------------------
class Daraja(CallbackAdapter):

    def __init__(self, callback_secret: str) -> None:
        self.callback_secret = callback_secret

    def verify_secret(self, secret: str) -> None:
        if not self.callback_secret:
            logger.error(
                "MPESA_CALLBACK_SECRET is not configured, rejecting callback"
            )
            raise CallbackAuthError("callback secret not configured")
        if not secret or not ct_equal(secret, self.callback_secret):
            logger.error("Invalid M-Pesa callback secret received in URL")
            raise CallbackAuthError("invalid callback secret")

    def parse_callback(self, payload: bytes) -> StkCallback:
        try:
            body = orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise MalformedCallback("callback body is not JSON")

        stk = None
        if isinstance(body, dict) and isinstance(body.get("Body"), dict):
            stk = body["Body"].get("stkCallback")
        if not isinstance(stk, dict):
            raise MalformedCallback("callback has no Body.stkCallback")

        checkout_request_id = stk.get("CheckoutRequestID")
        if not isinstance(checkout_request_id, str) \
                or not checkout_request_id.strip():
            raise MalformedCallback("callback missing CheckoutRequestID")

        result_code = stk.get("ResultCode")
        # Daraja sends a number, some proxies re-encode it as a string
        if isinstance(result_code, str) and result_code.strip().isdigit():
            result_code = int(result_code.strip())
        if isinstance(result_code, bool) or not isinstance(result_code, int):
            raise MalformedCallback("callback missing numeric ResultCode")

        return StkCallback(
            checkout_request_id=checkout_request_id.strip(),
            result_code=result_code,
            result_desc=str(stk.get("ResultDesc") or ""),
            metadata=_metadata_items(stk.get("CallbackMetadata")),
            raw=stk,
        )


def _metadata_items(meta: Any) -> List[MetadataItem]:
    if not isinstance(meta, dict):
        return []
    items = meta.get("Item")
    if not isinstance(items, list):
        return []
    out = []
    for it in items:
        if isinstance(it, dict) and isinstance(it.get("Name"), str):
            out.append(MetadataItem(name=it["Name"], value=it.get("Value")))
    return out
