import time
import re
import uuid
from datetime import datetime, timezone
import hmac
from typing import Any, Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and _EMAIL.match(email.strip()) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def new_id() -> str:
    return uuid.uuid4().hex


def new_ticket_code() -> str:
    # scannable code printed into the ticket QR
    return f"TCK-{uuid.uuid4().hex[:16].upper()}"


def parse_mpesa_timestamp(value: Any) -> Optional[float]:
    """Daraja sends TransactionDate as a number like 20240518143005
    (YYYYMMDDHHMMSS, East Africa Time). Returns epoch seconds or None."""
    if value is None:
        return None
    raw = str(value).strip()
    if not re.fullmatch(r"\d{14}", raw):
        return None
    try:
        dt = datetime.strptime(raw, "%Y%m%d%H%M%S")
    except ValueError:
        return None
    # EAT is UTC+3 all year
    return dt.replace(tzinfo=timezone.utc).timestamp() - 3 * 3600
