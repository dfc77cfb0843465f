import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./mpesarecon.db")

# Daraja posts to {APP_URL}/api/mpesa-callback/{MPESA_CALLBACK_SECRET}.
# Left unset, every callback is rejected.
MPESA_CALLBACK_SECRET = os.environ.get("MPESA_CALLBACK_SECRET", "")

APP_URL = os.environ.get("APP_URL", "http://localhost:8000")

# listing types whose full-payment orders get admission tickets
TICKETED_LISTING_TYPES = frozenset(
    t.strip().lower()
    for t in os.environ.get("TICKETED_LISTING_TYPES", "event,tour").split(",")
    if t.strip()
)

ZEPTO_MAIL_URL = os.environ.get(
    "ZEPTO_MAIL_URL", "https://api.zeptomail.com/v1.1/email"
)
ZEPTO_MAIL_API_KEY = os.environ.get("ZEPTO_MAIL_API_KEY", "")
MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS", "noreply@example.com")
MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "Tickets")

REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "64"))
JOURNAL_TTL_SECONDS = int(os.getenv("JOURNAL_TTL_SECONDS", str(7 * 24 * 3600)))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
