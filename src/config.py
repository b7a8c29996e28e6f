import os
import time
from pathlib import Path
from dataclasses import dataclass

from dotenv import load_dotenv

# Load .env from the working directory (where the bot is started)
env_path = Path.cwd() / ".env"
load_dotenv(env_path)


def _set_process_timezone() -> None:
    """Apply TZ from env so date.today() matches the billing calendar."""
    tz = os.getenv("BOT_TIMEZONE") or "UTC"
    if tz:
        os.environ["TZ"] = tz
        if hasattr(time, "tzset"):
            try:
                time.tzset()
            except Exception:
                # tzset is unavailable on some platforms
                pass


_set_process_timezone()


@dataclass
class Config:
    token: str
    support_handle: str  # Telegram handle shown on "Contact support"
    private_channel_id: str  # Default channel for invites when a plan has none
    fiat_checkout_url: str  # External card checkout page
    # HTTP API (webhook + admin endpoints)
    api_port: int
    admin_api_key: str
    public_base_url: str  # Used to build the provider callback URL
    # Payment provider
    payment_provider: str
    nowpayments_api_key: str
    nowpayments_api_url: str
    nowpayments_ipn_secret: str
    provider_timeout_sec: int
    # Conversation sessions
    session_ttl_min: int
    session_redis_url: str
    # A pending order younger than this blocks a second checkout for the same plan
    pending_order_window_min: int
    # Background jobs
    sweep_interval_sec: int
    pending_poll_interval_sec: int


def _clean(value: str | None) -> str:
    return (value or "").strip().strip('"').strip("'")


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean env value."""
    if value is None:
        return default
    value = _clean(value).lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    return default


def parse_int(value: str | None, default: int) -> int:
    """Parse an int env value, falling back to default on empty/invalid input."""
    cleaned = _clean(value)
    if not cleaned:
        return default
    try:
        return int(cleaned)
    except ValueError:
        return default


CFG = Config(
    token=_clean(os.getenv("BOT_TOKEN")),
    support_handle=_clean(os.getenv("SUPPORT_HANDLE", "")).lstrip("@"),
    private_channel_id=_clean(os.getenv("PRIVATE_CHANNEL_ID", "")),
    fiat_checkout_url=_clean(os.getenv("FIAT_CHECKOUT_URL", "")),
    api_port=parse_int(os.getenv("API_PORT"), 8080),
    admin_api_key=_clean(os.getenv("ADMIN_API_KEY", "")),
    public_base_url=_clean(os.getenv("PUBLIC_BASE_URL", "")).rstrip("/"),
    payment_provider=_clean(os.getenv("PAYMENT_PROVIDER", "nowpayments")).lower(),
    nowpayments_api_key=_clean(os.getenv("NOWPAYMENTS_API_KEY", "")),
    nowpayments_api_url=(_clean(os.getenv("NOWPAYMENTS_API_URL")) or "https://api.nowpayments.io/v1").rstrip("/"),
    nowpayments_ipn_secret=_clean(os.getenv("NOWPAYMENTS_IPN_SECRET", "")),
    provider_timeout_sec=parse_int(os.getenv("PROVIDER_TIMEOUT_SEC"), 15),
    session_ttl_min=parse_int(os.getenv("SESSION_TTL_MIN"), 180),
    session_redis_url=_clean(os.getenv("SESSION_REDIS_URL", "")),
    pending_order_window_min=parse_int(os.getenv("PENDING_ORDER_WINDOW_MIN"), 30),
    sweep_interval_sec=parse_int(os.getenv("SWEEP_INTERVAL_SEC"), 3600),
    pending_poll_interval_sec=parse_int(os.getenv("PENDING_POLL_INTERVAL_SEC"), 300),
)

# Database path: from env or relative to the working directory
DB_PATH = os.getenv("DB_PATH", str(Path.cwd() / "checkout.db"))


def is_bot_configured() -> bool:
    """Bot runtime is enabled only with a non-empty token."""
    return bool(CFG.token)


def payment_callback_url() -> str | None:
    """Public URL the provider pushes status notifications to."""
    if not CFG.public_base_url:
        return None
    return f"{CFG.public_base_url}/api/v1/payments/webhook"
