import os
from dataclasses import dataclass

# =========================
# ENV
# =========================
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
WEBHOOK_URL = os.getenv("WEBHOOK_URL", "").strip().rstrip("/")
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "").strip()
DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
CATALOG_XLSX = os.getenv("CATALOG_XLSX", "").strip()
ORDERS_XLSX = os.getenv("ORDERS_XLSX", "").strip()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def parse_bool(raw, default: bool) -> bool:
    if raw is None:
        return default
    raw = raw.strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on", "si", "sí")


def parse_int(raw, default: int) -> int:
    try:
        return int((raw or "").strip())
    except ValueError:
        return default


def parse_float(raw, default: float) -> float:
    try:
        return float((raw or "").strip().replace(",", "."))
    except ValueError:
        return default


@dataclass(frozen=True)
class EngineOptions:
    """Dialogue policy knobs. ``quantity_max=None`` means no upper bound."""

    quantity_max: int | None = 50
    keep_client_after_checkout: bool = True
    zero_quantity_removes: bool = False
    search_limit: int = 10
    min_search_length: int = 2


@dataclass(frozen=True)
class StoreOptions:
    pricing_mode: str = "tiers"
    order_id_prefix: str = "PED"
    retries: int = 3
    retry_delay: float = 0.5
    use_sample_catalog: bool = True
    session_idle_seconds: int = 0


def load_engine_options() -> EngineOptions:
    qmax = parse_int(os.getenv("QUANTITY_MAX"), 50)
    return EngineOptions(
        quantity_max=qmax if qmax > 0 else None,
        keep_client_after_checkout=parse_bool(os.getenv("KEEP_CLIENT_AFTER_CHECKOUT"), True),
        zero_quantity_removes=parse_bool(os.getenv("ZERO_QUANTITY_REMOVES"), False),
        search_limit=max(parse_int(os.getenv("SEARCH_LIMIT"), 10), 1),
    )


def load_store_options() -> StoreOptions:
    mode = (os.getenv("PRICING_MODE") or "tiers").strip().lower()
    if mode not in ("tiers", "multiplier"):
        raise RuntimeError(f"PRICING_MODE must be 'tiers' or 'multiplier', got {mode!r}")
    return StoreOptions(
        pricing_mode=mode,
        order_id_prefix=(os.getenv("ORDER_ID_PREFIX") or "PED").strip() or "PED",
        retries=max(parse_int(os.getenv("UPSTREAM_RETRIES"), 3), 1),
        retry_delay=max(parse_float(os.getenv("UPSTREAM_RETRY_DELAY"), 0.5), 0.0),
        use_sample_catalog=parse_bool(os.getenv("USE_SAMPLE_CATALOG"), True),
        session_idle_seconds=max(parse_int(os.getenv("SESSION_IDLE_SECONDS"), 0), 0),
    )
