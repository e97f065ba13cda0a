"""
Runtime settings for the marketplace backend.

Values come from the process environment (a local .env file is loaded first
when present). Every setting has a development default so the API boots
against a local MongoDB without extra setup.
"""
import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

PAYMENT_METHODS = ("bank_transfer", "credit_card", "e_wallet", "cod")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "marketplace"
    # Multi-document transactions need a replica set. Turning them off falls
    # back to the compensation log in database.UnitOfWork, which is neither
    # isolated nor crash-safe; use it only against a standalone dev server.
    mongo_transactions: bool = True
    admin_key: str = "demo-admin-key"
    port: int = 8000
    log_level: str = "INFO"
    payment_intent_ttl_minutes: int = Field(30, ge=1)
    order_pending_ttl_minutes: int = Field(1440, ge=1)
    reserve_stock_on_order: bool = True
    sweep_interval_seconds: float = Field(60.0, gt=0)
    category_refresh_interval_seconds: float = Field(1800.0, gt=0)


def load_settings() -> Settings:
    load_dotenv()
    return Settings(
        database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
        database_name=os.getenv("DATABASE_NAME", "marketplace"),
        mongo_transactions=_env_bool("MONGO_TRANSACTIONS", True),
        admin_key=os.getenv("ADMIN_KEY", "demo-admin-key"),
        port=int(os.getenv("PORT", 8000)),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        payment_intent_ttl_minutes=int(os.getenv("PAYMENT_INTENT_TTL_MINUTES", 30)),
        order_pending_ttl_minutes=int(os.getenv("ORDER_PENDING_TTL_MINUTES", 1440)),
        reserve_stock_on_order=_env_bool("RESERVE_STOCK_ON_ORDER", True),
        sweep_interval_seconds=float(os.getenv("SWEEP_INTERVAL_SECONDS", 60)),
        category_refresh_interval_seconds=float(os.getenv("CATEGORY_REFRESH_INTERVAL_SECONDS", 1800)),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
