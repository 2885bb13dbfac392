import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

BACKEND_DIR = Path(__file__).resolve().parent.parent


def _int(name: str, default: int) -> int:
    return int(os.getenv(name) or default)


def _float(name: str, default: float) -> float:
    return float(os.getenv(name) or default)


class Settings(BaseModel):
    PORT: int = _int("PORT", 5000)
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    # Forwarding target; forwarding is skipped when empty
    OWNER_ADDRESS: str = os.getenv("OWNER_ADDRESS", "")

    # Explorer used to detect incoming payments
    TRONSCAN_API_URL: str = os.getenv("TRONSCAN_API_URL", "https://apilist.tronscanapi.com/api/transaction")
    TRONSCAN_API_KEY: str = os.getenv("TRONSCAN_API_KEY", "")
    TRONSCAN_TX_LIMIT: int = _int("TRONSCAN_TX_LIMIT", 50)

    # Full node used to broadcast sweeps
    TRONGRID_API_URL: str = os.getenv("TRONGRID_API_URL", "https://api.trongrid.io")
    TRONGRID_API_KEY: str = os.getenv("TRONGRID_API_KEY", "")

    # Price oracle: live fetch -> cache -> fallback constant
    PRICE_PRIMARY_URL: str = os.getenv(
        "PRICE_PRIMARY_URL", "https://api.coingecko.com/api/v3/simple/price?ids=tron&vs_currencies=usd"
    )
    PRICE_SECONDARY_URL: str = os.getenv(
        "PRICE_SECONDARY_URL", "https://min-api.cryptocompare.com/data/price?fsym=TRX&tsyms=USD"
    )
    PRICE_CACHE_SECONDS: int = _int("PRICE_CACHE_SECONDS", 300)
    PRICE_FALLBACK_USD: float = _float("PRICE_FALLBACK_USD", 0.12)

    DOWNLOAD_WINDOW_MINUTES: int = _int("DOWNLOAD_WINDOW_MINUTES", 30)
    FORWARD_FEE_BUFFER_SUN: int = _int("FORWARD_FEE_BUFFER_SUN", 1_000_000)
    # Automatic sweep attempts per order before it is left for a manual sweep
    FORWARD_MAX_ATTEMPTS: int = _int("FORWARD_MAX_ATTEMPTS", 5)

    FILES_DIR: str = os.getenv("FILES_DIR", str(BACKEND_DIR / "files"))
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    SMTP_HOST: str = os.getenv("SMTP_HOST", "")
    SMTP_PORT: int = _int("SMTP_PORT", 465)
    SMTP_USER: str = os.getenv("SMTP_USER", "")
    SMTP_PASS: str = os.getenv("SMTP_PASS", "")
    SMTP_FROM: str = os.getenv("SMTP_FROM", "")
    PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:5000")

    REAPER_INTERVAL_SECONDS: int = _int("REAPER_INTERVAL_SECONDS", 0)
    ORDER_ABANDON_HOURS: int = _int("ORDER_ABANDON_HOURS", 24)
    PAID_RETENTION_HOURS: int = _int("PAID_RETENTION_HOURS", 24)


@lru_cache
def get_settings() -> Settings:
    return Settings()
