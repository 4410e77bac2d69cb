import os
from datetime import timedelta
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def payment_provider() -> str:
    return os.getenv("PAYMENT_PROVIDER", "midtrans").strip().lower()


def intent_expiry() -> timedelta:
    # DOKU checkout uses a 60 minute payment_due_date
    return timedelta(minutes=int(os.getenv("INTENT_EXPIRY_MINUTES", "60")))


def finalize_max_attempts() -> int:
    return int(os.getenv("FINALIZE_MAX_ATTEMPTS", "5"))


def log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").upper()


def public_base_url() -> str:
    return os.getenv("PUBLIC_BASE_URL", "").rstrip("/")


def database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")
    return url


def jwt_secret() -> str | None:
    return os.getenv("JWT_SECRET")


def finalize_lease() -> timedelta:
    # a running finalization older than this is assumed dead and may be retried
    return timedelta(seconds=int(os.getenv("FINALIZE_LEASE_SECONDS", "120")))
