import os

DATABASE_URL = os.getenv("RESERVATION_DB") or "sqlite+aiosqlite:///./reservations.db"

RABBIT_URL = os.getenv("RABBIT_URL")  # optional, events disabled when unset
REDIS_URL = os.getenv("REDIS_URL")  # optional, idempotency keys disabled when unset

EXCHANGE_NAME = "domain_events"

STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS") or "5")
IDEMPOTENCY_TTL_SECONDS = int(os.getenv("IDEMPOTENCY_TTL_SECONDS") or "86400")

DEFAULT_PAGE_SIZE = int(os.getenv("DEFAULT_PAGE_SIZE") or "10")
MAX_PAGE_SIZE = int(os.getenv("MAX_PAGE_SIZE") or "100")

LOG_LEVEL = os.getenv("LOG_LEVEL") or "INFO"
