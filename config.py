import os
import sys
import logging

# Environment
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "pharmacy")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_REFRESH_SECRET = os.getenv("JWT_REFRESH_SECRET", "dev-refresh-secret-change-me")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
JWT_REFRESH_EXPIRES_DAYS = int(os.getenv("JWT_REFRESH_EXPIRES_DAYS", "7"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() not in ("0", "false", "no")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", "8000"))

# Business constants
MAX_LOGIN_ATTEMPTS = 5
LOCK_MINUTES = 30
RESET_TOKEN_TTL_MIN = 60
DEFAULT_LOW_STOCK_THRESHOLD = 5
SHIPPING_DAYS_ON_STATUS = 7
SHIPPING_DAYS_ON_ASSIGN = 2

RATE_LIMIT_WINDOW_SECONDS = 15 * 60
RATE_LIMITS = {
    "auth": 100,
    "cart": 100,
    "orders": 50,
    "payments": 20,
    "promotions": 50,
    "delivery": 100,
}

log = logging.getLogger("shop")


def setup_logging():
    """Configures the application logger."""
    log.setLevel(LOG_LEVEL)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - [%(levelname)-7s] - %(message)s"
    ))
    if not log.hasHandlers():
        log.addHandler(handler)
    log.info("Logging configured (level=%s)", LOG_LEVEL)
