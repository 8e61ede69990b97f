import os
from decimal import Decimal

BOOKING_DB = os.getenv("BOOKING_DB")
REDIS_URL = os.getenv("REDIS_URL")
RABBIT_URL = os.getenv("RABBIT_URL")
PAYMENT_GATEWAY_URL = os.getenv("PAYMENT_GATEWAY_URL")

JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM") or "HS256"

PLATFORM_FEE_RATE = Decimal(os.getenv("PLATFORM_FEE_RATE") or "0.30")
ADMIN_NOTIFY_TARGET = os.getenv("ADMIN_NOTIFY_TARGET") or "ops"

STALE_TRANSACTION_MINUTES = int(os.getenv("STALE_TRANSACTION_MINUTES") or "30")
TASK_POLL_SECONDS = float(os.getenv("TASK_POLL_SECONDS") or "2")
SETTLE_DELAY_SECONDS = float(os.getenv("SETTLE_DELAY_SECONDS") or "5")
PAYOUT_DELAY_SECONDS = float(os.getenv("PAYOUT_DELAY_SECONDS") or str(24 * 3600))

LOG_LEVEL = os.getenv("LOG_LEVEL") or "INFO"
