import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

SITE_NAME = os.environ.get("SITE_NAME", "Account Mall")
SITE_URL = os.environ.get("SITE_URL", "http://localhost:8000").rstrip("/")

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

# bearer secret for the external sweep trigger; unset disables the endpoint
CRON_SECRET = os.environ.get("CRON_SECRET") or None

# three-letter product code, followed by YYYYMMDD and a 5-digit sequence
ORDER_NO_PREFIX = os.environ.get("ORDER_NO_PREFIX", "FAK")

PENDING_ORDER_TIMEOUT_SECONDS = int(
    os.environ.get("PENDING_ORDER_TIMEOUT_SECONDS", "900")
)
PENDING_ORDER_GRACE_SECONDS = int(
    os.environ.get("PENDING_ORDER_GRACE_SECONDS", "60")
)
# 0 = only the external scheduler runs the sweep
SWEEP_INTERVAL_SECONDS = int(os.environ.get("SWEEP_INTERVAL_SECONDS", "0"))

RATE_LIMIT_BACKEND = os.environ.get("RATE_LIMIT_BACKEND", "memory").lower()
REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379")
RATE_LIMIT_WINDOW_SECONDS = int(
    os.environ.get("RATE_LIMIT_WINDOW_SECONDS", "60")
)
ORDER_RATE_LIMIT_POINTS = int(os.environ.get("ORDER_RATE_LIMIT_POINTS", "10"))
ORDER_QUERY_RATE_LIMIT_POINTS = int(
    os.environ.get("ORDER_QUERY_RATE_LIMIT_POINTS", "30")
)
MAX_PENDING_ORDERS_PER_IP = int(
    os.environ.get("MAX_PENDING_ORDERS_PER_IP", "6")
)

RESEND_API_KEY = os.environ.get("RESEND_API_KEY") or None
EMAIL_FROM = os.environ.get(
    "EMAIL_FROM", "Account Mall <onboarding@resend.dev>"
)

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
