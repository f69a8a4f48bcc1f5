# backend/config.py
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Database URL - use SQLite for easy local development
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./consultant_booking.db")

# Auth
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_TOKENINFO_URL = os.getenv("GOOGLE_TOKENINFO_URL", "https://oauth2.googleapis.com/tokeninfo")
# Accounts promoted to admin on login; admins assign every other role
ADMIN_EMAILS = {
    email.strip().lower()
    for email in os.getenv("ADMIN_EMAILS", "").split(",")
    if email.strip()
}

# Redis response cache
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
CACHE_ENABLED = _env_bool("CACHE_ENABLED", True)
CACHE_TTL_CONSULTANTS = 300  # 5 minutes
CACHE_TTL_SERVICES = 600  # 10 minutes

# Uploads
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
MAX_FILES_PER_REQUEST = int(os.getenv("MAX_FILES_PER_REQUEST", "5"))

# Booking rules
REQUIRE_PAYMENT_FOR_COMPLETION = _env_bool("REQUIRE_PAYMENT_FOR_COMPLETION", False)
REQUIRE_PUBLISHED_SLOTS = _env_bool("REQUIRE_PUBLISHED_SLOTS", False)
# Zone in which booking dates and times are expressed
BOOKING_TIMEZONE = os.getenv("BOOKING_TIMEZONE", "UTC")

# Payments
PAYMENT_API_URL = os.getenv("PAYMENT_API_URL", "http://localhost:9000/payment_intents")
PAYMENT_API_KEY = os.getenv("PAYMENT_API_KEY")
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", "")

# Scheduler
SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", True)
NOTIFICATION_FLUSH_SECONDS = int(os.getenv("NOTIFICATION_FLUSH_SECONDS", "5"))
REMINDER_LOOKAHEAD_HOURS = int(os.getenv("REMINDER_LOOKAHEAD_HOURS", "24"))

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:8080").split(",")
    if origin.strip()
]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
