import os

db_url = os.environ.get("DB_URL", "sqlite://:memory:")
users_ms_url = os.environ.get("USERS_MS_URL", "http://localhost:8000")
notifications_ms_url = os.environ.get("NOTIFICATIONS_MS_URL", "http://localhost:8004")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

GENERATE_SCHEMAS = os.environ.get("GENERATE_SCHEMAS", "true").lower() == "true"

# Salon wall clock used for appointment date/time fields
SALON_TIMEZONE = os.environ.get("SALON_TIMEZONE", "UTC")

# Anti-flicker window: every instance must stay SERVED this long before commissions apply
COMMISSION_DEBOUNCE_SECONDS = int(os.environ.get("COMMISSION_DEBOUNCE_SECONDS", "60"))

# Confirmation notifications are only sent for appointments further out than this
CONFIRMATION_LEAD_SECONDS = int(os.environ.get("CONFIRMATION_LEAD_SECONDS", "3600"))

DAY_VIEW_TTL = int(os.environ.get("DAY_VIEW_TTL", "30"))
BOOKING_CHANGES_CHANNEL = os.environ.get("BOOKING_CHANGES_CHANNEL", "booking_changes")
