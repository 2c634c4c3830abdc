import os
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()

# Wall-clock zone that availability templates and exceptions are authored in.
TRAINER_TIMEZONE = ZoneInfo(os.getenv("TRAINER_TIMEZONE", "UTC"))

# Every session is the same length; multi-duration sessions are not supported.
SESSION_DURATION_MINUTES = 60

LATE_CANCELLATION_HOURS = int(os.getenv("LATE_CANCELLATION_HOURS", "24"))
CLIENT_EDIT_CUTOFF_HOURS = int(os.getenv("CLIENT_EDIT_CUTOFF_HOURS", "24"))
BILLING_HORIZON_DAYS = int(os.getenv("BILLING_HORIZON_DAYS", "60"))

SCHEDULER_TOKEN = os.getenv("SCHEDULER_TOKEN")
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")  # fine for local/demo use only
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
