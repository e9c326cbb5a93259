# autopromote/config.py
import os

from dotenv import load_dotenv

# Load .env file (DATABASE_URL, CONFIG_STORE_URL, etc.)
load_dotenv()


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./autopromote.db")

# Aggregation windows
BUCKET_WIDTH_SECONDS = int(os.getenv("BUCKET_WIDTH_SECONDS", "300"))
ALLOWED_LATENESS_SECONDS = int(os.getenv("ALLOWED_LATENESS_SECONDS", "30"))
MAX_DELIVERY_DELAY_SECONDS = int(os.getenv("MAX_DELIVERY_DELAY_SECONDS", "600"))

# Evaluation cadence
EVALUATION_INTERVAL_SECONDS = float(os.getenv("EVALUATION_INTERVAL_SECONDS", "3600"))
EVALUATION_TIMEOUT_SECONDS = float(os.getenv("EVALUATION_TIMEOUT_SECONDS", "30"))
SCHEDULER_ENABLED = _get_bool("SCHEDULER_ENABLED", True)

# Hard error-rate ceiling for variant B, checked before every cycle
SAFETY_ERROR_RATE_CEILING = float(os.getenv("SAFETY_ERROR_RATE_CEILING", "0.05"))

# External configuration store that routes live traffic (empty = local only)
CONFIG_STORE_URL = os.getenv("CONFIG_STORE_URL", "")
SPLIT_DELIVERY_ATTEMPTS = int(os.getenv("SPLIT_DELIVERY_ATTEMPTS", "3"))
SPLIT_DELIVERY_TIMEOUT_SECONDS = float(os.getenv("SPLIT_DELIVERY_TIMEOUT_SECONDS", "10"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Closed 5-minute buckets older than this are rolled up into coarser windows
COMPACT_AFTER_SECONDS = float(os.getenv("COMPACT_AFTER_SECONDS", str(7 * 24 * 3600)))
COMPACT_WINDOW_SECONDS = float(os.getenv("COMPACT_WINDOW_SECONDS", "3600"))
