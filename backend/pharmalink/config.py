import os

# Values are read once at import time. main.py calls load_dotenv() before any
# pharmalink module is imported so a local .env file is honoured.

MONGODB_URI = os.getenv("MONGODB_URI", "mongodb://localhost:27017/pharmalink")

SECRET_KEY = os.getenv("SECRET_KEY", "testing_secret_key_for_development_only")
ALGORITHM = "HS256"

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")]
ADMIN_EMAILS = [
    email.strip().lower()
    for email in os.getenv("ADMIN_EMAILS", "admin@localpill.com").split(",")
    if email.strip()
]

# Matching engine
BROADCAST_RADIUS_KM = float(os.getenv("BROADCAST_RADIUS_KM", "2"))
REQUEST_TTL_MINUTES = int(os.getenv("REQUEST_TTL_MINUTES", "60"))
EXPIRY_SWEEP_INTERVAL_SECONDS = float(os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", "60"))
LIVE_QUERY_INTERVAL_SECONDS = float(os.getenv("LIVE_QUERY_INTERVAL_SECONDS", "3"))
CHAT_GAP_TIMEOUT_SECONDS = float(os.getenv("CHAT_GAP_TIMEOUT_SECONDS", "5"))
CUSTOMER_RECENT_REQUESTS_LIMIT = 20

# Storage retry policy for TransientStorageError
STORAGE_RETRY_ATTEMPTS = int(os.getenv("STORAGE_RETRY_ATTEMPTS", "3"))
STORAGE_RETRY_BASE_DELAY = float(os.getenv("STORAGE_RETRY_BASE_DELAY", "0.2"))

# Blob store
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Per-IP rate limiting. Redis is used when REDIS_URL is set.
RATE_LIMIT = int(os.getenv("RATE_LIMIT", "240"))
RATE_LIMIT_WINDOW = int(os.getenv("RATE_LIMIT_WINDOW", "60"))
REDIS_URL = os.getenv("REDIS_URL") or None
DISABLE_RATE_LIMIT = os.getenv("DISABLE_RATE_LIMIT", "0") == "1"
