import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

JWT_SECRET = os.getenv("JWT_SECRET")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")

# Single currency; amounts are stored in major units, charged in cents
CURRENCY = os.getenv("CURRENCY", "usd")
MINIMUM_CHARGE_CENTS = int(os.getenv("MINIMUM_CHARGE_CENTS", "50"))

GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))
GATEWAY_MAX_NETWORK_RETRIES = int(os.getenv("GATEWAY_MAX_NETWORK_RETRIES", "2"))

CODE_ALLOCATION_ATTEMPTS = int(os.getenv("CODE_ALLOCATION_ATTEMPTS", "10"))
REDEEM_MAX_ATTEMPTS = int(os.getenv("REDEEM_MAX_ATTEMPTS", "10"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")
