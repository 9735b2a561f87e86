import os
import logging
from dotenv import load_dotenv


load_dotenv()

logger = logging.getLogger(__name__)

# --- Configuration Constants ---
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///lootwheel.db")
AUTH_SECRET = os.environ.get("AUTH_SECRET", "")
AUTH_DATE_MAX_AGE_SECONDS = int(os.environ.get("AUTH_DATE_MAX_AGE_SECONDS", 3600 * 24)) # 24 hours for wallet auth data
API_KEY_SECRET = os.environ.get("API_KEY_SECRET", "YOUR_VERY_SECURE_RANDOM_API_KEY_FOR_ADMIN") # IMPORTANT: Change this and keep it secret!

NFT_POOL_PERCENT = float(os.environ.get("NFT_POOL_PERCENT", 50.0)) # NFTs share this budget equally
WEIGHT_TOLERANCE = 0.01
JACKPOT_BASE_CHANCE = float(os.environ.get("JACKPOT_BASE_CHANCE", 0.001)) # 0.1% default
JACKPOT_WIN_CHANCE_KEY = "jackpot_win_chance"

PAYOUT_SERVICE_URL = os.environ.get("PAYOUT_SERVICE_URL")
PAYOUT_SERVICE_TOKEN = os.environ.get("PAYOUT_SERVICE_TOKEN")
PAYOUT_TIMEOUT_SECONDS = int(os.environ.get("PAYOUT_TIMEOUT_SECONDS", 90))

ALLOWED_ORIGINS = [o.strip() for o in os.environ.get("ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",") if o.strip()]
PORT = int(os.environ.get('PORT', 5000))

if not API_KEY_SECRET or API_KEY_SECRET == "YOUR_VERY_SECURE_RANDOM_API_KEY_FOR_ADMIN":
    logger.warning("API_KEY_SECRET is not set or is using the default value! This is insecure for the admin endpoints.")
if not AUTH_SECRET:
    logger.warning("AUTH_SECRET is not set! Every user request will fail authentication.")
