import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

JWT_SECRET = os.getenv("JWT_SECRET", "dev_secret_change_me")
JWT_ALG = "HS256"
TOKEN_EXPIRE_MIN = 60 * 24 * 14  # 14 days
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Money rules
COMMISSION_RATE = float(os.getenv("COMMISSION_RATE", 0.10))
TAX_RATE = float(os.getenv("TAX_RATE", 0.0))
BASE_RIDER_PAY = float(os.getenv("BASE_RIDER_PAY", 100))
PER_KM_RATE = float(os.getenv("PER_KM_RATE", 20))
PLATFORM_FEE = float(os.getenv("PLATFORM_FEE", 15))  # fixed, per delivery
MIN_CASHOUT_AMOUNT = float(os.getenv("MIN_CASHOUT_AMOUNT", 500))

# Distances
DEFAULT_DISTANCE_KM = float(os.getenv("DEFAULT_DISTANCE_KM", 2.0))
RIDER_SEARCH_RADIUS_KM = float(os.getenv("RIDER_SEARCH_RADIUS_KM", 10))
