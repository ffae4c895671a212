import os
from datetime import timedelta

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

JWT_SECRET = (os.getenv("JWT_SECRET") or "devsecret").strip()
JWT_ALGO = "HS256"
SESSION_COOKIE = "auth-token"
SESSION_TTL = timedelta(days=7)

RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")

FIREBASE_CREDENTIALS = os.getenv("FIREBASE_CREDENTIALS")

ADMIN_PHONE_NUMBERS = {
    p.strip() for p in os.getenv("ADMIN_PHONE_NUMBERS", "").split(",") if p.strip()
}

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "3600"))

# ----------------------- Business rules -----------------------
CURRENCY = "INR"
FREE_SHIPPING_THRESHOLD = 999.0
SHIPPING_FEE = 99.0
ORDER_NUMBER_PREFIX = "RUD"
PENDING_PAYMENT_EXPIRY = timedelta(days=7)
FAILED_PAYMENT_CANCEL_AFTER = timedelta(days=14)
PROFILE_COMPLETION_PATH = "/auth/complete-profile"
