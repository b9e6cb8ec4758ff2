import os

from dotenv import load_dotenv
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# Bearer tokens are issued by the account service; this API only verifies them
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")

# Payment gateway (Razorpay)
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "")
RAZORPAY_API_URL = os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1")
GATEWAY_TIMEOUT = float(os.getenv("GATEWAY_TIMEOUT", 10))
CHECKOUT_CURRENCY = os.getenv("CHECKOUT_CURRENCY", "INR")

LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", 3))

# A verification holding an order's stock update longer than this is treated as dead
STOCK_LOCK_SECONDS = int(os.getenv("STOCK_LOCK_SECONDS", 300))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))
