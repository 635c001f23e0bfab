"""
Configuration

Values come from the environment (and an optional .env file).
"""

import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production")
JWT_REFRESH_SECRET = os.getenv("JWT_REFRESH_SECRET", "change-me-too")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "15"))
JWT_REFRESH_EXPIRES_DAYS = int(os.getenv("JWT_REFRESH_EXPIRES_DAYS", "7"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")
CURRENCY = os.getenv("CURRENCY", "INR")

# Pricing policy
FREE_SHIPPING_THRESHOLD = float(os.getenv("FREE_SHIPPING_THRESHOLD", "500"))
SHIPPING_FEE = float(os.getenv("SHIPPING_FEE", "50"))
TAX_RATE = float(os.getenv("TAX_RATE", "0.18"))

MAX_LOGIN_ATTEMPTS = int(os.getenv("MAX_LOGIN_ATTEMPTS", "5"))
LOCK_MINUTES = int(os.getenv("LOCK_MINUTES", "120"))
TOTP_ISSUER = os.getenv("TOTP_ISSUER", "Ecommerce API")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
