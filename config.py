"""
Environment configuration for CivicConnect.

Values are read once at import time. A local .env file is honoured when present.
"""

import os

from dotenv import load_dotenv

load_dotenv()

APP_NAME = "CivicConnect API"

# Security
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", str(60 * 24 * 7)))  # 7 days
RESET_TOKEN_EXPIRE_MINUTES = int(os.getenv("RESET_TOKEN_EXPIRE_MINUTES", "60"))

# One-time codes
OTP_EXPIRE_MINUTES = int(os.getenv("OTP_EXPIRE_MINUTES", "10"))
OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", "3"))

# Email
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT")) if os.getenv("SMTP_PORT") else 587
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASS = os.getenv("SMTP_PASS")
EMAIL_FROM_NAME = os.getenv("EMAIL_FROM_NAME", "CivicConnect")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# HTTP
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
AUTH_RATE_LIMIT = os.getenv("AUTH_RATE_LIMIT", "5/15minutes")
REPORT_RATE_LIMIT = os.getenv("REPORT_RATE_LIMIT", "10/hour")
CONTACT_RATE_LIMIT = os.getenv("CONTACT_RATE_LIMIT", "3/hour")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
