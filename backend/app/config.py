# backend/app/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/vendora.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///vendora.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Human-readable order numbers: {prefix}-{epoch_ms}-{zero padded id}
    ORDER_NUMBER_PREFIX = os.environ.get("ORDER_NUMBER_PREFIX", "VND")

    # Payment references: {site_id}-{epoch_ms}-{order_id}
    PAYMENT_SITE_ID = os.environ.get("PAYMENT_SITE_ID", "VENDORA")
    DEFAULT_PAYMENT_METHOD = "paystack"

    PAYMENT_GATEWAY_BASE_URL = os.environ.get("PAYMENT_GATEWAY_BASE_URL", "https://api.paystack.co")
    PAYMENT_GATEWAY_SECRET_KEY = os.environ.get("PAYMENT_GATEWAY_SECRET_KEY", "")
    # Empty means "sign with the gateway secret key"
    PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "")
    PAYMENT_GATEWAY_TIMEOUT = float(os.environ.get("PAYMENT_GATEWAY_TIMEOUT", "30"))
    PAYMENT_CURRENCY = os.environ.get("PAYMENT_CURRENCY", "NGN")

    # Payment callback pages live on the storefront
    FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:5173")
