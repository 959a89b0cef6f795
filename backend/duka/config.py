# backend/duka/config.py
from __future__ import annotations
import os


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/duka.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///duka.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Attempts for order commits that hit lock errors or a lost order-number race
    ORDER_RETRY_ATTEMPTS = int(os.environ.get("ORDER_RETRY_ATTEMPTS", "5"))

    # M-Pesa Daraja credentials (read once into MpesaConfig by create_app)
    MPESA_ENVIRONMENT = os.environ.get("MPESA_ENVIRONMENT", "sandbox")
    MPESA_CONSUMER_KEY = os.environ.get("MPESA_CONSUMER_KEY", "")
    MPESA_CONSUMER_SECRET = os.environ.get("MPESA_CONSUMER_SECRET", "")
    MPESA_BUSINESS_SHORT_CODE = os.environ.get("MPESA_BUSINESS_SHORT_CODE", "")
    MPESA_PASSKEY = os.environ.get("MPESA_PASSKEY", "")
    MPESA_CALLBACK_URL = os.environ.get("MPESA_CALLBACK_URL", "")
    MPESA_CONNECT_TIMEOUT = float(os.environ.get("MPESA_CONNECT_TIMEOUT", "5"))
    MPESA_READ_TIMEOUT = float(os.environ.get("MPESA_READ_TIMEOUT", "15"))

    # Pending STK pushes older than this are polled by `flask mpesa reconcile`
    MPESA_RECONCILE_AFTER_SECONDS = int(os.environ.get("MPESA_RECONCILE_AFTER_SECONDS", "120"))
