# backend/orderdesk/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/orderdesk.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///orderdesk.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Payment gateway (VNPay sandbox defaults)
    VNPAY_TMN_CODE = os.environ.get("VNPAY_TMN_CODE", "DEMOTMN1")
    VNPAY_HASH_SECRET = os.environ.get("VNPAY_HASH_SECRET", "dev-vnpay-secret")
    VNPAY_PAYMENT_URL = os.environ.get(
        "VNPAY_PAYMENT_URL",
        "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
    )
    VNPAY_RETURN_URL = os.environ.get("VNPAY_RETURN_URL", "http://localhost:5173/payment/result")
    PAYMENT_SESSION_MINUTES = int(os.environ.get("PAYMENT_SESSION_MINUTES", "15"))

    # Order placement rules
    MAX_CART_SIZE = int(os.environ.get("MAX_CART_SIZE", "10"))
    MIN_GATEWAY_ORDER_AMOUNT = int(os.environ.get("MIN_GATEWAY_ORDER_AMOUNT", "10000"))

    # Reporting
    SUMMARY_CACHE_TTL_SECONDS = int(os.environ.get("SUMMARY_CACHE_TTL_SECONDS", str(15 * 60)))
    BUSINESS_TIMEZONE = os.environ.get("BUSINESS_TIMEZONE", "Asia/Ho_Chi_Minh")
