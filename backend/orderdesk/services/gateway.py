# Overview: Payment gateway adapters; build signed redirect URLs and verify signed inbound messages.

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode

from flask import current_app

from orderdesk.time_utils import to_local


VNPAY_VERSION = "2.1.0"
VNPAY_COMMAND = "pay"
VNPAY_CURRENCY = "VND"
VNPAY_LOCALE = "vn"
VNPAY_ORDER_TYPE = "other"
VNPAY_DATE_FORMAT = "%Y%m%d%H%M%S"

SIGNATURE_FIELDS = {"vnp_SecureHash", "vnp_SecureHashType"}

RESPONSE_MESSAGES = {
    "00": "Transaction successful",
    "07": "Suspicious transaction (money deducted)",
    "09": "Card/Account not registered for InternetBanking",
    "10": "Incorrect authentication more than 3 times",
    "11": "Payment deadline has passed",
    "12": "Card/Account is locked",
    "13": "Wrong OTP",
    "24": "Customer cancelled transaction",
    "51": "Insufficient balance",
    "65": "Exceeded daily transaction limit",
    "75": "Bank is under maintenance",
    "79": "Wrong payment password too many times",
    "99": "Other errors",
}


def get_response_message(response_code: Optional[str]) -> str:
    return RESPONSE_MESSAGES.get(response_code, f"Unknown error ({response_code})")


@dataclass(frozen=True)
class GatewayVerification:
    """Result of checking an inbound gateway message. Fields are only meaningful when verified."""
    verified: bool
    success: bool = False
    txn_ref: Optional[str] = None
    amount: Optional[float] = None
    amount_minor: Optional[int] = None
    response_code: Optional[str] = None
    transaction_no: Optional[str] = None
    bank_code: Optional[str] = None
    bank_tran_no: Optional[str] = None
    card_type: Optional[str] = None
    pay_date: Optional[str] = None


class PaymentGatewayAdapter:
    """
    Interface the reconciler talks to.

    build_redirect must be pure; the verify_* methods must check the
    signature before any field is trusted.
    """
    name = "base"

    def build_redirect(self, *, txn_ref: str, amount: int, client_ip: str, return_url: str,
                       order_info: str, created_at: datetime, expires_at: datetime) -> str:
        raise NotImplementedError

    def verify_inbound(self, params: dict) -> GatewayVerification:
        raise NotImplementedError

    def verify_return(self, params: dict) -> GatewayVerification:
        raise NotImplementedError


class VnpayGateway(PaymentGatewayAdapter):
    """
    VNPay v2.1.0 adapter.

    Signature: HMAC-SHA512 of the vnp_* parameters sorted by key and
    form-encoded, excluding the hash fields. Amounts travel multiplied by 100.
    """
    name = "vnpay"

    def __init__(self, *, tmn_code: str, hash_secret: str, payment_url: str, tz_name: str):
        self.tmn_code = tmn_code
        self.hash_secret = hash_secret
        self.payment_url = payment_url
        self.tz_name = tz_name

    def sign_params(self, params: dict) -> str:
        payload = _canonical_query(params)
        return hmac.new(
            self.hash_secret.encode("utf-8"),
            payload.encode("utf-8"),
            hashlib.sha512,
        ).hexdigest()

    def build_redirect(self, *, txn_ref: str, amount: int, client_ip: str, return_url: str,
                       order_info: str, created_at: datetime, expires_at: datetime) -> str:
        params = {
            "vnp_Version": VNPAY_VERSION,
            "vnp_Command": VNPAY_COMMAND,
            "vnp_TmnCode": self.tmn_code,
            "vnp_Amount": str(amount * 100),
            "vnp_CurrCode": VNPAY_CURRENCY,
            "vnp_TxnRef": txn_ref,
            "vnp_OrderInfo": order_info,
            "vnp_OrderType": VNPAY_ORDER_TYPE,
            "vnp_Locale": VNPAY_LOCALE,
            "vnp_ReturnUrl": return_url,
            "vnp_IpAddr": client_ip or "127.0.0.1",
            "vnp_CreateDate": self._format_date(created_at),
            "vnp_ExpireDate": self._format_date(expires_at),
        }
        query = _canonical_query(params)
        return f"{self.payment_url}?{query}&vnp_SecureHash={self.sign_params(params)}"

    def verify_inbound(self, params: dict) -> GatewayVerification:
        return self._verify(params)

    def verify_return(self, params: dict) -> GatewayVerification:
        return self._verify(params)

    def _verify(self, params: dict) -> GatewayVerification:
        params = {k: v for k, v in (params or {}).items() if isinstance(v, str)}
        received = params.get("vnp_SecureHash", "")
        if not received:
            return GatewayVerification(verified=False)

        expected = self.sign_params(params)
        if not hmac.compare_digest(expected.lower(), received.lower()):
            return GatewayVerification(verified=False)

        if params.get("vnp_TmnCode") != self.tmn_code:
            return GatewayVerification(verified=False)

        try:
            raw_amount = int(params.get("vnp_Amount", ""))
        except ValueError:
            return GatewayVerification(verified=False)

        response_code = params.get("vnp_ResponseCode")
        transaction_status = params.get("vnp_TransactionStatus", response_code)

        return GatewayVerification(
            verified=True,
            success=response_code == "00" and transaction_status == "00",
            txn_ref=params.get("vnp_TxnRef"),
            amount=raw_amount // 100 if raw_amount % 100 == 0 else raw_amount / 100,
            amount_minor=raw_amount,
            response_code=response_code,
            transaction_no=params.get("vnp_TransactionNo"),
            bank_code=params.get("vnp_BankCode"),
            bank_tran_no=params.get("vnp_BankTranNo"),
            card_type=params.get("vnp_CardType"),
            pay_date=params.get("vnp_PayDate"),
        )

    def _format_date(self, dt: datetime) -> str:
        if dt.tzinfo is not None:
            dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
        return to_local(dt, self.tz_name).strftime(VNPAY_DATE_FORMAT)


def _canonical_query(params: dict) -> str:
    items = sorted(
        (k, v) for k, v in params.items()
        if k.startswith("vnp_") and k not in SIGNATURE_FIELDS and v not in (None, "")
    )
    return urlencode(items)


def get_gateway() -> VnpayGateway:
    """Gateway configured for the current app."""
    config = current_app.config
    return VnpayGateway(
        tmn_code=config["VNPAY_TMN_CODE"],
        hash_secret=config["VNPAY_HASH_SECRET"],
        payment_url=config["VNPAY_PAYMENT_URL"],
        tz_name=config["BUSINESS_TIMEZONE"],
    )
