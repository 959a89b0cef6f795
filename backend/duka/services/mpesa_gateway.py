# Overview: HTTP client for the Safaricom Daraja STK push API.

"""
M-Pesa Daraja client.

Only two calls matter to the order engine:
- initiate(): STK push (Lipa na M-Pesa Online, CustomerPayBillOnline)
- query():    STK push status query for a checkout request

Every request carries a (connect, read) timeout. Network failures and 5xx
answers raise TransientGatewayError; explicit refusals raise GatewayError.
Neither is ever persisted by this module; the payment service decides what
to record.
"""

from __future__ import annotations

import base64
import threading
import time
from dataclasses import dataclass

import httpx
from flask import current_app

from ..errors import GatewayError, TransientGatewayError
from duka.time_utils import utcnow

BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}

OAUTH_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

TRANSACTION_TYPE = "CustomerPayBillOnline"

# Daraja answers a query for a push the customer has not acted on yet with
# this error code instead of a ResultCode.
STILL_PROCESSING_CODE = "500.001.1001"

# Refresh the token this many seconds before Daraja says it expires.
TOKEN_EXPIRY_MARGIN = 60


@dataclass(frozen=True)
class MpesaConfig:
    environment: str
    consumer_key: str
    consumer_secret: str
    business_short_code: str
    passkey: str
    callback_url: str
    connect_timeout: float = 5.0
    read_timeout: float = 15.0

    @property
    def base_url(self) -> str:
        return BASE_URLS.get(self.environment, BASE_URLS["sandbox"])

    @property
    def timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.read_timeout, connect=self.connect_timeout)

    @classmethod
    def from_mapping(cls, config) -> "MpesaConfig":
        return cls(
            environment=config.get("MPESA_ENVIRONMENT", "sandbox"),
            consumer_key=config.get("MPESA_CONSUMER_KEY", ""),
            consumer_secret=config.get("MPESA_CONSUMER_SECRET", ""),
            business_short_code=str(config.get("MPESA_BUSINESS_SHORT_CODE", "")),
            passkey=config.get("MPESA_PASSKEY", ""),
            callback_url=config.get("MPESA_CALLBACK_URL", ""),
            connect_timeout=float(config.get("MPESA_CONNECT_TIMEOUT", 5)),
            read_timeout=float(config.get("MPESA_READ_TIMEOUT", 15)),
        )


@dataclass(frozen=True)
class StkPushAccepted:
    merchant_request_id: str
    checkout_request_id: str
    response_description: str
    customer_message: str | None = None


@dataclass(frozen=True)
class StkQueryResult:
    """result_code is None while the customer has not answered the prompt yet."""
    result_code: str | None
    result_desc: str | None

    @property
    def is_processing(self) -> bool:
        return self.result_code is None


def stk_timestamp(now=None) -> str:
    return (now or utcnow()).strftime("%Y%m%d%H%M%S")


def stk_password(short_code: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{short_code}{passkey}{timestamp}".encode()).decode()


class MpesaGateway:
    def __init__(self, config: MpesaConfig, client: httpx.Client | None = None):
        self.config = config
        self.client = client or httpx.Client(base_url=config.base_url, timeout=config.timeout)
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return self.client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TransientGatewayError(
                "M-Pesa gateway unreachable",
                details={"path": path, "reason": str(e)},
            ) from e
        except httpx.HTTPError as e:
            raise GatewayError("M-Pesa request failed", details={"path": path, "reason": str(e)}) from e

    @staticmethod
    def _json(response: httpx.Response, path: str) -> dict:
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            if response.status_code >= 500:
                raise TransientGatewayError(
                    "M-Pesa gateway error",
                    details={"path": path, "status": response.status_code},
                )
            raise GatewayError(
                "Invalid response from M-Pesa",
                details={"path": path, "status": response.status_code},
            )
        return data

    def access_token(self) -> str:
        """OAuth bearer token, cached until shortly before it expires."""
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            response = self._request(
                "GET",
                OAUTH_PATH,
                params={"grant_type": "client_credentials"},
                auth=(self.config.consumer_key, self.config.consumer_secret),
            )
            data = self._json(response, OAUTH_PATH)
            token = data.get("access_token")
            if response.status_code != 200 or not token:
                error = GatewayError if response.status_code < 500 else TransientGatewayError
                raise error(
                    "Failed to get M-Pesa access token",
                    details={"status": response.status_code, "gateway": data},
                )

            try:
                expires_in = int(data.get("expires_in", 3599))
            except (TypeError, ValueError):
                expires_in = 3599
            self._token = token
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
            return token

    def _post(self, path: str, body: dict) -> tuple[httpx.Response, dict]:
        headers = {"Authorization": f"Bearer {self.access_token()}"}
        response = self._request("POST", path, json=body, headers=headers)
        return response, self._json(response, path)

    def _credentials(self) -> dict:
        timestamp = stk_timestamp()
        return {
            "BusinessShortCode": self.config.business_short_code,
            "Password": stk_password(self.config.business_short_code, self.config.passkey, timestamp),
            "Timestamp": timestamp,
        }

    def initiate(self, phone_number: str, amount: int, account_reference: str, transaction_desc: str) -> StkPushAccepted:
        """
        Send an STK push prompt to phone_number for amount whole shillings.

        Returns the gateway's request ids when the push is accepted
        (ResponseCode "0").
        """
        body = {
            **self._credentials(),
            "TransactionType": TRANSACTION_TYPE,
            "Amount": amount,
            "PartyA": phone_number,
            "PartyB": self.config.business_short_code,
            "PhoneNumber": phone_number,
            "CallBackURL": self.config.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": transaction_desc,
        }
        response, data = self._post(STK_PUSH_PATH, body)

        if str(data.get("ResponseCode")) == "0" and data.get("CheckoutRequestID"):
            return StkPushAccepted(
                merchant_request_id=data.get("MerchantRequestID", ""),
                checkout_request_id=data["CheckoutRequestID"],
                response_description=data.get("ResponseDescription", ""),
                customer_message=data.get("CustomerMessage"),
            )

        error = TransientGatewayError if response.status_code >= 500 else GatewayError
        raise error(
            data.get("errorMessage") or data.get("ResponseDescription") or "STK push was not accepted",
            details={"status": response.status_code, "gateway": data},
        )

    def query(self, checkout_request_id: str) -> StkQueryResult:
        body = {**self._credentials(), "CheckoutRequestID": checkout_request_id}
        response, data = self._post(STK_QUERY_PATH, body)

        if data.get("errorCode") == STILL_PROCESSING_CODE:
            return StkQueryResult(result_code=None, result_desc=data.get("errorMessage"))

        if data.get("ResultCode") is not None:
            return StkQueryResult(result_code=str(data["ResultCode"]), result_desc=data.get("ResultDesc"))

        error = TransientGatewayError if response.status_code >= 500 else GatewayError
        raise error(
            data.get("errorMessage") or "Failed to query STK push status",
            details={"status": response.status_code, "gateway": data},
        )


def get_gateway() -> MpesaGateway:
    """The gateway built for this app in create_app."""
    return current_app.extensions["mpesa_gateway"]
