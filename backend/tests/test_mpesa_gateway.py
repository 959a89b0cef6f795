import base64
import json
from datetime import datetime

import httpx
import pytest

from duka.errors import GatewayError, TransientGatewayError
from duka.services.mpesa_gateway import (
    MpesaConfig,
    MpesaGateway,
    STILL_PROCESSING_CODE,
    stk_password,
    stk_timestamp,
)


CONFIG = MpesaConfig(
    environment="sandbox",
    consumer_key="key",
    consumer_secret="secret",
    business_short_code="174379",
    passkey="passkey",
    callback_url="https://example.test/api/mpesa/callback",
    connect_timeout=3,
    read_timeout=10,
)

TOKEN = {"access_token": "tok-1", "expires_in": "3599"}


class ScriptedDaraja:
    """MockTransport handler: answers each request with the next scripted reply."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        status, payload = reply
        if payload is None:
            return httpx.Response(status, text="<html>Service Unavailable</html>")
        return httpx.Response(status, json=payload)


def _gateway(*replies):
    daraja = ScriptedDaraja(*replies)
    client = httpx.Client(base_url=CONFIG.base_url, transport=httpx.MockTransport(daraja))
    return MpesaGateway(CONFIG, client=client), daraja


def test_password_and_timestamp():
    assert stk_timestamp(datetime(2026, 10, 18, 9, 5, 7)) == "20261018090507"
    expected = base64.b64encode(b"174379passkey20261018090507").decode()
    assert stk_password("174379", "passkey", "20261018090507") == expected


def test_config_from_mapping():
    config = MpesaConfig.from_mapping({
        "MPESA_ENVIRONMENT": "production",
        "MPESA_BUSINESS_SHORT_CODE": 600000,
        "MPESA_CONNECT_TIMEOUT": "2",
    })
    assert config.base_url == "https://api.safaricom.co.ke"
    assert config.business_short_code == "600000"
    assert config.timeout.connect == 2.0
    assert config.timeout.read == 15.0


class TestInitiate:
    def test_accepted(self):
        gateway, daraja = _gateway((200, TOKEN), (200, {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_191220191020363925",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        }))

        accepted = gateway.initiate("254712345678", 232, "SAL-20261018-0001", "Payment for goods")

        assert accepted.checkout_request_id == "ws_CO_191220191020363925"
        oauth, push = daraja.requests
        assert oauth.url.path == "/oauth/v1/generate"
        assert oauth.url.params["grant_type"] == "client_credentials"
        assert oauth.headers["Authorization"] == "Basic " + base64.b64encode(b"key:secret").decode()
        assert str(push.url) == "https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest"
        assert push.headers["Authorization"] == "Bearer tok-1"

        body = json.loads(push.content)
        assert body["TransactionType"] == "CustomerPayBillOnline"
        assert body["Amount"] == 232
        assert body["PartyA"] == body["PhoneNumber"] == "254712345678"
        assert body["PartyB"] == body["BusinessShortCode"] == "174379"
        assert body["Password"] == stk_password("174379", "passkey", body["Timestamp"])

    def test_token_is_cached(self):
        accepted = {"CheckoutRequestID": "ws_CO_1", "MerchantRequestID": "m", "ResponseCode": "0"}
        gateway, daraja = _gateway((200, TOKEN), (200, accepted), (200, accepted))
        gateway.initiate("254712345678", 1, "A", "B")
        gateway.initiate("254712345678", 1, "A", "B")
        assert len(daraja.requests) == 3

    def test_rejected(self):
        gateway, _ = _gateway((200, TOKEN), (400, {
            "requestId": "1",
            "errorCode": "400.002.02",
            "errorMessage": "Bad Request - Invalid PhoneNumber",
        }))
        with pytest.raises(GatewayError) as exc:
            gateway.initiate("254712345678", 1, "A", "B")
        assert not isinstance(exc.value, TransientGatewayError)
        assert exc.value.message == "Bad Request - Invalid PhoneNumber"

    def test_timeout_is_transient(self):
        gateway, _ = _gateway((200, TOKEN), httpx.ReadTimeout("read timed out"))
        with pytest.raises(TransientGatewayError):
            gateway.initiate("254712345678", 1, "A", "B")

    def test_server_error_without_json_is_transient(self):
        gateway, _ = _gateway((200, TOKEN), (503, None))
        with pytest.raises(TransientGatewayError):
            gateway.initiate("254712345678", 1, "A", "B")

    def test_bad_credentials(self):
        gateway, _ = _gateway((400, {"errorMessage": "Invalid Authentication passed"}))
        with pytest.raises(GatewayError):
            gateway.initiate("254712345678", 1, "A", "B")


class TestQuery:
    def test_result_code(self):
        gateway, _ = _gateway((200, TOKEN), (200, {
            "ResponseCode": "0",
            "CheckoutRequestID": "ws_CO_1",
            "ResultCode": "1032",
            "ResultDesc": "Request cancelled by user",
        }))
        result = gateway.query("ws_CO_1")
        assert result.result_code == "1032"
        assert not result.is_processing

    def test_still_processing(self):
        gateway, _ = _gateway((200, TOKEN), (500, {
            "errorCode": STILL_PROCESSING_CODE,
            "errorMessage": "The transaction is being processed",
        }))
        assert gateway.query("ws_CO_1").is_processing

    def test_connection_error(self):
        gateway, _ = _gateway((200, TOKEN), httpx.ConnectError("refused"))
        with pytest.raises(TransientGatewayError):
            gateway.query("ws_CO_1")
