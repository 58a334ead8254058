"""
Unit Tests for the Daraja client

Tests cover:
1. OAuth token request and bearer authorization
2. C2B simulate payload and acknowledgement parsing
3. Gateway errors surfaced as UpstreamFailure
"""

import json

import httpx
import pytest

from prepaid.exceptions import UpstreamFailure
from prepaid.gateway import C2B_SIMULATE_PATH, TOKEN_PATH, DarajaClient, GatewayAck

from conftest import METER_NO

ACCEPTED = {
    "OriginatorCoversationID": "conv-123",
    "ResponseCode": "0",
    "ResponseDescription": "Accept the service request successfully.",
}


def make_client(settings, simulate_status=200, simulate_body=None, token_status=200):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.url.path == TOKEN_PATH:
            if token_status != 200:
                return httpx.Response(token_status, json={"errorMessage": "Invalid credentials"})
            return httpx.Response(200, json={"access_token": "token-abc", "expires_in": "3599"})
        if request.url.path == C2B_SIMULATE_PATH:
            return httpx.Response(simulate_status, json=simulate_body if simulate_body is not None else ACCEPTED)
        return httpx.Response(404)

    transport = httpx.MockTransport(handler)
    client = httpx.Client(base_url=settings.daraja_base_url, transport=transport)
    return DarajaClient(settings, client), calls


class TestAccessToken:
    """Tests for get_access_token."""

    def test_token_uses_basic_auth(self, settings):
        client, calls = make_client(settings)

        assert client.get_access_token() == "token-abc"

        [request] = calls
        assert request.url.params["grant_type"] == "client_credentials"
        assert request.headers["Authorization"].startswith("Basic ")

    def test_missing_credentials(self, settings):
        client, calls = make_client(settings.model_copy(update={"daraja_consumer_key": ""}))

        with pytest.raises(UpstreamFailure):
            client.get_access_token()
        assert calls == []

    def test_rejected_credentials(self, settings):
        client, _ = make_client(settings, token_status=401)

        with pytest.raises(UpstreamFailure) as exc_info:
            client.get_access_token()
        assert exc_info.value.gateway_error == "Invalid credentials"


class TestInitiatePayment:
    """Tests for initiate_payment."""

    def test_simulate_request(self, settings):
        client, calls = make_client(settings)

        ack = client.initiate_payment(METER_NO, 125)

        assert ack.accepted
        assert ack.conversation_id == "conv-123"
        assert ack.raw == ACCEPTED

        simulate = calls[-1]
        assert simulate.headers["Authorization"] == "Bearer token-abc"
        assert json.loads(simulate.content) == {
            "ShortCode": "600000",
            "CommandID": "CustomerPayBillOnline",
            "Amount": 125,
            "Msisdn": "254708374149",
            "BillRefNumber": METER_NO,
        }

    def test_gateway_error_detail(self, settings):
        client, _ = make_client(settings, simulate_status=400, simulate_body={"errorMessage": "Invalid ShortCode"})

        with pytest.raises(UpstreamFailure) as exc_info:
            client.initiate_payment(METER_NO, 125)
        assert exc_info.value.gateway_error == "Invalid ShortCode"

    def test_missing_shortcode(self, settings):
        client, calls = make_client(settings.model_copy(update={"daraja_shortcode": ""}))

        with pytest.raises(UpstreamFailure):
            client.initiate_payment(METER_NO, 125)
        assert calls == []

    def test_not_accepted_response(self, settings):
        body = {"ResponseCode": "1", "ResponseDescription": "Rejected"}
        client, _ = make_client(settings, simulate_body=body)

        ack = client.initiate_payment(METER_NO, 125)

        assert not ack.accepted
        assert ack.description == "Rejected"


class TestGatewayAck:
    """Tests for acknowledgement parsing."""

    def test_numeric_response_code(self):
        assert GatewayAck.from_response({"ResponseCode": 0}).accepted

    def test_conversation_id_spellings(self):
        ack = GatewayAck.from_response({"OriginatorConversationID": "conv-9"})

        assert ack.conversation_id == "conv-9"
        assert not ack.accepted


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
