"""
M-Pesa Daraja client.

Only two calls are needed: the OAuth client-credentials token and the C2B
simulate endpoint that starts a payment. The ledger consumes the response
code ("0" means the request was accepted) and the originator conversation
id, which the settlement callback later echoes back.
"""

from decimal import Decimal
from typing import Any, Optional

import httpx
from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Settings, get_settings
from .exceptions import UpstreamFailure
from .logs import get_logger

log = get_logger(__name__)

TOKEN_PATH = "/oauth/v1/generate"
C2B_SIMULATE_PATH = "/mpesa/c2b/v1/simulate"


class GatewayAck(BaseModel):
    response_code: Optional[str] = None
    conversation_id: Optional[str] = None
    description: Optional[str] = None
    raw: dict = Field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.response_code == "0"

    @classmethod
    def from_response(cls, body: dict) -> "GatewayAck":
        code = body.get("ResponseCode")
        return cls(
            response_code=str(code) if code is not None else None,
            conversation_id=body.get("OriginatorCoversationID") or body.get("OriginatorConversationID"),
            description=body.get("ResponseDescription"),
            raw=body,
        )


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        for key in ("errorMessage", "ResponseDescription", "ResultDesc", "error"):
            if body.get(key):
                return str(body[key])
    return str(body)


def _json_amount(amount: Any) -> Any:
    value = Decimal(str(amount))
    return int(value) if value == value.to_integral_value() else float(value)


class DarajaClient:
    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.Client] = None):
        self.settings = settings or get_settings()
        self._client = client or httpx.Client(
            base_url=self.settings.daraja_base_url,
            timeout=self.settings.daraja_timeout_seconds,
            headers={"Content-Type": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    def _request_token(self) -> httpx.Response:
        return self._client.get(
            TOKEN_PATH,
            params={"grant_type": "client_credentials"},
            auth=(self.settings.daraja_consumer_key, self.settings.daraja_consumer_secret),
        )

    def get_access_token(self) -> str:
        if not self.settings.daraja_consumer_key or not self.settings.daraja_consumer_secret:
            raise UpstreamFailure("Daraja consumer key or secret is not configured")
        try:
            response = self._request_token()
        except httpx.TransportError as e:
            raise UpstreamFailure("Failed to get Daraja access token", gateway_error=str(e)) from e
        if response.is_error:
            detail = _error_text(response)
            log.error("Error getting Daraja access token: %s", detail)
            raise UpstreamFailure("Failed to get Daraja access token", gateway_error=detail)
        token = response.json().get("access_token")
        if not token:
            raise UpstreamFailure("Daraja token response did not include access_token")
        return token

    def initiate_payment(self, meter_no: str, amount: Any) -> GatewayAck:
        """Ask the gateway to start a C2B payment billed to `meter_no`."""
        shortcode = self.settings.daraja_shortcode
        msisdn = self.settings.daraja_test_msisdn
        if not shortcode or not msisdn:
            raise UpstreamFailure("Daraja ShortCode or Test MSISDN is not configured")

        token = self.get_access_token()
        payload = {
            "ShortCode": shortcode,
            "CommandID": "CustomerPayBillOnline",
            "Amount": _json_amount(amount),
            "Msisdn": msisdn,
            "BillRefNumber": meter_no,
        }
        log.info("Sending C2B simulation request for meter %s, amount %s", meter_no, amount)
        try:
            response = self._client.post(
                C2B_SIMULATE_PATH,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TransportError as e:
            raise UpstreamFailure(f"Failed to simulate C2B payment: {e}", gateway_error=str(e)) from e

        if response.is_error:
            detail = _error_text(response)
            log.error("C2B simulation failed with status %s: %s", response.status_code, detail)
            raise UpstreamFailure(f"Failed to simulate C2B payment: {detail}", gateway_error=detail)

        ack = GatewayAck.from_response(response.json())
        log.info("C2B simulation response: code=%s conversation=%s", ack.response_code, ack.conversation_id)
        return ack
