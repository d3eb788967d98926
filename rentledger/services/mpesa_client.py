"""M-Pesa (Daraja) provider client for STK push payments.

Handles:
- OAuth client-credentials access token, cached until shortly before expiry
- STK push initiation (Lipa na M-Pesa online)
- STK push status query
- Pluggable httpx transport (tests use httpx.MockTransport)
"""

import asyncio
import base64
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, NamedTuple, Optional

import httpx

from rentledger.services.channels import PROVIDER_TZ
from rentledger.services.config import Settings, get_settings
from rentledger.services.errors import (
    MalformedNotification,
    ProviderAuthError,
    ProviderUnavailable,
)

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

AUTH_FAILURE_STATUSES = {400, 401, 403}


@dataclass(frozen=True)
class CachedToken:
    """Access token with its expiry on the client's monotonic clock."""

    value: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


class StkPushResponse(NamedTuple):
    """Synchronous answer of the STK push endpoint."""

    merchant_request_id: Optional[str]
    checkout_request_id: str
    response_code: str
    response_description: Optional[str]
    customer_message: Optional[str]


def normalize_phone(phone: Any) -> str:
    """Normalize a Kenyan MSISDN to 2547XXXXXXXX form.

    Raises:
        MalformedNotification: If the value contains anything but digits
    """
    digits = re.sub(r"\s+", "", str(phone or "")).lstrip("+")
    if not digits.isdigit():
        raise MalformedNotification(f"Invalid phone number: {phone!r}")
    if not digits.startswith("254"):
        digits = "254" + (digits[1:] if digits.startswith("0") else digits)
    return digits


def provider_timestamp(now: Optional[datetime] = None) -> str:
    """Timestamp in the provider's YYYYMMDDHHMMSS format."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(PROVIDER_TZ).strftime("%Y%m%d%H%M%S")


def whole_amount(amount: Any) -> int:
    """Provider accepts whole shillings only."""
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class MpesaClient:
    """Async client for the Daraja API.

    Owns its token cache; nothing is shared between client instances. The
    instance can be built outside an event loop; its token lock is created
    for the loop that first fetches a token.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize client.

        Args:
            settings: Provider settings (defaults to global settings)
            transport: Optional httpx transport (MockTransport in tests)
            clock: Monotonic clock used for token expiry
        """
        self.settings = settings or get_settings()
        self._client = httpx.AsyncClient(
            base_url=self.settings.mpesa_base_url,
            timeout=self.settings.mpesa_timeout_seconds,
            transport=transport,
        )
        self._clock = clock
        self._token: Optional[CachedToken] = None
        self._token_lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def cached_token(self) -> Optional[CachedToken]:
        return self._token

    def _lock(self) -> asyncio.Lock:
        """Token lock for the running event loop, created on first use."""
        loop = asyncio.get_running_loop()
        if self._token_lock is None or self._lock_loop is not loop:
            self._token_lock = asyncio.Lock()
            self._lock_loop = loop
        return self._token_lock

    def ensure_configured(self) -> None:
        """Raise ProviderAuthError if any provider setting is missing."""
        missing = self.settings.validate_mpesa()
        if missing:
            raise ProviderAuthError(f"Missing M-Pesa configuration: {', '.join(missing)}")

    def generate_password(self, timestamp: str) -> str:
        """base64(shortcode + passkey + timestamp)."""
        raw = f"{self.settings.mpesa_shortcode}{self.settings.mpesa_passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    async def get_access_token(self) -> str:
        """Return a valid access token, fetching a new one when expired.

        Raises:
            ProviderAuthError: Credentials missing or rejected
            ProviderUnavailable: Provider unreachable or erroring
        """
        self.ensure_configured()
        async with self._lock():
            if self._token is not None and self._token.is_valid(self._clock()):
                return self._token.value

            key, secret = self.settings.mpesa_consumer_key, self.settings.mpesa_consumer_secret
            credentials = f"{key}:{secret}"
            auth = base64.b64encode(credentials.encode()).decode()
            response = await self._send(
                "GET",
                TOKEN_PATH,
                params={"grant_type": "client_credentials"},
                headers={"Authorization": f"Basic {auth}"},
            )
            if response.status_code in AUTH_FAILURE_STATUSES:
                logger.error(
                    "M-Pesa authentication failed (%s) env=%s",
                    response.status_code,
                    self.settings.mpesa_env,
                )
                raise ProviderAuthError(
                    f"M-Pesa authentication failed: {_error_text(response)}"
                )
            data = self._json(response)
            token = data.get("access_token")
            if not token:
                raise ProviderUnavailable("Invalid response from M-Pesa: no access token")

            self._token = CachedToken(
                value=token,
                expires_at=self._clock() + self.settings.mpesa_token_ttl_seconds,
            )
            logger.debug("Fetched new M-Pesa access token")
            return token

    def invalidate_token(self) -> None:
        self._token = None

    async def stk_push(
        self,
        phone_number: str,
        amount: Any,
        account_reference: str,
        description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StkPushResponse:
        """Send an STK push prompt to the payer's phone.

        Raises:
            ProviderAuthError: Credentials missing or rejected
            ProviderUnavailable: Provider unreachable, timed out or refused the request
        """
        token = await self.get_access_token()
        timestamp = provider_timestamp(now)
        phone = normalize_phone(phone_number)
        body = {
            "BusinessShortCode": self.settings.mpesa_shortcode,
            "Password": self.generate_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": whole_amount(amount),
            "PartyA": phone,
            "PartyB": self.settings.mpesa_shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.settings.mpesa_callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description or f"Rent payment for house {account_reference}",
        }
        data = await self._post_authorized(STK_PUSH_PATH, body, token)

        checkout_id = data.get("CheckoutRequestID")
        response_code = str(data.get("ResponseCode", ""))
        if not checkout_id or response_code != "0":
            raise ProviderUnavailable(
                data.get("ResponseDescription") or data.get("errorMessage") or "STK push refused"
            )
        logger.info("STK push sent: checkout=%s account=%s", checkout_id, account_reference)
        return StkPushResponse(
            merchant_request_id=data.get("MerchantRequestID"),
            checkout_request_id=checkout_id,
            response_code=response_code,
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
        )

    async def stk_query(
        self, checkout_request_id: str, now: Optional[datetime] = None
    ) -> dict[str, Any]:
        """Query the provider for the live status of a push.

        Returns:
            Raw provider response (ResultCode, ResultDesc, ...)
        """
        token = await self.get_access_token()
        timestamp = provider_timestamp(now)
        body = {
            "BusinessShortCode": self.settings.mpesa_shortcode,
            "Password": self.generate_password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        return await self._post_authorized(STK_QUERY_PATH, body, token)

    async def close(self) -> None:
        await self._client.aclose()

    async def _post_authorized(self, path: str, body: dict[str, Any], token: str) -> dict[str, Any]:
        response = await self._send(
            "POST",
            path,
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )
        if response.status_code == 401:
            # Token revoked early; next call fetches a fresh one
            self.invalidate_token()
        return self._json(response)

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("M-Pesa %s %s timed out", method, path)
            raise ProviderUnavailable("M-Pesa request timed out") from e
        except httpx.HTTPError as e:
            logger.warning("M-Pesa %s %s failed: %s", method, path, e)
            raise ProviderUnavailable(f"M-Pesa request failed: {e}") from e

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        if not response.is_success:
            logger.error(
                "M-Pesa API error (%s) on %s: %s",
                response.status_code,
                response.request.url.path,
                _error_text(response),
            )
            raise ProviderUnavailable(
                f"M-Pesa API error ({response.status_code}): {_error_text(response)}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderUnavailable("M-Pesa returned a non-JSON response") from e
        if not isinstance(data, dict):
            raise ProviderUnavailable("M-Pesa returned an unexpected response")
        return data


def _error_text(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(data, dict):
        return str(
            data.get("errorMessage")
            or data.get("error_description")
            or data.get("error")
            or data
        )
    return str(data)


# Global client instance (initialized by the application lifespan)
_client_instance: Optional[MpesaClient] = None


def init_mpesa_client(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> MpesaClient:
    """Initialize the global M-Pesa client."""
    global _client_instance
    _client_instance = MpesaClient(settings, transport)
    return _client_instance


def get_mpesa_client() -> MpesaClient:
    """Get the global M-Pesa client, creating one from settings if needed."""
    global _client_instance
    if _client_instance is None:
        _client_instance = MpesaClient()
    return _client_instance


async def close_mpesa_client() -> None:
    global _client_instance
    if _client_instance is not None:
        await _client_instance.close()
        _client_instance = None


__all__ = [
    "MpesaClient",
    "CachedToken",
    "StkPushResponse",
    "normalize_phone",
    "provider_timestamp",
    "whole_amount",
    "init_mpesa_client",
    "get_mpesa_client",
    "close_mpesa_client",
]
