import asyncio
import logging
import random
import time
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

import httpx

from disburser.domain.errors import UpstreamUnavailableError
from disburser.domain.models import Client, Outcome, PaymentFailure, PaymentSuccess
from disburser.domain.retry import backoff_delay
from disburser.domain.states import Endpoint, ErrorKind

logger = logging.getLogger(__name__)

BASE_HEADERS = {
    "Content-Type": "application/json",
    "X-Requested-With": "XMLHttpRequest",
}

class TokenProvider:
    """
    Caches the gateway bearer token until its TTL runs out.

    Concurrent callers that find no valid token may each trigger a refresh;
    issuing a token is idempotent upstream so the duplicates are harmless.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        auth_url: str,
        username: str,
        password: str,
        ttl_seconds: float = 1500,
        timeout: float = 15.0,
        attempts: int = 3,
        retry_base_delay: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.http = http
        self.auth_url = auth_url
        self.username = username
        self.password = password
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.retry_base_delay = retry_base_delay
        self.clock = clock
        self._token: Optional[str] = None
        self._expires_at: float = 0.0

    def is_token_valid(self) -> bool:
        return bool(self._token) and self.clock() < self._expires_at

    async def get_valid_token(self) -> str:
        if self.is_token_valid():
            return self._token
        return await self.fetch_token()

    async def fetch_token(self) -> str:
        last_error: Optional[Exception] = None
        for attempt in range(self.attempts):
            if attempt:
                await asyncio.sleep(backoff_delay(attempt - 1, base_delay_seconds=self.retry_base_delay))
            try:
                resp = await self.http.post(
                    self.auth_url,
                    json={"username": self.username, "password": self.password},
                    headers=BASE_HEADERS,
                    timeout=self.timeout,
                )
                resp.raise_for_status()
                token = resp.json().get("token")
                if not token:
                    raise ValueError("No token in response")

                self._token = token
                self._expires_at = self.clock() + self.ttl_seconds
                logger.info("Authentication token refreshed successfully")
                return token
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning(f"Token fetch failed (attempt {attempt + 1}/{self.attempts}): {e}")

        raise UpstreamUnavailableError(f"Authentication failed: {last_error}")

    def clear_token(self):
        self._token = None
        self._expires_at = 0.0
        logger.info("Authentication token cleared")

    def token_info(self) -> Dict[str, Any]:
        return {
            "has_token": bool(self._token),
            "is_expired": self.clock() >= self._expires_at,
            "expires_in_seconds": max(0.0, self._expires_at - self.clock()),
        }

def classify_error(error: Exception) -> ErrorKind:
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    # Any other transport failure, including a server dropping the connection
    if isinstance(error, httpx.TransportError):
        return ErrorKind.CONNECTION
    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        if status_code >= 500:
            return ErrorKind.SERVER_ERROR
        if status_code == 401:
            return ErrorKind.AUTH_ERROR
    return ErrorKind.OTHER

class PaymentGateway:
    """Submits one payment request to the primary or fallback endpoint."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        tokens: TokenProvider,
        primary_url: str,
        fallback_url: str,
        cp_id: str,
        charge_amount: str,
        default_offer_code: str = "",
        language: str = "en",
        timeout: float = 10.0,
        primary_split: float = 0.5,
        rng: Optional[random.Random] = None,
    ):
        self.http = http
        self.tokens = tokens
        self.urls = {Endpoint.PRIMARY: primary_url, Endpoint.FALLBACK: fallback_url}
        self.cp_id = cp_id
        self.charge_amount = charge_amount
        self.default_offer_code = default_offer_code
        self.language = language
        self.timeout = timeout
        self.primary_split = primary_split
        self.rng = rng or random.Random()

    def select_endpoint(self) -> Endpoint:
        return Endpoint.PRIMARY if self.rng.random() < self.primary_split else Endpoint.FALLBACK

    def build_payload(self, client: Client) -> Dict[str, Any]:
        params = [
            ("OfferCode", client.offer_code or self.default_offer_code),
            ("Msisdn", client.msisdn),
            ("Language", self.language),
            ("CpId", self.cp_id),
            ("ChargeAmount", self.charge_amount),
        ]
        return {
            "requestId": str(uuid4()),
            "channel": "APIGW",
            "requestParam": {"data": [{"name": name, "value": value} for name, value in params]},
            "operation": "Payment",
        }

    async def submit(self, client: Client) -> Outcome:
        """
        Sends the payment and classifies the result.
        Raises UpstreamUnavailableError when no token can be obtained.
        """
        endpoint = self.select_endpoint()
        token = await self.tokens.get_valid_token()

        headers = {**BASE_HEADERS, "X-Authorization": f"Bearer {token}"}
        started = time.perf_counter()

        try:
            resp = await asyncio.wait_for(
                self.http.post(
                    self.urls[endpoint],
                    json=self.build_payload(client),
                    headers=headers,
                    timeout=self.timeout,
                ),
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            latency_ms = int((time.perf_counter() - started) * 1000)
            kind = classify_error(e)
            if kind == ErrorKind.AUTH_ERROR:
                # Force a fresh token on the next attempt
                self.tokens.clear_token()
            message = str(e) or type(e).__name__
            logger.error(f"{client.msisdn} -> {endpoint.upper()} -> FAILED ({kind}): {message}")
            return PaymentFailure(
                endpoint=endpoint,
                latency_ms=latency_ms,
                error_kind=kind,
                message=message,
                msisdn=client.msisdn,
            )

        latency_ms = int((time.perf_counter() - started) * 1000)
        try:
            body = resp.json()
        except ValueError:
            body = None
        params = {}
        if isinstance(body, dict) and isinstance(body.get("responseParam"), dict):
            params = body["responseParam"]
        status_code = str(params.get("statusCode", "unknown"))
        description = params.get("description", "No description")

        logger.info(f"{client.msisdn} -> {endpoint.upper()} -> {status_code}: {description} ({latency_ms}ms)")
        return PaymentSuccess(
            endpoint=endpoint,
            latency_ms=latency_ms,
            status_code=status_code,
            description=description,
            msisdn=client.msisdn,
        )
