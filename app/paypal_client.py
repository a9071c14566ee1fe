"""
Authenticated, retrying HTTP client for the PayPal REST API.

Retry policy:
- transport errors (timeouts, resets, DNS), HTTP >= 500 and HTTP 429 are
  retried following ``RETRY_DELAYS``; ``Retry-After`` overrides the table
- HTTP 401 drops the cached token and replays the call once with a new one
- any other 4xx raises immediately

Every retry and every final failure is handed to the optional error recorder
so it lands in the ledger.
"""
import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence

import httpx

logger = logging.getLogger(__name__)

RETRY_DELAYS = (2.0, 5.0, 10.0)
REQUEST_TIMEOUT = 30.0
TOKEN_EXPIRY_MARGIN = 60.0
DEFAULT_TOKEN_LIFETIME = 32400

ErrorRecorder = Callable[[str, "PayPalError", Dict[str, Any]], Awaitable[None]]


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait from a ``Retry-After`` header, given as seconds or as an HTTP-date."""
    if not value:
        return None
    try:
        delay = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return max(0.0, (when - (now or datetime.now(timezone.utc))).total_seconds())
    return delay if delay >= 0 else None


class PayPalError(Exception):
    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        payload: Optional[Any] = None,
        retryable: bool = False,
        attempts: int = 1,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload
        self.retryable = retryable
        self.attempts = attempts

    @classmethod
    def from_response(cls, response: httpx.Response, context: str) -> "PayPalError":
        try:
            payload = response.json()
        except ValueError:
            payload = response.text or None
        return cls(
            f"{context} failed with HTTP {response.status_code}",
            status_code=response.status_code,
            payload=payload,
            retryable=is_retryable_status(response.status_code),
        )

    @property
    def issue(self) -> Optional[str]:
        """First ``details[].issue`` reported by PayPal, falling back to ``name``."""
        if not isinstance(self.payload, dict):
            return None
        details = self.payload.get("details")
        if isinstance(details, list) and details and isinstance(details[0], dict):
            return details[0].get("issue") or self.payload.get("name")
        return self.payload.get("name")

    @property
    def debug_id(self) -> Optional[str]:
        return self.payload.get("debug_id") if isinstance(self.payload, dict) else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "status": self.status_code,
            "issue": self.issue,
            "debug_id": self.debug_id,
            "response": self.payload,
            "attempts": self.attempts,
        }


class PayPalAuthError(PayPalError):
    pass


class TokenCache:
    """Bearer token with its expiry, owned by one client instance."""

    def __init__(self, clock: Callable[[], float] = time.monotonic, margin: float = TOKEN_EXPIRY_MARGIN):
        self._clock = clock
        self._margin = margin
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def get(self) -> Optional[str]:
        if self._token and self._clock() < self._expires_at - self._margin:
            return self._token
        return None

    def set(self, token: str, expires_in: Optional[float] = None) -> None:
        self._token = token
        self._expires_at = self._clock() + float(expires_in or DEFAULT_TOKEN_LIFETIME)

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0


class PayPalClient:
    def __init__(
        self,
        base_url: str,
        client_id: Optional[str],
        client_secret: Optional[str],
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        token_cache: Optional[TokenCache] = None,
        retry_delays: Sequence[float] = RETRY_DELAYS,
        timeout: float = REQUEST_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        error_recorder: Optional[ErrorRecorder] = None,
        request_id_prefix: str = "ngo",
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_cache = token_cache or TokenCache()
        self.retry_delays = tuple(retry_delays)
        self.timeout = timeout
        self.error_recorder = error_recorder
        self.request_id_prefix = request_id_prefix
        self._sleep = sleep
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @property
    def max_retries(self) -> int:
        return len(self.retry_delays)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def new_request_id(self) -> str:
        return f"{self.request_id_prefix}-{uuid.uuid4().hex}"

    def operation_request_id(self, operation: str, resource_id: str) -> str:
        return f"{self.request_id_prefix}-{operation}-{resource_id}"

    async def get_access_token(self) -> str:
        token = self.token_cache.get()
        if token:
            return token

        attempt = 0
        while True:
            try:
                return await self._fetch_token()
            except PayPalError as exc:
                self.token_cache.invalidate()
                exc.attempts = attempt + 1
                if exc.retryable and attempt < self.max_retries:
                    delay = self.retry_delays[attempt]
                    logger.warning(
                        f"[PayPal] getAccessToken retry {attempt + 1}/{self.max_retries} in {delay:.1f}s: {exc}"
                    )
                    await self._record("get_access_token", exc, {"attempt": attempt})
                    await self._sleep(delay)
                    attempt += 1
                    continue
                logger.error(f"[PayPal] getAccessToken FAILED after {attempt + 1} attempt(s): {exc.payload or exc}")
                await self._record("get_access_token", exc, {"attempt": attempt, "final": True})
                raise

    async def _fetch_token(self) -> str:
        try:
            response = await self._http.post(
                f"{self.base_url}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id or "", self.client_secret or ""),
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.TransportError as exc:
            raise PayPalAuthError(f"Token request failed: {type(exc).__name__}: {exc}", retryable=True) from exc

        if response.status_code >= 400:
            error = PayPalError.from_response(response, "Token request")
            raise PayPalAuthError(error.message, status_code=error.status_code, payload=error.payload,
                                  retryable=error.retryable)

        try:
            data = response.json()
        except ValueError as exc:
            raise PayPalAuthError("Token response is not JSON", status_code=response.status_code) from exc

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise PayPalAuthError("Token response carries no access_token", status_code=response.status_code,
                                  payload=data)
        self.token_cache.set(token, data.get("expires_in"))
        return token

    async def request(
        self,
        method: str,
        path: str,
        body: Optional[Any] = None,
        *,
        params: Optional[Mapping[str, Any]] = None,
        context: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Any:
        """Call ``path`` and return its decoded JSON body (``{}`` when empty).

        ``request_id`` is sent as ``PayPal-Request-Id``; callers pass a stable one
        when PayPal must collapse repeated calls into one operation.
        """
        method = method.upper()
        context = context or f"{method} {path}"
        request_id = request_id or self.new_request_id()
        token_refreshed = False
        attempt = 0

        while True:
            token = await self.get_access_token()
            headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "PayPal-Request-Id": request_id,
            }
            retry_after = None
            try:
                response = await self._http.request(
                    method,
                    f"{self.base_url}{path}",
                    json=body,
                    params=params,
                    headers=headers,
                    timeout=self.timeout,
                )
            except httpx.TransportError as exc:
                error = PayPalError(f"{context} failed: {type(exc).__name__}: {exc}", retryable=True)
            else:
                if response.status_code < 400:
                    if attempt:
                        logger.info(f"[PayPal] {context} succeeded after {attempt + 1} attempts")
                    return self._decode(response, context)
                if response.status_code == 401 and not token_refreshed:
                    logger.info(f"[PayPal] Token rejected on {context}, refreshing")
                    self.token_cache.invalidate()
                    token_refreshed = True
                    continue
                error = PayPalError.from_response(response, context)
                retry_after = parse_retry_after(response.headers.get("Retry-After"))

            error.attempts = attempt + 1
            extra = {"attempt": attempt, "method": method, "path": path, "request_id": request_id}
            if error.retryable and attempt < self.max_retries:
                delay = retry_after if retry_after is not None else self.retry_delays[attempt]
                logger.warning(
                    f"[PayPal] {context} retry {attempt + 1}/{self.max_retries} in {delay:.1f}s "
                    f"(status={error.status_code}): {error.message}"
                )
                await self._record(context, error, extra)
                await self._sleep(delay)
                attempt += 1
                continue

            logger.error(
                f"[PayPal] {context} FAILED after {attempt + 1} attempt(s): status={error.status_code} "
                f"issue={error.issue} debug_id={error.debug_id} response={error.payload}"
            )
            await self._record(context, error, {**extra, "final": True, "body": body})
            raise error

    @staticmethod
    def _decode(response: httpx.Response, context: str) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise PayPalError(f"{context} returned a non-JSON body", status_code=response.status_code,
                              payload=response.text) from exc

    async def _record(self, context: str, error: PayPalError, extra: Dict[str, Any]) -> None:
        if self.error_recorder is None:
            return
        try:
            await self.error_recorder(context, error, extra)
        except Exception:
            logger.exception(f"[PayPal] Failed to record error for {context}")
