"""
RateLimitedClient - async HTTP client for rate-limited third-party APIs.

Every request runs as ``with_retry(lambda: limiter.with_rate_limit(call))``:
- transient failures (timeouts, 429, 5xx, connection errors) are retried
- each retry attempt takes its own limiter slot, so a burst of retries can
  never exceed the target's configured rate
"""

from typing import Any

import httpx
from loguru import logger

from newsletter.services.errors import (
    RateLimitError,
    RequestTimeoutError,
    ServiceError,
    ServiceUnavailableError,
    TransientServiceError,
)
from newsletter.services.rate_limiter import RateLimiter
from newsletter.services.retry import RetryConfig, with_retry


def default_client_retry_config() -> RetryConfig:
    """Retry policy that leaves non-transient errors (4xx) alone."""
    return RetryConfig(retry_on=(TransientServiceError,))


class RateLimitedClient:
    """
    HTTP client bound to one external service.

    Usage:
        limiter = RateLimiter(RateLimiterConfig(max_requests=10, concurrency=3))
        client = RateLimitedClient(
            service_id="mailchimp",
            base_url="https://us21.api.mailchimp.com/3.0",
            rate_limiter=limiter,
        )

        lists = await client.request("GET", "/lists")
    """

    def __init__(
        self,
        service_id: str,
        base_url: str,
        *,
        rate_limiter: RateLimiter,
        retry_config: RetryConfig | None = None,
        headers: dict[str, str] | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.service_id = service_id
        self.base_url = base_url
        self.rate_limiter = rate_limiter
        self.retry_config = retry_config or default_client_retry_config()
        self._headers = headers or {}
        self._auth = auth
        self._timeout = timeout
        self._transport = transport

        # HTTP client (lazy initialization)
        self._http_client: httpx.AsyncClient | None = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers,
                auth=self._auth,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
                follow_redirects=True,
            )
        return self._http_client

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
    ) -> dict[str, Any]:
        """
        Make a throttled, retried HTTP request.

        Returns:
            Decoded JSON body, or an empty dict for an empty body

        Raises:
            RetryExhaustedError: transient failures on every attempt
            ServiceError: non-transient failure (e.g. HTTP 4xx)
        """

        async def call() -> dict[str, Any]:
            return await self._execute_request(method, path, params, json_data)

        return await with_retry(
            lambda: self.rate_limiter.with_rate_limit(call),
            self.retry_config,
        )

    async def get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json_data: Any = None) -> dict[str, Any]:
        return await self.request("POST", path, json_data=json_data)

    async def put(self, path: str, json_data: Any = None) -> dict[str, Any]:
        return await self.request("PUT", path, json_data=json_data)

    async def _execute_request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        json_data: Any,
    ) -> dict[str, Any]:
        """Execute the actual HTTP request."""
        client = await self._get_http_client()

        try:
            response = await client.request(
                method=method,
                url=path,
                params=params,
                json=json_data,
            )
            response.raise_for_status()
            if not response.content:
                return {}
            return response.json()

        except httpx.TimeoutException as e:
            raise RequestTimeoutError(self.service_id, self._timeout) from e

        except httpx.HTTPStatusError as e:
            raise self._status_error(e.response) from e

        except httpx.RequestError as e:
            raise ServiceUnavailableError(str(e), service_id=self.service_id) from e

    def _status_error(self, response: httpx.Response) -> ServiceError:
        status = response.status_code
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            return RateLimitError(
                self.service_id,
                float(retry_after) if retry_after and retry_after.isdigit() else None,
            )

        message = f"HTTP {status}: {response.text[:200]}"
        if status >= 500:
            return ServiceUnavailableError(
                message, service_id=self.service_id, status_code=status
            )
        return ServiceError(message, service_id=self.service_id, status_code=status)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.debug(f"RateLimitedClient '{self.service_id}' closed")

    async def __aenter__(self) -> "RateLimitedClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def get_status(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "base_url": self.base_url,
            "rate_limiter": self.rate_limiter.get_status(),
            "max_attempts": self.retry_config.max_attempts,
        }
