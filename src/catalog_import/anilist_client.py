from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import time
from typing import Any

import httpx

from .config import Settings
from .models import CatalogPage, ContentKind, parse_page
from .queries import FULL_CRAWL_SORT, build_page_query
from .rate_limit import AsyncRateLimiter, low_budget_wait_seconds


class CatalogImportError(Exception):
    pass


class RemoteAPIError(CatalogImportError):
    def __init__(self, status_code: int, message: str | None = None) -> None:
        self.status_code = status_code
        super().__init__(message or f"AniList API error: HTTP {status_code}")


class RateLimitedError(RemoteAPIError):
    """Raised after the 429 cool-down; the caller retries the same page."""

    def __init__(self) -> None:
        super().__init__(429, "AniList API error: HTTP 429 Too Many Requests")


class RemoteDataError(CatalogImportError):
    def __init__(self, payload: Any) -> None:
        self.payload = payload
        super().__init__(f"AniList returned GraphQL errors: {payload}")


class RemoteTransportError(CatalogImportError):
    pass


@dataclass(slots=True)
class RequestTelemetry:
    total_requests: int = 0
    successful_requests: int = 0
    rate_limited: int = 0
    low_budget_waits: int = 0
    backoff_seconds: float = 0.0
    errors: int = 0
    total_latency_seconds: float = 0.0

    @property
    def mean_latency_ms(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return (self.total_latency_seconds / self.total_requests) * 1000.0


Sleeper = Callable[[float], Awaitable[None]]


class AniListClient:
    def __init__(
        self,
        settings: Settings,
        telemetry: RequestTelemetry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleeper = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.telemetry = telemetry or RequestTelemetry()
        self._sleep = sleep
        self._clock = clock
        self._limiter = AsyncRateLimiter(
            max_calls=settings.rate_limit_calls,
            period_seconds=settings.rate_limit_period_seconds,
        )
        self._client = httpx.AsyncClient(
            timeout=settings.timeout_seconds,
            headers={
                "User-Agent": "catalog-import/0.1",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            transport=transport,
        )

    async def __aenter__(self) -> AniListClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    def _wait_for_budget(self, headers: httpx.Headers) -> float:
        raw_remaining = headers.get("X-RateLimit-Remaining")
        if raw_remaining is None:
            return 0.0
        try:
            remaining = int(raw_remaining)
        except ValueError:
            return 0.0

        seconds_until_reset: float | None = None
        raw_reset = headers.get("X-RateLimit-Reset")
        if raw_reset:
            try:
                seconds_until_reset = float(raw_reset) - self._clock()
            except ValueError:
                seconds_until_reset = None

        return low_budget_wait_seconds(
            remaining,
            low_water_mark=self.settings.low_water_mark,
            step_seconds=self.settings.backoff_step_seconds,
            max_wait_seconds=self.settings.max_backoff_seconds,
            seconds_until_reset=seconds_until_reset,
        )

    async def post_query(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        await self._limiter.acquire()
        started_at = time.monotonic()
        self.telemetry.total_requests += 1
        try:
            response = await self._client.post(
                self.settings.api_url,
                json={"query": query, "variables": variables},
            )
        except httpx.HTTPError as exc:
            self.telemetry.errors += 1
            raise RemoteTransportError(f"AniList request failed: {exc}") from exc
        finally:
            self.telemetry.total_latency_seconds += time.monotonic() - started_at

        wait_seconds = self._wait_for_budget(response.headers)
        if wait_seconds > 0:
            self.telemetry.low_budget_waits += 1
            self.telemetry.backoff_seconds += wait_seconds
            await self._sleep(wait_seconds)

        if response.status_code == 429:
            self.telemetry.rate_limited += 1
            self.telemetry.backoff_seconds += self.settings.cooldown_seconds
            await self._sleep(self.settings.cooldown_seconds)
            raise RateLimitedError()

        if not response.is_success:
            self.telemetry.errors += 1
            raise RemoteAPIError(response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            self.telemetry.errors += 1
            raise RemoteDataError({"message": "response body is not JSON"}) from exc

        if not isinstance(payload, dict):
            self.telemetry.errors += 1
            raise RemoteDataError({"message": "unexpected response shape"})
        if payload.get("errors"):
            self.telemetry.errors += 1
            raise RemoteDataError(payload["errors"])

        self.telemetry.successful_requests += 1
        return payload

    async def fetch_page(
        self,
        kind: ContentKind,
        page: int,
        per_page: int,
        *,
        strategy: str = "standard",
        sort: str = FULL_CRAWL_SORT,
    ) -> CatalogPage:
        query = build_page_query(kind, strategy=strategy, sort=sort)
        payload = await self.post_query(query, {"page": page, "perPage": per_page})
        return parse_page(payload, requested_page=page)
