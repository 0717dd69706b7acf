# Copyright (c) 2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...errors import PermanentUpstreamError, RateLimitedError
from ..client import ResilientClient
from ..types import NormalizedResponse
from ..types.endpoint import Endpoint, EndpointConfig
from ..utilities.cache import TTLCache
from ..utilities.rate_limiter import RateLimitConfig, RateLimiter
from ..utilities.resilience import CircuitBreaker, FallbackBreaker, RetryConfig

__all__ = (
    "AlphaVantageEndpoint",
    "GlobalQuoteRequest",
    "QuoteClient",
    "StockQuote",
    "create_alpha_vantage_config",
)

logger = logging.getLogger(__name__)

# Alpha Vantage reports throttling with HTTP 200 and one of these keys
THROTTLE_KEYS = ("Note", "Information")


class GlobalQuoteRequest(BaseModel):
    function: Literal["GLOBAL_QUOTE"] = "GLOBAL_QUOTE"
    symbol: str

    @field_validator("symbol", mode="before")
    def _validate_symbol(cls, v: str):  # noqa: N805
        if not isinstance(v, str) or not v.strip():
            raise ValueError("symbol must be a non-empty string")
        return v.strip().upper()


class StockQuote(BaseModel):
    """One ``"Global Quote"`` record, keyed by Alpha Vantage's numbered fields."""

    model_config = ConfigDict(populate_by_name=True)

    symbol: str = Field(..., alias="01. symbol")
    open: float | None = Field(None, alias="02. open")
    high: float | None = Field(None, alias="03. high")
    low: float | None = Field(None, alias="04. low")
    price: float = Field(..., alias="05. price")
    volume: int | None = Field(None, alias="06. volume")
    latest_trading_day: str | None = Field(None, alias="07. latest trading day")
    previous_close: float | None = Field(None, alias="08. previous close")
    change: float | None = Field(None, alias="09. change")
    change_percent: float | None = Field(None, alias="10. change percent")

    @field_validator("change_percent", mode="before")
    def _strip_percent(cls, v):  # noqa: N805
        if isinstance(v, str):
            return v.strip().rstrip("%") or None
        return v


def create_alpha_vantage_config(
    api_key: str | None = None,
    base_url: str = "https://www.alphavantage.co",
    endpoint: str = "query",
    timeout: float = 5.0,
    **kwargs,
) -> EndpointConfig:
    """Factory for Alpha Vantage quote API config.

    Args:
        api_key: API key or env var name (default: "ALPHA_VANTAGE_API_KEY")
        base_url: Base API URL
        endpoint: Endpoint path
        timeout: Per-request timeout in seconds
        **kwargs: Additional config parameters

    Returns:
        EndpointConfig instance
    """
    return EndpointConfig(
        provider="alpha_vantage",
        name="alpha_vantage_global_quote",
        base_url=base_url,
        endpoint=endpoint,
        method="GET",
        auth_type="query",
        api_key_param="apikey",
        api_key=api_key or "ALPHA_VANTAGE_API_KEY",
        timeout=timeout,
        request_options=GlobalQuoteRequest,
        **kwargs,
    )


class AlphaVantageEndpoint(Endpoint):
    """Alpha Vantage ``GLOBAL_QUOTE`` endpoint.

    Usage:
        endpoint = AlphaVantageEndpoint(api_key="ALPHA_VANTAGE_API_KEY")
        response = await endpoint.call({"symbol": "IBM"})
        quote = response.data  # StockQuote
    """

    def __init__(
        self,
        config: dict | EndpointConfig | None = None,
        circuit_breaker: CircuitBreaker | FallbackBreaker | None = None,
        retry_config: RetryConfig | None = None,
        **kwargs,
    ):
        if config is None:
            config = create_alpha_vantage_config(**kwargs)
            kwargs = {}
        super().__init__(
            config=config, circuit_breaker=circuit_breaker, retry_config=retry_config, **kwargs
        )

    async def _call(self, payload: dict, headers: dict, **kwargs):
        raw_response = await self._call_http(payload=payload, headers=headers, **kwargs)

        for key in THROTTLE_KEYS:
            if key in raw_response:
                raise RateLimitedError(
                    str(raw_response[key]),
                    service=self.config.name,
                    status_code=None,
                    details=raw_response,
                )
        if "Error Message" in raw_response:
            raise PermanentUpstreamError(
                str(raw_response["Error Message"]),
                service=self.config.name,
                details=raw_response,
            )
        return raw_response

    def normalize_response(self, raw_response: dict) -> NormalizedResponse:
        record = raw_response.get("Global Quote") or {}
        if not record:
            return NormalizedResponse(
                status="error",
                error=f"No quote returned for {raw_response}",
                raw_response=raw_response,
            )

        return NormalizedResponse(
            status="success",
            data=StockQuote.model_validate(record),
            raw_response=raw_response,
            metadata={"provider": self.config.provider},
        )


class QuoteClient(ResilientClient):
    """Cached, paced and circuit-protected stock quote lookups."""

    endpoint: AlphaVantageEndpoint

    @classmethod
    def create(
        cls,
        api_key: str | None = None,
        *,
        max_requests: int = 5,
        window: float = 60.0,
        rate_limit_cooldown: float = 60.0,
        cache_ttl: float = 300.0,
        failure_threshold: int = 3,
        recovery_time: float = 10.0,
        fallback: Callable[[], Awaitable[Any]] | None = None,
        retry_config: RetryConfig | None = None,
        **config_kwargs,
    ) -> QuoteClient:
        """Wire a cache, rate limiter and circuit breaker around an AlphaVantageEndpoint."""
        breaker: CircuitBreaker | FallbackBreaker = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_time=recovery_time,
            name="alpha_vantage",
        )
        if fallback is not None:
            breaker = FallbackBreaker(breaker, fallback)

        endpoint = AlphaVantageEndpoint(
            config=create_alpha_vantage_config(api_key=api_key, **config_kwargs),
            circuit_breaker=breaker,
            retry_config=retry_config,
        )
        rate_limiter = RateLimiter(
            RateLimitConfig(
                max_requests=max_requests,
                window=window,
                rate_limit_cooldown=rate_limit_cooldown,
            ),
            name="alpha_vantage",
        )
        return cls(endpoint, rate_limiter, cache=TTLCache(ttl=cache_ttl, name="quotes"))

    async def get_quote(self, symbol: str, use_cache: bool = True) -> NormalizedResponse:
        request = GlobalQuoteRequest(symbol=symbol)
        return await self.call(request, cache_key=request.symbol, use_cache=use_cache)
