# Copyright (c) 2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import os
from typing import Any

import httpx
from pydantic import (
    BaseModel,
    Field,
    PrivateAttr,
    SecretStr,
    field_serializer,
    field_validator,
    model_validator,
)

from ...errors import (
    AuthenticationExpiredError,
    PermanentUpstreamError,
    RateLimitedError,
    TransientUpstreamError,
    UpstreamError,
)
from ..utilities.header_factory import AUTH_TYPES, HeaderFactory
from ..utilities.resilience import CircuitBreaker, FallbackBreaker, RetryConfig, retry_with_backoff
from .backend import NormalizedResponse, ServiceBackend, ServiceConfig

logger = logging.getLogger(__name__)


def parse_retry_after(value: str | None) -> float | None:
    """Parse a delta-seconds ``Retry-After`` header; HTTP dates are ignored."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class EndpointConfig(ServiceConfig):
    base_url: str | None = None
    endpoint: str
    endpoint_params: list[str] | None = None
    method: str = "GET"
    params: dict[str, str] = Field(default_factory=dict)
    content_type: str | None = "application/json"
    auth_type: AUTH_TYPES = "bearer"
    api_key_param: str = "apikey"
    default_headers: dict = {}
    api_key: str | SecretStr | None = Field(None, exclude=True)
    timeout: float = 5.0
    kwargs: dict = Field(default_factory=dict)
    client_kwargs: dict = Field(default_factory=dict)
    _api_key: str | None = PrivateAttr(None)

    @model_validator(mode="before")
    def _validate_kwargs(cls, data: dict):  # noqa: N805
        if not isinstance(data, dict):
            return data
        data = dict(data)
        kwargs = dict(data.pop("kwargs", {}) or {})
        field_keys = set(cls.model_fields.keys())
        for k in list(data.keys()):
            if k not in field_keys:
                kwargs[k] = data.pop(k)
        data["kwargs"] = kwargs
        return data

    @model_validator(mode="after")
    def _validate_api_key(self):
        if self.api_key is not None:
            if isinstance(self.api_key, SecretStr):
                self._api_key = self.api_key.get_secret_value()
            elif isinstance(self.api_key, str):
                # Try environment variable first, then use as-is
                self._api_key = os.getenv(self.api_key, self.api_key)

        return self

    @field_validator("provider", mode="before")
    def _validate_provider(cls, v: str):  # noqa: N805
        if not v:
            raise ValueError("Provider must be specified")
        return v.strip().lower()

    @field_validator("method", mode="before")
    def _validate_method(cls, v: str):  # noqa: N805
        return v.strip().upper()

    @property
    def full_url(self):
        endpoint = self.endpoint.lstrip("/")
        if self.endpoint_params:
            endpoint = endpoint.format(**self.params)
        if not self.base_url:
            return f"/{endpoint}"
        return f"{self.base_url.rstrip('/')}/{endpoint}"

    @field_validator("request_options", mode="before")
    def _validate_request_options(cls, v):  # noqa: N805
        if v is None:
            return None
        if isinstance(v, type) and issubclass(v, BaseModel):
            return v
        if isinstance(v, BaseModel):
            return v.__class__
        raise ValueError("Invalid request options: must be a Pydantic model")

    @field_serializer("request_options")
    def _serialize_request_options(self, v: type[BaseModel] | None):
        if v is None:
            return None
        return v.model_json_schema()

    def update(self, **kwargs):
        """Update the config with new values."""
        if "kwargs" in kwargs:
            self.kwargs.update(kwargs.pop("kwargs"))

        for key, value in kwargs.items():
            if key in type(self).model_fields:
                setattr(self, key, value)
            else:
                self.kwargs[key] = value

    def validate_payload(self, data: dict[str, Any]) -> dict[str, Any]:
        if not self.request_options:
            return data

        try:
            validated = self.request_options.model_validate(data)
        except Exception as e:
            raise ValueError("Invalid payload") from e
        return validated.model_dump(exclude_none=True)


class Endpoint(ServiceBackend):
    circuit_breaker: CircuitBreaker | FallbackBreaker | None = Field(None, exclude=True)
    retry_config: RetryConfig | None = Field(None, exclude=True)
    config: EndpointConfig

    def __init__(
        self,
        config: dict | EndpointConfig,
        circuit_breaker: CircuitBreaker | FallbackBreaker | None = None,
        retry_config: RetryConfig | None = None,
        **kwargs,
    ):
        if isinstance(config, dict):
            _config = EndpointConfig(**config, **kwargs)
        elif isinstance(config, EndpointConfig):
            _config = config.model_copy(deep=True)
            _config.update(**kwargs)
        else:
            raise ValueError("Config must be a dict or EndpointConfig instance")

        super().__init__(
            config=_config,
            circuit_breaker=circuit_breaker,
            retry_config=retry_config,
        )

        logger.debug(
            f"Initialized Endpoint with provider={self.config.provider}, "
            f"endpoint={self.config.endpoint}, circuit_breaker={circuit_breaker is not None}, "
            f"retry_config={retry_config is not None}"
        )

    def _create_http_client(self) -> httpx.AsyncClient:
        """Create a new HTTP client for requests."""
        return httpx.AsyncClient(
            timeout=self.config.timeout,
            **self.config.client_kwargs,
        )

    @property
    def full_url(self) -> str:
        return self.config.full_url

    def normalize_response(self, raw_response: dict) -> NormalizedResponse:
        """Normalize raw API response. Override in provider-specific endpoints."""
        return NormalizedResponse(
            status="success",
            data=raw_response,
            raw_response=raw_response,
        )

    def create_payload(
        self,
        request: dict | BaseModel,
        extra_headers: dict | None = None,
        **kwargs,
    ) -> tuple[dict, dict]:
        headers = HeaderFactory.get_header(
            auth_type=self.config.auth_type,
            content_type=self.config.content_type,
            api_key=self.config._api_key,
            default_headers=self.config.default_headers,
        )
        if extra_headers:
            headers.update(extra_headers)

        request = request if isinstance(request, dict) else request.model_dump(exclude_none=True)

        payload = self.config.kwargs.copy()
        payload.update(request)
        if kwargs:
            payload.update(kwargs)

        if self.config.request_options is not None:
            valid_fields = set(self.config.request_options.model_fields.keys())
            payload = {k: v for k, v in payload.items() if k in valid_fields}
            payload = self.config.validate_payload(payload)

        if self.config.auth_type == "query":
            if not self.config._api_key:
                raise ValueError("API key is required for auth_type='query'")
            payload[self.config.api_key_param] = self.config._api_key

        return (payload, headers)

    async def _call(self, payload: dict, headers: dict, **kwargs):
        return await self._call_http(payload=payload, headers=headers, **kwargs)

    async def call(
        self,
        request: dict | BaseModel,
        skip_payload_creation: bool = False,
        **kwargs,
    ) -> NormalizedResponse:
        """
        Make a call to the endpoint.

        The circuit breaker (if any) wraps the retry loop (if any), which wraps
        the HTTP request.

        Args:
            request: The request parameters or model.
            skip_payload_creation: Whether to skip create_payload and treat request as ready payload.
            **kwargs: Additional keyword arguments for the request.

        Returns:
            NormalizedResponse from the endpoint.
        """
        extra_headers = kwargs.pop("extra_headers", None)

        if skip_payload_creation:
            payload = request if isinstance(request, dict) else request.model_dump()
            headers = extra_headers or {}
        else:
            payload, headers = self.create_payload(request, extra_headers=extra_headers, **kwargs)
            kwargs = {}

        call_func = self._call

        if self.retry_config:

            async def call_func(p, h, **kw):
                return await retry_with_backoff(
                    self._call, p, h, **kw, **self.retry_config.as_kwargs()
                )

        from_fallback = False
        if isinstance(self.circuit_breaker, FallbackBreaker):
            raw_response, from_fallback = await self.circuit_breaker.execute_tracked(
                call_func, payload, headers, **kwargs
            )
        elif self.circuit_breaker:
            raw_response = await self.circuit_breaker.execute(call_func, payload, headers, **kwargs)
        else:
            raw_response = await call_func(payload, headers, **kwargs)

        if from_fallback:
            return self._mark_fallback(raw_response)
        return self.normalize_response(raw_response)

    def _mark_fallback(self, raw_response: Any) -> NormalizedResponse:
        """Normalize a fallback value; usable data is reported as ``fallback``, not ``success``."""
        if isinstance(raw_response, NormalizedResponse):
            response = raw_response
        elif isinstance(raw_response, dict):
            response = self.normalize_response(raw_response)
        else:
            return NormalizedResponse(status="fallback", data=raw_response, raw_response={})

        if response.status != "success":
            return response
        metadata = {**(response.metadata or {}), "fallback": True}
        return response.model_copy(update={"status": "fallback", "metadata": metadata})

    def _map_status_error(self, response: httpx.Response) -> UpstreamError:
        status = response.status_code
        service = self.config.name
        try:
            details = response.json()
        except ValueError:
            details = response.text

        if status == 429:
            return RateLimitedError(
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                service=service,
                details=details,
            )
        if status == 401:
            return AuthenticationExpiredError(service=service, status_code=status, details=details)
        if status >= 500:
            return TransientUpstreamError(
                "Server error", service=service, status_code=status, details=details
            )
        return PermanentUpstreamError(
            f"Request failed with status {status}",
            service=service,
            status_code=status,
            details=details,
        )

    async def _call_http(self, payload: dict, headers: dict, **kwargs):
        request_kwargs = {"params": payload} if self.config.method == "GET" else {"json": payload}
        request_kwargs.update(kwargs)

        async with self._create_http_client() as client:
            try:
                response = await client.request(
                    method=self.config.method,
                    url=self.config.full_url,
                    headers=headers,
                    **request_kwargs,
                )
            except httpx.TimeoutException as e:
                raise TransientUpstreamError("Request timed out", service=self.config.name) from e
            except httpx.TransportError as e:
                raise TransientUpstreamError(
                    f"Failed to connect: {e}", service=self.config.name
                ) from e

            if response.status_code >= 400:
                raise self._map_status_error(response)
            if response.status_code == 204:
                return {}

            try:
                return response.json()
            except ValueError as e:
                raise PermanentUpstreamError(
                    "Response body is not valid JSON",
                    service=self.config.name,
                    status_code=response.status_code,
                    details=response.text,
                ) from e

    def to_dict(self):
        return {
            "retry_config": (self.retry_config.to_dict() if self.retry_config else None),
            "circuit_breaker": (self.circuit_breaker.to_dict() if self.circuit_breaker else None),
            "config": self.config.model_dump(exclude_none=True),
        }

    @classmethod
    def from_dict(cls, data: dict):
        if not isinstance(data, dict):
            raise TypeError(f"Expected dict, got {type(data)}")

        retry_config = data.get("retry_config")
        circuit_breaker = data.get("circuit_breaker")
        config = data.get("config")

        if retry_config:
            retry_config = RetryConfig(**retry_config)
        if circuit_breaker:
            circuit_breaker = CircuitBreaker(**circuit_breaker)
        if isinstance(config, dict) and isinstance(config.get("request_options"), dict):
            # Serialized as a JSON schema; the model class itself is not recoverable
            config = {k: v for k, v in config.items() if k != "request_options"}

        return cls(
            config=config,
            circuit_breaker=circuit_breaker,
            retry_config=retry_config,
        )
