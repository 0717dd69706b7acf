# Copyright (c) 2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from abc import abstractmethod
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class NormalizedResponse(BaseModel):
    """Generic normalized response for all service backends.

    ``status`` is ``"fallback"`` when the value came from a circuit-breaker
    fallback rather than the upstream; such responses are never cached.
    """

    status: Literal["success", "error", "fallback"] = Field(
        ..., description="Response status: 'success', 'error' or 'fallback'"
    )
    data: Any = Field(None, description="Response payload (any type)")
    error: str | None = Field(None, description="Error message if status='error'")
    raw_response: dict = Field(..., description="Original unmodified response")
    metadata: dict | None = Field(None, description="Provider-specific metadata")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict (alias for model_dump)."""
        return self.model_dump(exclude_none=True)


class ServiceConfig(BaseModel):
    provider: str
    name: str
    request_options: type[BaseModel] | None = None


class ServiceBackend(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    config: ServiceConfig

    @property
    def provider(self) -> str:
        return self.config.provider

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def request_options(self):
        """Request options schema (Pydantic model type)."""
        return getattr(self.config, "request_options", None)

    @abstractmethod
    async def call(self, *args, **kw) -> NormalizedResponse: ...
