# Copyright (c) 2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

"""Service types and abstractions."""

from .backend import NormalizedResponse, ServiceBackend, ServiceConfig
from .endpoint import Endpoint, EndpointConfig

__all__ = (
    "Endpoint",
    "EndpointConfig",
    "NormalizedResponse",
    "ServiceBackend",
    "ServiceConfig",
)
