# Copyright (c) 2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

"""Provider-specific endpoints and clients."""

from .alpha_vantage import (
    AlphaVantageEndpoint,
    GlobalQuoteRequest,
    QuoteClient,
    StockQuote,
    create_alpha_vantage_config,
)

__all__ = (
    "AlphaVantageEndpoint",
    "GlobalQuoteRequest",
    "QuoteClient",
    "StockQuote",
    "create_alpha_vantage_config",
)
