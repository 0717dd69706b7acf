# Copyright (c) 2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from typing import Literal

__all__ = ("AUTH_TYPES", "HeaderFactory")

AUTH_TYPES = Literal["bearer", "x-api-key", "query", "none"]


class HeaderFactory:
    @staticmethod
    def get_content_type_header(content_type: str | None = "application/json") -> dict[str, str]:
        return {"Content-Type": content_type} if content_type else {}

    @staticmethod
    def get_bearer_auth_header(api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    @staticmethod
    def get_x_api_key_header(api_key: str) -> dict[str, str]:
        return {"x-api-key": api_key}

    @staticmethod
    def get_header(
        auth_type: AUTH_TYPES,
        content_type: str | None = "application/json",
        api_key: str | None = None,
        default_headers: dict[str, str] | None = None,
    ) -> dict[str, str]:
        """Build request headers for the given auth scheme.

        ``query`` and ``none`` add no auth header; query-string keys are
        injected into the payload by the endpoint.
        """
        dict_ = HeaderFactory.get_content_type_header(content_type)

        if auth_type in ("bearer", "x-api-key"):
            if not api_key:
                raise ValueError(f"API key is required for auth_type={auth_type!r}")
            if auth_type == "bearer":
                dict_.update(HeaderFactory.get_bearer_auth_header(api_key))
            else:
                dict_.update(HeaderFactory.get_x_api_key_header(api_key))
        elif auth_type not in ("query", "none"):
            raise ValueError(f"Unsupported auth type: {auth_type}")

        if default_headers:
            dict_.update(default_headers)
        return dict_
