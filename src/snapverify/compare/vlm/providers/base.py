from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol
from urllib.parse import urlparse

import orjson
import sentry_sdk
from urllib3 import BaseHTTPResponse, HTTPConnectionPool

from snapverify.compare.vlm.exceptions import VlmApiError
from snapverify.compare.vlm.types import BaseVlmConfig, VlmProviderResponse


class VlmProvider(Protocol):
    def generate(self, config: BaseVlmConfig, images: Sequence[bytes]) -> VlmProviderResponse:
        """
        Sends the prompt and images, in order, to the model and returns its raw answer.
        Transport and API errors propagate to the caller.
        """
        ...


def join_path(base_url: str, path: str) -> str:
    prefix = urlparse(base_url).path.rstrip("/")
    return f"{prefix}{path}"


@sentry_sdk.tracing.trace
def make_vlm_api_request(
    connection_pool: HTTPConnectionPool,
    path: str,
    body: bytes | None = None,
    method: str = "POST",
    headers: dict[str, str] | None = None,
    timeout: int | float | None = None,
) -> BaseHTTPResponse:
    options: dict[str, Any] = {}
    if timeout:
        options["timeout"] = timeout

    return connection_pool.urlopen(
        method,
        path,
        body=body,
        headers={"content-type": "application/json;charset=utf-8", **(headers or {})},
        retries=False,
        **options,
    )


def decode_json_response(response: BaseHTTPResponse, provider: str) -> Any:
    if response.status < 200 or response.status >= 300:
        raise VlmApiError(f"{provider} request failed", response.status)
    try:
        return orjson.loads(response.data)
    except orjson.JSONDecodeError:
        raise VlmApiError(f"{provider} returned invalid JSON response", response.status)


def expect_shape(value: Any, kind: type, provider: str, status: int) -> Any:
    """Returns `value` if it is a `kind`; any other response body is an API error."""
    if not isinstance(value, kind):
        raise VlmApiError(
            f"{provider} returned an unexpected response shape: expected {kind.__name__}, "
            f"got {type(value).__name__}",
            status,
        )
    return value
