from __future__ import annotations

import base64
import logging
import threading
from collections.abc import Sequence
from typing import Any
from urllib.parse import quote

import orjson
from urllib3 import HTTPConnectionPool, connection_from_url

from snapverify.compare.vlm.exceptions import VlmConfigurationError
from snapverify.compare.vlm.providers.base import (
    decode_json_response,
    expect_shape,
    join_path,
    make_vlm_api_request,
)
from snapverify.compare.vlm.types import (
    BaseVlmConfig,
    GeminiVlmConfig,
    VlmProviderResponse,
    comparison_result_json_schema,
)
from snapverify.conf import settings

logger = logging.getLogger(__name__)

IMAGE_MIME_TYPE = "image/png"


def _response_text(data: Any, status: int = 200) -> str | None:
    # Text of the first candidate, skipping any parts flagged as model thoughts.
    # Missing pieces (e.g. a safety block) mean no text; mistyped ones are errors.
    data = expect_shape(data, dict, "Gemini", status)
    candidates = expect_shape(data.get("candidates") or [], list, "Gemini", status)
    if not candidates:
        return None
    candidate = expect_shape(candidates[0], dict, "Gemini", status)
    content = expect_shape(candidate.get("content") or {}, dict, "Gemini", status)
    parts = expect_shape(content.get("parts") or [], list, "Gemini", status)
    texts = []
    for part in parts:
        part = expect_shape(part, dict, "Gemini", status)
        if isinstance(part.get("text"), str) and not part.get("thought"):
            texts.append(part["text"])
    return "".join(texts) or None


class GeminiProvider:
    def __init__(self, base_url: str | None = None) -> None:
        self._base_url = base_url
        self._pool: HTTPConnectionPool | None = None
        self._lock = threading.Lock()

    @property
    def base_url(self) -> str:
        return self._base_url or settings.GEMINI_BASE_URL

    def _get_pool(self) -> HTTPConnectionPool:
        if self._pool is None:
            with self._lock:
                if self._pool is None:
                    self._pool = connection_from_url(
                        self.base_url,
                        timeout=settings.VLM_REQUEST_TIMEOUT,
                        retries=0,
                        maxsize=10,
                    )
        return self._pool

    def generate(self, config: BaseVlmConfig, images: Sequence[bytes]) -> VlmProviderResponse:
        if not isinstance(config, GeminiVlmConfig):
            raise VlmConfigurationError(
                f"GeminiProvider requires a gemini config, got {getattr(config, 'provider', None)}"
            )
        if not config.api_key:
            raise VlmConfigurationError("Gemini API key is required")

        pool = self._get_pool()
        parts: list[dict[str, Any]] = [{"text": config.prompt}]
        parts.extend(
            {
                "inline_data": {
                    "mime_type": IMAGE_MIME_TYPE,
                    "data": base64.b64encode(img).decode("ascii"),
                }
            }
            for img in images
        )
        body = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": config.temperature,
                "responseMimeType": "application/json",
                "responseJsonSchema": comparison_result_json_schema(),
            },
        }

        try:
            response = make_vlm_api_request(
                pool,
                join_path(
                    self.base_url, f"/v1beta/models/{quote(config.model, safe='')}:generateContent"
                ),
                body=orjson.dumps(body),
                headers={"x-goog-api-key": config.api_key},
                timeout=settings.VLM_REQUEST_TIMEOUT,
            )
            data = decode_json_response(response, "Gemini")
        except Exception:
            logger.exception("Gemini generate request failed", extra={"model": config.model})
            raise

        return VlmProviderResponse(content=_response_text(data, response.status))
