from __future__ import annotations

import base64
import logging
import threading
from collections.abc import Sequence

import orjson
from pydantic import BaseModel, ConfigDict
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
    OllamaVlmConfig,
    VlmProviderResponse,
    comparison_result_json_schema,
)
from snapverify.conf import settings

logger = logging.getLogger(__name__)


class OllamaModel(BaseModel):
    model_config = ConfigDict(extra="allow", protected_namespaces=())

    name: str
    model: str | None = None
    modified_at: str | None = None
    size: int | None = None
    digest: str | None = None


class OllamaProvider:
    """
    Talks to a local Ollama server. The connection pool is created on first use, so a
    missing OLLAMA_BASE_URL only fails the comparisons that actually reach this provider.
    """

    def __init__(self, base_url: str | None = None) -> None:
        self._base_url = base_url
        self._pool: HTTPConnectionPool | None = None
        self._lock = threading.Lock()

    @property
    def base_url(self) -> str:
        base_url = self._base_url or settings.OLLAMA_BASE_URL
        if not base_url:
            raise VlmConfigurationError("OLLAMA_BASE_URL is not configured")
        return base_url

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
        if not isinstance(config, OllamaVlmConfig):
            raise VlmConfigurationError(
                f"OllamaProvider requires an ollama config, got {getattr(config, 'provider', None)}"
            )

        pool = self._get_pool()
        body = {
            "model": config.model,
            "messages": [
                {
                    "role": "user",
                    "content": config.prompt,
                    "images": [base64.b64encode(img).decode("ascii") for img in images],
                }
            ],
            "stream": False,
            "format": comparison_result_json_schema(),
            "options": {"temperature": config.temperature},
        }

        try:
            response = make_vlm_api_request(
                pool,
                join_path(self.base_url, "/api/chat"),
                body=orjson.dumps(body),
                timeout=settings.VLM_REQUEST_TIMEOUT,
            )
            data = decode_json_response(response, "Ollama")
        except Exception:
            logger.exception("Ollama generate request failed", extra={"model": config.model})
            raise

        data = expect_shape(data, dict, "Ollama", response.status)
        # A reply without a message is an empty answer, not a malformed one.
        message = expect_shape(data.get("message") or {}, dict, "Ollama", response.status)
        content = message.get("content")
        thinking = message.get("thinking")
        for value in (content, thinking):
            if value is not None:
                expect_shape(value, str, "Ollama", response.status)
        return VlmProviderResponse(content=content, thinking=thinking)

    def list_models(self) -> list[OllamaModel]:
        pool = self._get_pool()
        try:
            response = make_vlm_api_request(
                pool,
                join_path(self.base_url, "/api/tags"),
                method="GET",
                timeout=settings.VLM_REQUEST_TIMEOUT,
            )
            data = decode_json_response(response, "Ollama")
        except Exception:
            logger.exception("Failed to list Ollama models")
            raise
        data = expect_shape(data, dict, "Ollama", response.status)
        models = expect_shape(data.get("models") or [], list, "Ollama", response.status)
        return [OllamaModel.model_validate(m) for m in models]
