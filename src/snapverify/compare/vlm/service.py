from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import orjson
from pydantic import ValidationError

from snapverify.compare.image_utils import encode_png
from snapverify.compare.pixelmatch import DEFAULT_CONFIG as PIXELMATCH_DEFAULT_CONFIG
from snapverify.compare.pixelmatch import PixelmatchComparator
from snapverify.compare.types import DiffResult, ImageCompareInput, TestStatus
from snapverify.compare.utils import parse_config
from snapverify.compare.vlm.exceptions import (
    VlmConfigurationError,
    VlmEmptyResponseError,
    VlmResponseNotJsonError,
    VlmResponseSchemaError,
)
from snapverify.compare.vlm.providers.base import VlmProvider
from snapverify.compare.vlm.providers.gemini import GeminiProvider
from snapverify.compare.vlm.providers.ollama import OllamaProvider
from snapverify.compare.vlm.types import (
    VLM_CONFIG_MODELS,
    BaseVlmConfig,
    OllamaVlmConfig,
    VlmComparisonResult,
    VlmProviderResponse,
)
from snapverify.static import ImageStore

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = OllamaVlmConfig()
DEFAULT_PROVIDER = "ollama"

FAILURE_MARKER = "VLM analysis failed"
NO_DESCRIPTION = "No description provided"


def default_providers() -> dict[str, VlmProvider]:
    return {"ollama": OllamaProvider(), "gemini": GeminiProvider()}


def _resolve_config_model(payload: dict[str, Any]) -> type[BaseVlmConfig]:
    return VLM_CONFIG_MODELS.get(payload.get("provider") or DEFAULT_PROVIDER, OllamaVlmConfig)


def response_text(response: VlmProviderResponse, use_thinking: bool) -> str:
    """
    Picks the field that carries the answer. The preferred field is `thinking` when
    `use_thinking` is set and `content` otherwise; the other one is the fallback.
    """
    if use_thinking:
        text = response.thinking or response.content
    else:
        text = response.content or response.thinking
    if not text:
        raise VlmEmptyResponseError()
    return text


def parse_vlm_response(text: str) -> VlmComparisonResult:
    try:
        payload = orjson.loads(text)
    except orjson.JSONDecodeError as e:
        raise VlmResponseNotJsonError(f"Model response is not valid JSON: {e}") from e
    try:
        return VlmComparisonResult.model_validate(payload)
    except ValidationError as e:
        raise VlmResponseSchemaError(
            f"Model response does not match the expected schema: {e.error_count()} error(s)"
        ) from e


class VlmService:
    """
    Pixel comparison first, then a vision language model for the undecided cases.

    The model is consulted only when pixelmatch reports `unresolved`. It may turn that
    into `ok` and attach a description, but never touches the pixel figures. Every
    failure past the pixel stage falls back to the pixelmatch result.
    """

    def __init__(
        self,
        store: ImageStore,
        pixelmatch: PixelmatchComparator | None = None,
        providers: Mapping[str, VlmProvider] | None = None,
    ) -> None:
        self.store = store
        self.pixelmatch = pixelmatch if pixelmatch is not None else PixelmatchComparator(store)
        self.providers = dict(providers) if providers is not None else default_providers()

    def parse_config(self, config_json: str) -> BaseVlmConfig:
        return parse_config(config_json, DEFAULT_CONFIG, resolve_model=_resolve_config_model)

    def get_provider(self, config: BaseVlmConfig) -> VlmProvider:
        provider_name = getattr(config, "provider", None) or DEFAULT_PROVIDER
        provider = self.providers.get(provider_name)
        if provider is None:
            raise VlmConfigurationError(f"Unknown VLM provider: {provider_name}")
        return provider

    def get_diff(self, data: ImageCompareInput, config: BaseVlmConfig) -> DiffResult:
        pixelmatch_result = self.pixelmatch.get_diff(
            data.model_copy(update={"save_diff_as_file": True}),
            PIXELMATCH_DEFAULT_CONFIG,
        )

        if pixelmatch_result.status in (TestStatus.NEW, TestStatus.OK):
            return pixelmatch_result

        logger.debug(
            "Pixel diff is being sent to VLM",
            extra={"image": data.image, "diff_percent": pixelmatch_result.diff_percent},
        )
        try:
            images = self._load_images(data, pixelmatch_result)
            if images is None:
                return pixelmatch_result
            result = self.compare_images_with_vlm(images, config)
        except Exception as e:
            logger.exception(
                "VLM comparison failed",
                extra={"image": data.image, "provider": getattr(config, "provider", None)},
            )
            return pixelmatch_result.model_copy(update={"vlm_description": f"{FAILURE_MARKER}: {e}"})

        return pixelmatch_result.model_copy(
            update={
                "status": TestStatus.OK if result.identical else TestStatus.UNRESOLVED,
                "vlm_description": result.description or NO_DESCRIPTION,
            }
        )

    def _load_images(
        self, data: ImageCompareInput, pixelmatch_result: DiffResult
    ) -> list[bytes] | None:
        names = [data.baseline, data.image, pixelmatch_result.diff_name]
        encoded: list[bytes] = []
        for name in names:
            img = self.store.get_image(name) if name else None
            if img is None:
                logger.warning(
                    "Missing images for VLM analysis, returning pixelmatch result",
                    extra={"missing": name, "image": data.image},
                )
                return None
            try:
                encoded.append(encode_png(img))
            finally:
                img.close()
        return encoded

    def compare_images_with_vlm(
        self, images: list[bytes], config: BaseVlmConfig
    ) -> VlmComparisonResult:
        provider = self.get_provider(config)
        response = provider.generate(config, images)
        text = response_text(response, config.use_thinking)
        logger.debug("VLM response content", extra={"content": text})
        return parse_vlm_response(text)
