from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr

DEFAULT_PROMPT = """You are provided with three images:
1. First image: baseline screenshot
2. Second image: new version screenshot
3. Diff image

Spot any difference in text, color, shape and position of elements - treat as different even slight change.
Ignore minor rendering artifacts that are imperceptible to users like antialiasing.
Describe the difference in about 100 words."""

DEFAULT_MODEL = "gemma3:12b"
DEFAULT_TEMPERATURE = 0.1


class BaseVlmConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, protected_namespaces=())

    model: str = DEFAULT_MODEL
    prompt: str = DEFAULT_PROMPT
    # Lower is more deterministic.
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0, le=2)
    # Some models put their answer in the reasoning trace rather than the content.
    use_thinking: bool = Field(default=False, alias="useThinking")


class OllamaVlmConfig(BaseVlmConfig):
    provider: Literal["ollama"] = "ollama"


class GeminiVlmConfig(BaseVlmConfig):
    provider: Literal["gemini"] = "gemini"
    # Not validated here; GeminiProvider refuses to run without it.
    api_key: str = Field(default="", alias="apiKey", repr=False)


VlmConfig = Annotated[OllamaVlmConfig | GeminiVlmConfig, Field(discriminator="provider")]

VLM_CONFIG_MODELS: dict[str, type[BaseVlmConfig]] = {
    "ollama": OllamaVlmConfig,
    "gemini": GeminiVlmConfig,
}


class VlmProviderResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: str | None = None
    thinking: str | None = None


class VlmComparisonResult(BaseModel):
    """The only answer shape accepted from a model."""

    model_config = ConfigDict(frozen=True)

    identical: StrictBool
    description: StrictStr


def comparison_result_json_schema() -> dict[str, Any]:
    schema = VlmComparisonResult.model_json_schema()
    schema["additionalProperties"] = False
    return schema
