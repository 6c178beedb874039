from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Process-wide settings, read from the environment when `settings` is first built.
    Empty variables count as unset.
    """

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_ignore_empty=True,
        extra="ignore",
    )

    # Base URL of the local Ollama server, e.g. "http://localhost:11434".
    OLLAMA_BASE_URL: str | None = None

    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com"

    # Seconds. None means no timeout; the caller is expected to bound slow model calls.
    VLM_REQUEST_TIMEOUT: float | None = Field(default=None, gt=0)

    IMG_UPLOAD_FOLDER: str = "imageUploads"


settings = Settings()
