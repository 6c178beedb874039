from __future__ import annotations


class VlmError(Exception):
    pass


class VlmConfigurationError(VlmError):
    """A provider is missing something it needs before any request can be made."""


class VlmApiError(VlmError):
    def __init__(self, message: str, status: int) -> None:
        super().__init__(f"{message} (status {status})")
        self.status = status


class VlmResponseError(VlmError):
    pass


class VlmEmptyResponseError(VlmResponseError):
    def __init__(self) -> None:
        super().__init__("Empty response from model")


class VlmResponseNotJsonError(VlmResponseError):
    pass


class VlmResponseSchemaError(VlmResponseError):
    pass
