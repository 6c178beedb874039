from __future__ import annotations

from typing import Protocol, TypeVar

from pydantic import BaseModel

from snapverify.compare.types import DiffResult, ImageCompareInput

ConfigT = TypeVar("ConfigT", bound=BaseModel)


class ImageComparator(Protocol[ConfigT]):
    """
    A comparison backend. Every backend honours the same contract:

    - no baseline yields NO_BASELINE_RESULT without reading any image
    - pixels inside an ignore area never count as mismatched
    - differing sizes are compared on a shared canvas, with pixels outside the
      overlap counted as mismatched, and reported with is_same_dimension=False
    - diff_percent <= tolerance is `ok`, anything above is `unresolved`
    - a diff image is persisted only when requested and mismatches exist
    """

    def parse_config(self, config_json: str) -> ConfigT: ...

    def get_diff(self, data: ImageCompareInput, config: ConfigT) -> DiffResult: ...
