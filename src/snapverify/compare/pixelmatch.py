from __future__ import annotations

import logging

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from snapverify.compare.image_utils import (
    align,
    antialiased_mask,
    blend_white,
    build_result,
    ignore_mask,
    load_images,
    persist_diff,
    render_diff,
)
from snapverify.compare.types import NO_BASELINE_RESULT, DiffResult, ImageCompareInput
from snapverify.compare.utils import parse_config
from snapverify.static import ImageStore

logger = logging.getLogger(__name__)

# Largest possible YIQ delta between two colours.
MAX_YIQ_DELTA = 35215


class PixelmatchConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    # Matching threshold, 0 to 1; smaller is more sensitive.
    threshold: float = Field(default=0.1, ge=0, le=1)
    ignore_antialiasing: bool = Field(default=True, alias="ignoreAntialiasing")
    allow_diff_dimensions: bool = Field(default=False, alias="allowDiffDimensions")


DEFAULT_CONFIG = PixelmatchConfig()


def yiq_delta(baseline: np.ndarray, image: np.ndarray) -> np.ndarray:
    """Squared YIQ distance per pixel, alpha composited over white."""
    a = blend_white(baseline)
    b = blend_white(image)
    diff = a - b
    r, g, bl = diff[..., 0], diff[..., 1], diff[..., 2]
    y = r * 0.29889531 + g * 0.58662247 + bl * 0.11448223
    i = r * 0.59597799 - g * 0.27417610 - bl * 0.32180189
    q = r * 0.21147017 - g * 0.52261711 + bl * 0.31114694
    return 0.5053 * y * y + 0.299 * i * i + 0.1957 * q * q


class PixelmatchComparator:
    def __init__(self, store: ImageStore) -> None:
        self.store = store

    def parse_config(self, config_json: str) -> PixelmatchConfig:
        return parse_config(config_json, DEFAULT_CONFIG)

    def get_diff(self, data: ImageCompareInput, config: PixelmatchConfig) -> DiffResult:
        if data.baseline is None:
            return NO_BASELINE_RESULT

        baseline, image = load_images(self.store, data)
        try:
            pair = align(baseline, image)
        finally:
            baseline.close()
            image.close()

        ignored = ignore_mask(data.ignore_areas, pair.width, pair.height)
        over = yiq_delta(pair.baseline, pair.image) > MAX_YIQ_DELTA * config.threshold**2
        over &= ~pair.outside_overlap & ~ignored

        aa: np.ndarray | None = None
        if config.ignore_antialiasing:
            aa = antialiased_mask(over, pair.baseline, pair.image)
            over &= ~aa

        mismatch = over | (pair.outside_overlap & ~ignored)
        mismatch_count = int(np.count_nonzero(mismatch))

        logger.debug(
            "pixelmatch: compared images",
            extra={
                "baseline": data.baseline,
                "image": data.image,
                "mismatch_count": mismatch_count,
                "is_same_dimension": pair.is_same_dimension,
            },
        )

        diff_name = None
        if data.save_diff_as_file and mismatch_count > 0:
            diff_name = persist_diff(self.store, render_diff(pair.baseline, mismatch, aa))

        return build_result(
            mismatch_count,
            pair.width,
            pair.height,
            data.diff_tollerance_percent,
            pair.is_same_dimension,
            diff_name,
            allow_diff_dimensions=config.allow_diff_dimensions,
        )
