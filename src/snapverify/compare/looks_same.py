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

HIGHLIGHT_COLOR = (255, 0, 255)

# D65 reference white
_XN, _YN, _ZN = 0.95047, 1.0, 1.08883


class LooksSameConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    # Any changed pixel is a mismatch, ignoring the tolerance.
    strict: bool = False
    # CIEDE2000 distance a pixel may drift before it counts. 2.3 is one just-noticeable difference.
    tolerance: float = Field(default=2.3, ge=0)
    antialiasing_tolerance: float = Field(default=0, ge=0, alias="antialiasingTolerance")
    ignore_antialiasing: bool = Field(default=True, alias="ignoreAntialiasing")
    ignore_caret: bool = Field(default=True, alias="ignoreCaret")
    allow_diff_dimensions: bool = Field(default=False, alias="allowDiffDimensions")


DEFAULT_CONFIG = LooksSameConfig()


def rgb_to_lab(rgb: np.ndarray) -> np.ndarray:
    c = rgb / 255.0
    linear = np.where(c > 0.04045, ((c + 0.055) / 1.055) ** 2.4, c / 12.92)
    r, g, b = linear[..., 0], linear[..., 1], linear[..., 2]
    x = (r * 0.4124564 + g * 0.3575761 + b * 0.1804375) / _XN
    y = (r * 0.2126729 + g * 0.7151522 + b * 0.0721750) / _YN
    z = (r * 0.0193339 + g * 0.1191920 + b * 0.9503041) / _ZN

    def f(t: np.ndarray) -> np.ndarray:
        return np.where(t > 216 / 24389, np.cbrt(t), (24389 / 27 * t + 16) / 116)

    fx, fy, fz = f(x), f(y), f(z)
    return np.stack([116 * fy - 16, 500 * (fx - fy), 200 * (fy - fz)], axis=-1)


def ciede2000(lab1: np.ndarray, lab2: np.ndarray) -> np.ndarray:
    l1, a1, b1 = lab1[..., 0], lab1[..., 1], lab1[..., 2]
    l2, a2, b2 = lab2[..., 0], lab2[..., 1], lab2[..., 2]

    c_bar = (np.hypot(a1, b1) + np.hypot(a2, b2)) / 2
    g = 0.5 * (1 - np.sqrt(c_bar**7 / (c_bar**7 + 25.0**7)))
    a1p = (1 + g) * a1
    a2p = (1 + g) * a2
    c1p = np.hypot(a1p, b1)
    c2p = np.hypot(a2p, b2)
    h1p = np.degrees(np.arctan2(b1, a1p)) % 360
    h2p = np.degrees(np.arctan2(b2, a2p)) % 360

    chroma_zero = c1p * c2p == 0
    dlp = l2 - l1
    dcp = c2p - c1p
    dhp = h2p - h1p
    dhp = np.where(dhp > 180, dhp - 360, np.where(dhp < -180, dhp + 360, dhp))
    dhp = np.where(chroma_zero, 0, dhp)
    d_hp = 2 * np.sqrt(c1p * c2p) * np.sin(np.radians(dhp / 2))

    lbp = (l1 + l2) / 2
    cbp = (c1p + c2p) / 2
    h_sum = h1p + h2p
    hbp = np.where(
        np.abs(h1p - h2p) <= 180,
        h_sum / 2,
        np.where(h_sum < 360, (h_sum + 360) / 2, (h_sum - 360) / 2),
    )
    hbp = np.where(chroma_zero, h_sum, hbp)

    t = (
        1
        - 0.17 * np.cos(np.radians(hbp - 30))
        + 0.24 * np.cos(np.radians(2 * hbp))
        + 0.32 * np.cos(np.radians(3 * hbp + 6))
        - 0.20 * np.cos(np.radians(4 * hbp - 63))
    )
    d_theta = 30 * np.exp(-(((hbp - 275) / 25) ** 2))
    rc = 2 * np.sqrt(cbp**7 / (cbp**7 + 25.0**7))
    sl = 1 + 0.015 * (lbp - 50) ** 2 / np.sqrt(20 + (lbp - 50) ** 2)
    sc = 1 + 0.045 * cbp
    sh = 1 + 0.015 * cbp * t
    rt = -np.sin(np.radians(2 * d_theta)) * rc

    return np.sqrt(
        (dlp / sl) ** 2 + (dcp / sc) ** 2 + (d_hp / sh) ** 2 + rt * (dcp / sc) * (d_hp / sh)
    )


def caret_mask(mismatch: np.ndarray) -> np.ndarray:
    """
    Returns the mismatch itself when it is a single one-pixel-wide vertical run,
    the shape a blinking text caret leaves behind; otherwise an empty mask.
    """
    ys, xs = np.nonzero(mismatch)
    empty = np.zeros(mismatch.shape, dtype=bool)
    if ys.size < 2 or np.any(xs != xs[0]):
        return empty
    if ys.max() - ys.min() + 1 != ys.size:
        return empty
    return mismatch.copy()


class LooksSameComparator:
    def __init__(self, store: ImageStore) -> None:
        self.store = store

    def parse_config(self, config_json: str) -> LooksSameConfig:
        return parse_config(config_json, DEFAULT_CONFIG)

    def get_diff(self, data: ImageCompareInput, config: LooksSameConfig) -> DiffResult:
        if data.baseline is None:
            return NO_BASELINE_RESULT

        baseline, image = load_images(self.store, data)
        try:
            pair = align(baseline, image)
        finally:
            baseline.close()
            image.close()

        ignored = ignore_mask(data.ignore_areas, pair.width, pair.height)
        comparable = ~pair.outside_overlap & ~ignored
        changed = np.any(pair.baseline != pair.image, axis=-1) & comparable

        if config.strict:
            over = changed
        else:
            over = np.zeros(changed.shape, dtype=bool)
            ys, xs = np.nonzero(changed)
            if ys.size:
                lab_base = rgb_to_lab(blend_white(pair.baseline[ys, xs]))
                lab_image = rgb_to_lab(blend_white(pair.image[ys, xs]))
                far = ciede2000(lab_base, lab_image) > config.tolerance
                over[ys[far], xs[far]] = True

            if config.ignore_antialiasing:
                over &= ~antialiased_mask(
                    over, pair.baseline, pair.image, tolerance=config.antialiasing_tolerance
                )
            if config.ignore_caret:
                over &= ~caret_mask(over)

        mismatch = over | (pair.outside_overlap & ~ignored)
        mismatch_count = int(np.count_nonzero(mismatch))

        logger.debug(
            "looks-same: compared images",
            extra={
                "baseline": data.baseline,
                "image": data.image,
                "mismatch_count": mismatch_count,
                "is_same_dimension": pair.is_same_dimension,
            },
        )

        diff_name = None
        if data.save_diff_as_file and mismatch_count > 0:
            diff_name = persist_diff(
                self.store, render_diff(pair.baseline, mismatch, diff_color=HIGHLIGHT_COLOR)
            )

        return build_result(
            mismatch_count,
            pair.width,
            pair.height,
            data.diff_tollerance_percent,
            pair.is_same_dimension,
            diff_name,
            allow_diff_dimensions=config.allow_diff_dimensions,
        )
