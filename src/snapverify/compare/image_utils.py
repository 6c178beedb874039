from __future__ import annotations

import io
import logging
from collections.abc import Sequence
from typing import NamedTuple

import numpy as np
from PIL import Image

from snapverify.compare.exceptions import CompareError, MissingImageError
from snapverify.compare.types import DiffResult, IgnoreArea, ImageCompareInput, TestStatus
from snapverify.static import ImageStore

logger = logging.getLogger(__name__)

DIFF_IMAGE_KIND = "diff"

DIFF_COLOR = (255, 0, 0)
AA_COLOR = (255, 255, 0)
DIFF_BACKGROUND_ALPHA = 0.1

# 8-neighbourhood, x-major like pixelmatch walks it; ties keep the first hit.
NEIGHBOURS = tuple((dx, dy) for dx in (-1, 0, 1) for dy in (-1, 0, 1) if dx or dy)


class AlignedPair(NamedTuple):
    baseline: np.ndarray
    image: np.ndarray
    # True where a canvas pixel belongs to only one of the two images.
    outside_overlap: np.ndarray
    width: int
    height: int
    is_same_dimension: bool


def load_images(store: ImageStore, data: ImageCompareInput) -> tuple[Image.Image, Image.Image]:
    if data.baseline is None:
        raise CompareError("Cannot load images for a comparison without a baseline")
    baseline = store.get_image(data.baseline)
    if baseline is None:
        raise MissingImageError(data.baseline)
    image = store.get_image(data.image)
    if image is None:
        baseline.close()
        raise MissingImageError(data.image)
    return baseline, image


def to_rgba_array(img: Image.Image) -> np.ndarray:
    if img.mode == "RGBA":
        return np.asarray(img, dtype=np.uint8)
    with img.convert("RGBA") as rgba:
        return np.asarray(rgba, dtype=np.uint8)


def outside_overlap_mask(
    baseline_size: tuple[int, int], image_size: tuple[int, int]
) -> np.ndarray:
    """True for every pixel of the max-size canvas that only one of the images covers."""
    (bw, bh), (iw, ih) = baseline_size, image_size
    outside = np.ones((max(bh, ih), max(bw, iw)), dtype=bool)
    outside[: min(bh, ih), : min(bw, iw)] = False
    return outside


def align(baseline: Image.Image, image: Image.Image) -> AlignedPair:
    """
    Places both images at the top-left corner of a canvas large enough for either.
    Padding is fully transparent.
    """
    bw, bh = baseline.size
    iw, ih = image.size
    width = max(bw, iw)
    height = max(bh, ih)

    base_arr = np.zeros((height, width, 4), dtype=np.uint8)
    base_arr[:bh, :bw] = to_rgba_array(baseline)
    image_arr = np.zeros((height, width, 4), dtype=np.uint8)
    image_arr[:ih, :iw] = to_rgba_array(image)

    outside = outside_overlap_mask(baseline.size, image.size)

    return AlignedPair(
        baseline=base_arr,
        image=image_arr,
        outside_overlap=outside,
        width=width,
        height=height,
        is_same_dimension=(bw, bh) == (iw, ih),
    )


def ignore_mask(ignore_areas: Sequence[IgnoreArea], width: int, height: int) -> np.ndarray:
    mask = np.zeros((height, width), dtype=bool)
    for area in ignore_areas:
        bounds = area.bounds(width, height)
        if bounds is None:
            continue
        left, top, right, bottom = bounds
        mask[top:bottom, left:right] = True
    return mask


def blend_white(rgba: np.ndarray) -> np.ndarray:
    """Composites RGBA pixels over a white background, returning float RGB."""
    rgb = rgba[..., :3].astype(np.float64)
    alpha = rgba[..., 3:4].astype(np.float64) / 255.0
    return 255.0 + (rgb - 255.0) * alpha


def luma(rgb: np.ndarray) -> np.ndarray:
    return rgb[..., 0] * 0.29889531 + rgb[..., 1] * 0.58662247 + rgb[..., 2] * 0.11448223


def _neighbour(
    xs: np.ndarray, ys: np.ndarray, dx: int, dy: int, width: int, height: int
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    nx = xs + dx
    ny = ys + dy
    valid = (nx >= 0) & (nx < width) & (ny >= 0) & (ny < height)
    return np.clip(nx, 0, width - 1), np.clip(ny, 0, height - 1), valid


def _on_edge(xs: np.ndarray, ys: np.ndarray, width: int, height: int) -> np.ndarray:
    return (xs == 0) | (xs == width - 1) | (ys == 0) | (ys == height - 1)


def _has_many_siblings(rgba: np.ndarray, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    height, width = rgba.shape[:2]
    zeroes = _on_edge(xs, ys, width, height).astype(np.int32)
    centre = rgba[ys, xs]
    for dx, dy in NEIGHBOURS:
        nx, ny, valid = _neighbour(xs, ys, dx, dy, width, height)
        zeroes += valid & np.all(rgba[ny, nx] == centre, axis=-1)
    return zeroes > 2


def antialiased(
    brightness: np.ndarray,
    rgba: np.ndarray,
    other_rgba: np.ndarray,
    xs: np.ndarray,
    ys: np.ndarray,
    tolerance: float = 0.0,
) -> np.ndarray:
    """
    Vectorised pixelmatch antialiasing test for the pixels at (xs, ys) of `rgba`.

    A pixel is antialiased when its neighbourhood has both a darker and a brighter
    neighbour, at most two neighbours of equal brightness, and the darkest or the
    brightest neighbour sits in a flat region in both images. Brightness deltas
    within `tolerance` count as equal.
    """
    height, width = brightness.shape
    n = xs.shape[0]
    zeroes = _on_edge(xs, ys, width, height).astype(np.int32)
    min_delta = np.zeros(n)
    max_delta = np.zeros(n)
    min_x, min_y = xs.copy(), ys.copy()
    max_x, max_y = xs.copy(), ys.copy()
    centre = brightness[ys, xs]

    for dx, dy in NEIGHBOURS:
        nx, ny, valid = _neighbour(xs, ys, dx, dy, width, height)
        delta = centre - brightness[ny, nx]
        flat = valid & (np.abs(delta) <= tolerance)
        zeroes += flat
        darker = valid & ~flat & (delta < min_delta)
        brighter = valid & ~flat & ~darker & (delta > max_delta)
        min_delta = np.where(darker, delta, min_delta)
        min_x = np.where(darker, nx, min_x)
        min_y = np.where(darker, ny, min_y)
        max_delta = np.where(brighter, delta, max_delta)
        max_x = np.where(brighter, nx, max_x)
        max_y = np.where(brighter, ny, max_y)

    candidate = (zeroes <= 2) & (min_delta != 0) & (max_delta != 0)
    if not candidate.any():
        return candidate
    via_darkest = _has_many_siblings(rgba, min_x, min_y) & _has_many_siblings(
        other_rgba, min_x, min_y
    )
    via_brightest = _has_many_siblings(rgba, max_x, max_y) & _has_many_siblings(
        other_rgba, max_x, max_y
    )
    return candidate & (via_darkest | via_brightest)


def antialiased_mask(
    candidates: np.ndarray,
    baseline: np.ndarray,
    image: np.ndarray,
    tolerance: float = 0.0,
) -> np.ndarray:
    """Marks the `candidates` pixels that look antialiased in either image."""
    result = np.zeros(candidates.shape, dtype=bool)
    ys, xs = np.nonzero(candidates)
    if ys.size == 0:
        return result
    base_luma = luma(blend_white(baseline))
    image_luma = luma(blend_white(image))
    aa = antialiased(base_luma, baseline, image, xs, ys, tolerance) | antialiased(
        image_luma, image, baseline, xs, ys, tolerance
    )
    result[ys[aa], xs[aa]] = True
    return result


def render_diff(
    baseline: np.ndarray,
    mismatch: np.ndarray,
    antialiasing: np.ndarray | None = None,
    diff_color: tuple[int, int, int] = DIFF_COLOR,
) -> Image.Image:
    """Faded grayscale baseline with mismatched pixels painted over it."""
    gray = luma(baseline[..., :3].astype(np.float64))
    alpha = baseline[..., 3].astype(np.float64) / 255.0
    faded = 255.0 + (gray - 255.0) * DIFF_BACKGROUND_ALPHA * alpha
    out = np.empty(baseline.shape, dtype=np.uint8)
    out[..., :3] = np.clip(faded, 0, 255).astype(np.uint8)[..., None]
    out[..., 3] = 255
    if antialiasing is not None:
        out[antialiasing, :3] = AA_COLOR
    out[mismatch, :3] = diff_color
    return Image.fromarray(out, "RGBA")


def encode_png(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def persist_diff(store: ImageStore, diff: Image.Image) -> str | None:
    try:
        return store.save_image(DIFF_IMAGE_KIND, diff)
    except Exception:
        logger.exception("Failed to persist diff image")
        return None
    finally:
        diff.close()


def build_result(
    mismatch_count: int,
    width: int,
    height: int,
    tolerance_percent: float,
    is_same_dimension: bool,
    diff_name: str | None,
    allow_diff_dimensions: bool = True,
) -> DiffResult:
    total = width * height
    diff_percent = min(mismatch_count / total * 100, 100.0) if total else 0.0
    status = TestStatus.OK if diff_percent <= tolerance_percent else TestStatus.UNRESOLVED
    if not is_same_dimension and not allow_diff_dimensions:
        status = TestStatus.UNRESOLVED
    return DiffResult(
        status=status,
        diff_name=diff_name,
        pixel_mismatch_count=mismatch_count,
        diff_percent=diff_percent,
        is_same_dimension=is_same_dimension,
    )
