from __future__ import annotations

import logging
from typing import Any

from snapverify.compare.comparator import ImageComparator
from snapverify.compare.exceptions import CompareError
from snapverify.compare.looks_same import LooksSameComparator
from snapverify.compare.odiff import OdiffComparator
from snapverify.compare.pixelmatch import PixelmatchComparator
from snapverify.compare.types import DiffResult, ImageComparison, ImageCompareInput
from snapverify.compare.vlm.service import VlmService
from snapverify.static import ImageStore

logger = logging.getLogger(__name__)


class CompareService:
    """Routes a comparison to the backend a project is configured with."""

    def __init__(
        self,
        store: ImageStore,
        comparators: dict[ImageComparison, ImageComparator[Any]] | None = None,
    ) -> None:
        if comparators is None:
            pixelmatch = PixelmatchComparator(store)
            comparators = {
                ImageComparison.PIXELMATCH: pixelmatch,
                ImageComparison.LOOKS_SAME: LooksSameComparator(store),
                ImageComparison.ODIFF: OdiffComparator(store),
                ImageComparison.VLM: VlmService(store, pixelmatch=pixelmatch),
            }
        if ImageComparison.PIXELMATCH not in comparators:
            # Unknown kinds fall back to pixelmatch, so it is always required.
            raise CompareError(
                f"No comparator registered for {ImageComparison.PIXELMATCH.value!r}"
            )
        self.comparators = comparators

    def get_comparator(self, image_comparison: ImageComparison | str) -> ImageComparator[Any]:
        try:
            comparator = self.comparators.get(ImageComparison(image_comparison))
        except ValueError:
            comparator = None
        if comparator is None:
            logger.warning(
                "No comparator registered, using pixelmatch",
                extra={"image_comparison": str(image_comparison)},
            )
            comparator = self.comparators[ImageComparison.PIXELMATCH]
        return comparator

    def get_diff(
        self,
        data: ImageCompareInput,
        image_comparison: ImageComparison | str = ImageComparison.PIXELMATCH,
        config_json: str = "",
    ) -> DiffResult:
        comparator = self.get_comparator(image_comparison)
        config = comparator.parse_config(config_json)
        return comparator.get_diff(data, config)

    def close(self) -> None:
        odiff = self.comparators.get(ImageComparison.ODIFF)
        if isinstance(odiff, OdiffComparator):
            odiff.close()
