from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class TestStatus(str, Enum):
    __test__ = False

    NEW = "new"
    OK = "ok"
    UNRESOLVED = "unresolved"
    APPROVED = "approved"


class ImageComparison(str, Enum):
    PIXELMATCH = "pixelmatch"
    LOOKS_SAME = "lookSame"
    ODIFF = "odiff"
    VLM = "vlm"


class IgnoreArea(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: int
    y: int
    width: int = Field(ge=0)
    height: int = Field(ge=0)

    def bounds(self, canvas_width: int, canvas_height: int) -> tuple[int, int, int, int] | None:
        """
        Returns (left, top, right, bottom) clipped to the canvas, right/bottom exclusive,
        or None when the area does not intersect the canvas at all.
        """
        left = max(self.x, 0)
        top = max(self.y, 0)
        right = min(self.x + self.width, canvas_width)
        bottom = min(self.y + self.height, canvas_height)
        if left >= right or top >= bottom:
            return None
        return left, top, right, bottom


class ImageCompareInput(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    # None means there is no baseline yet, i.e. a new test.
    baseline: str | None
    image: str
    diff_tollerance_percent: float = Field(default=0.0, ge=0, alias="diffTollerancePercent")
    ignore_areas: list[IgnoreArea] = Field(default_factory=list, alias="ignoreAreas")
    save_diff_as_file: bool = Field(default=False, alias="saveDiffAsFile")


class DiffResult(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    status: TestStatus
    diff_name: str | None = Field(default=None, alias="diffName")
    pixel_mismatch_count: int = Field(default=0, ge=0, alias="pixelMisMatchCount")
    diff_percent: float = Field(default=0.0, ge=0, le=100, alias="diffPercent")
    is_same_dimension: bool = Field(default=True, alias="isSameDimension")
    vlm_description: str | None = Field(default=None, alias="vlmDescription")


NO_BASELINE_RESULT = DiffResult(
    status=TestStatus.NEW,
    diff_name=None,
    pixel_mismatch_count=0,
    diff_percent=0.0,
    is_same_dimension=True,
)

EQUAL_RESULT = DiffResult(
    status=TestStatus.OK,
    diff_name=None,
    pixel_mismatch_count=0,
    diff_percent=0.0,
    is_same_dimension=True,
)


class OdiffResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    requestId: int
    match: bool = False
    reason: str | None = None
    diffCount: int | None = None
    diffPercentage: float | None = None
    error: str | None = None
