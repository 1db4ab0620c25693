"""
Masonry layout engine
Arranges images of known aspect ratio into a uniform-column grid, then
rescales the whole grid so it fits a target canvas.

Every function here is pure: no I/O, no module state, no caching.
"""

import logging
import math
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

MIN_COLUMN_COUNT = 1
MAX_COLUMN_COUNT = 8
# Sparse layouts are blown up by at most this much; overflowing ones shrink without limit.
MAX_UPSCALE = 1.5
# Unused areas closer than this (in canvas units squared) count as a tie.
AREA_TIE_TOLERANCE = 1.0
DEFAULT_GAP = 5.0
DEFAULT_PADDING = 5.0


# Errors
class LayoutError(ValueError):
    """Raised when a layout request violates the engine's input contract"""


class InvalidAspectRatioError(LayoutError):
    def __init__(self, image_id: str, aspect_ratio: float, reason: str = "must be a finite number > 0"):
        self.image_id = image_id
        self.aspect_ratio = aspect_ratio
        super().__init__(f"Image {image_id!r} has invalid aspect ratio {aspect_ratio!r} - {reason}")


class InvalidCanvasDimensionsError(LayoutError):
    pass


class DegenerateLayoutError(LayoutError):
    pass


# Models
class PageTarget(str, Enum):
    LEFT = "left"
    RIGHT = "right"
    BOTH = "both"


class MasonryImage(BaseModel):
    """An image to place. aspect_ratio is width / height."""

    model_config = ConfigDict(frozen=True)

    id: str
    aspect_ratio: float


class MasonryPlacement(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height


class MasonryLayoutRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    canvas_width: float
    canvas_height: float
    images: List[MasonryImage] = Field(default_factory=list)
    gap: float = DEFAULT_GAP
    padding: float = DEFAULT_PADDING
    # Pins the grid to this many columns and skips the search
    column_count: Optional[int] = None


class MasonryLayoutResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    placements: List[MasonryPlacement] = Field(default_factory=list)
    actual_column_count: int = 0
    total_height: float = 0.0
    fill_rate: float = 0.0


class ColumnCandidate(BaseModel):
    """One trial of the column-count search, after fitting to the canvas."""

    column_count: int
    unused_area: float
    average_area: float
    fill_rate: float
    selected: bool = False
    layout: MasonryLayoutResult


class PageBounds(BaseModel):
    x: float
    y: float
    width: float
    height: float


# Validation
def _check_images(images: Sequence[MasonryImage]) -> None:
    for image in images:
        ratio = image.aspect_ratio
        if not math.isfinite(ratio) or ratio <= 0:
            raise InvalidAspectRatioError(image.id, ratio)


def validate_request(request: MasonryLayoutRequest) -> None:
    """Reject requests that would put NaN, infinite or negative sizes into the geometry."""
    for name, value in (("canvas_width", request.canvas_width), ("canvas_height", request.canvas_height)):
        if not math.isfinite(value) or value <= 0:
            raise InvalidCanvasDimensionsError(f"{name} must be a finite number > 0, got {value!r}")
    if not math.isfinite(request.canvas_width * request.canvas_height):
        raise InvalidCanvasDimensionsError(
            f"Canvas area {request.canvas_width} x {request.canvas_height} is not a finite number"
        )
    for name, value in (("gap", request.gap), ("padding", request.padding)):
        if not math.isfinite(value) or value < 0:
            raise InvalidCanvasDimensionsError(f"{name} must be a finite number >= 0, got {value!r}")
    if request.column_count is not None and request.column_count < MIN_COLUMN_COUNT:
        raise InvalidCanvasDimensionsError(
            f"column_count must be >= {MIN_COLUMN_COUNT}, got {request.column_count}"
        )
    _check_images(request.images)


# Packing
def shortest_column_index(heights: Sequence[float]) -> int:
    """Return the index of the shortest column; the lowest index wins ties."""
    min_index = 0
    min_height = heights[0]
    for i in range(1, len(heights)):
        if heights[i] < min_height:
            min_height = heights[i]
            min_index = i
    return min_index


def _column_width(canvas_width: float, column_count: int, gap: float, padding: float) -> float:
    available_width = canvas_width - padding * 2
    return (available_width - gap * (column_count - 1)) / column_count


def _fill_rate(placements: Sequence[MasonryPlacement], canvas_width: float, canvas_height: float) -> float:
    return sum(p.area for p in placements) / (canvas_width * canvas_height)


def _pack_columns(
    canvas_width: float,
    canvas_height: float,
    images: Sequence[MasonryImage],
    column_count: int,
    gap: float,
    padding: float,
) -> MasonryLayoutResult:
    if column_count < MIN_COLUMN_COUNT:
        raise InvalidCanvasDimensionsError(f"column_count must be >= {MIN_COLUMN_COUNT}, got {column_count}")
    column_width = _column_width(canvas_width, column_count, gap, padding)
    if column_width <= 0:
        raise InvalidCanvasDimensionsError(
            f"Canvas width {canvas_width} leaves no room for {column_count} columns "
            f"with gap={gap} and padding={padding}"
        )

    column_heights = [padding] * column_count
    placements: List[MasonryPlacement] = []
    for image in images:
        col = shortest_column_index(column_heights)
        x = padding + col * (column_width + gap)
        y = column_heights[col]
        height = column_width / image.aspect_ratio
        if not (math.isfinite(y + height) and math.isfinite(column_width * height)):
            raise InvalidAspectRatioError(
                image.id, image.aspect_ratio, f"too small for a {column_width:g} wide column"
            )
        placements.append(MasonryPlacement(id=image.id, x=x, y=y, width=column_width, height=height))
        column_heights[col] = y + height + gap

    return MasonryLayoutResult(
        placements=placements,
        actual_column_count=column_count,
        total_height=max(column_heights) - gap + padding,
        fill_rate=_fill_rate(placements, canvas_width, canvas_height),
    )


def pack_uniform_grid(
    canvas_width: float,
    canvas_height: float,
    images: Sequence[MasonryImage],
    column_count: int,
    gap: float = DEFAULT_GAP,
    padding: float = DEFAULT_PADDING,
) -> MasonryLayoutResult:
    """Place images, in input order, into the shortest of column_count equal-width columns.

    Positions are not fitted to the canvas; see fit_to_canvas.
    """
    if not images:
        return MasonryLayoutResult()
    _check_images(images)
    return _pack_columns(canvas_width, canvas_height, images, column_count, gap, padding)


# Fitting
def fit_to_canvas(
    layout: MasonryLayoutResult,
    canvas_width: float,
    canvas_height: float,
    padding: float = DEFAULT_PADDING,
) -> MasonryLayoutResult:
    """Uniformly scale a layout so its bounding box fits the canvas, flush left.

    The scale factor is min((canvas_width - padding) / used_width,
    canvas_height / used_height). Upscaling is capped at MAX_UPSCALE,
    downscaling is not capped.
    """
    placements = layout.placements
    if not placements:
        return layout

    min_left = min(p.x for p in placements)
    max_right = max(p.x + p.width for p in placements)
    max_bottom = max(p.y + p.height for p in placements)

    used_width = max_right - min_left
    used_height = max_bottom
    if not (0 < used_width < math.inf and 0 < used_height < math.inf):
        raise DegenerateLayoutError(
            f"Layout bounding box has no finite area ({used_width} x {used_height}); cannot scale to canvas"
        )

    width_scale = (canvas_width - padding) / used_width
    height_scale = canvas_height / used_height
    scale_factor = min(width_scale, height_scale)
    if scale_factor > 1:
        scale_factor = min(scale_factor, MAX_UPSCALE)

    scaled = [
        MasonryPlacement(
            id=p.id,
            x=padding + (p.x - min_left) * scale_factor,
            y=p.y * scale_factor,
            width=p.width * scale_factor,
            height=p.height * scale_factor,
        )
        for p in placements
    ]
    new_max_bottom = max(p.y + p.height for p in scaled)

    return MasonryLayoutResult(
        placements=scaled,
        actual_column_count=layout.actual_column_count,
        total_height=new_max_bottom + padding,
        fill_rate=_fill_rate(scaled, canvas_width, canvas_height),
    )


# Column-count search
def _is_better(candidate: ColumnCandidate, best: ColumnCandidate) -> bool:
    if candidate.unused_area < best.unused_area:
        return True
    return (
        abs(candidate.unused_area - best.unused_area) < AREA_TIE_TOLERANCE
        and candidate.average_area > best.average_area
    )


def _evaluate_candidates(request: MasonryLayoutRequest) -> List[ColumnCandidate]:
    canvas_area = request.canvas_width * request.canvas_height
    max_columns = min(MAX_COLUMN_COUNT, len(request.images))

    candidates: List[ColumnCandidate] = []
    best: Optional[ColumnCandidate] = None
    for columns in range(MIN_COLUMN_COUNT, max_columns + 1):
        if _column_width(request.canvas_width, columns, request.gap, request.padding) <= 0:
            logger.debug(f"Skipping {columns} columns: no room on a {request.canvas_width}px wide canvas")
            continue

        layout = _pack_columns(
            request.canvas_width,
            request.canvas_height,
            request.images,
            columns,
            request.gap,
            request.padding,
        )
        layout = fit_to_canvas(layout, request.canvas_width, request.canvas_height, request.padding)

        placed_area = sum(p.area for p in layout.placements)
        candidate = ColumnCandidate(
            column_count=columns,
            unused_area=canvas_area - placed_area,
            average_area=placed_area / len(layout.placements),
            fill_rate=layout.fill_rate,
            layout=layout,
        )
        if best is None or _is_better(candidate, best):
            best = candidate
        candidates.append(candidate)

    if best is None:
        raise InvalidCanvasDimensionsError(
            f"Canvas width {request.canvas_width} leaves no room for even one column "
            f"with gap={request.gap} and padding={request.padding}"
        )
    best.selected = True
    return candidates


def evaluate_column_candidates(request: MasonryLayoutRequest) -> List[ColumnCandidate]:
    """Run every candidate column count (1..min(8, n)) and report how each scored.

    Exactly one candidate comes back with selected=True: the one solve() returns.
    """
    if not request.images:
        return []
    validate_request(request)
    return _evaluate_candidates(request)


def solve(request: MasonryLayoutRequest) -> MasonryLayoutResult:
    """Compute the masonry layout for a request.

    With column_count set, packs once with that many columns. Otherwise picks
    the column count leaving the least unused canvas area, preferring larger
    average images when two counts are within AREA_TIE_TOLERANCE.
    """
    if not request.images:
        return MasonryLayoutResult()
    validate_request(request)

    if request.column_count is not None:
        layout = _pack_columns(
            request.canvas_width,
            request.canvas_height,
            request.images,
            request.column_count,
            request.gap,
            request.padding,
        )
        return fit_to_canvas(layout, request.canvas_width, request.canvas_height, request.padding)

    candidates = _evaluate_candidates(request)
    best = next(c for c in candidates if c.selected)
    logger.debug(
        f"Selected {best.column_count} columns for {len(request.images)} images "
        f"(unused_area={best.unused_area:.1f}, fill_rate={best.fill_rate:.3f})"
    )
    return best.layout


calculate_masonry_layout = solve


# Presets
def calculate_tight_masonry_layout(
    canvas_width: float,
    canvas_height: float,
    images: Sequence[MasonryImage],
    column_count: Optional[int] = None,
) -> MasonryLayoutResult:
    """Edge-to-edge layout: no gap between images, no padding around them."""
    return solve(MasonryLayoutRequest(
        canvas_width=canvas_width,
        canvas_height=canvas_height,
        images=list(images),
        gap=0,
        padding=0,
        column_count=column_count,
    ))


def calculate_spaced_masonry_layout(
    canvas_width: float,
    canvas_height: float,
    images: Sequence[MasonryImage],
    column_count: Optional[int] = None,
) -> MasonryLayoutResult:
    return solve(MasonryLayoutRequest(
        canvas_width=canvas_width,
        canvas_height=canvas_height,
        images=list(images),
        gap=DEFAULT_GAP,
        padding=DEFAULT_PADDING,
        column_count=column_count,
    ))


def calculate_optimal_column_count(image_count: int) -> int:
    """Fixed table of column counts by image count, for callers that pin the grid themselves."""
    if image_count <= 1:
        return 1
    if image_count <= 4:
        return 2
    if image_count <= 9:
        return 3
    return int(min(MAX_COLUMN_COUNT, np.ceil(np.sqrt(image_count))))


# Photobook spreads
def get_page_bounds(spread_width: float, spread_height: float, target: PageTarget) -> PageBounds:
    """Rectangle of one page (or the whole spread) of a double-page spread."""
    page_width = spread_width / 2
    target = PageTarget(target)
    if target == PageTarget.LEFT:
        return PageBounds(x=0, y=0, width=page_width, height=spread_height)
    if target == PageTarget.RIGHT:
        return PageBounds(x=page_width, y=0, width=page_width, height=spread_height)
    return PageBounds(x=0, y=0, width=spread_width, height=spread_height)


def is_in_page_bounds(image_x: float, image_width: float, spread_width: float, target: PageTarget) -> bool:
    """Whether an image's horizontal center lies on the target page."""
    center_x = image_x + image_width / 2
    page_width = spread_width / 2
    target = PageTarget(target)
    if target == PageTarget.LEFT:
        return center_x < page_width
    if target == PageTarget.RIGHT:
        return center_x >= page_width
    return True
