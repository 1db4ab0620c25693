"""
Auto-arrange for editor canvases
Takes the objects currently on a canvas (or a photobook spread), lays the
image objects out with the masonry engine and returns new geometry for each.
"""

import logging
from typing import List

from pydantic import BaseModel, Field

from masonry import (
    MasonryImage,
    MasonryLayoutRequest,
    MasonryLayoutResult,
    PageTarget,
    get_page_bounds,
    is_in_page_bounds,
    solve,
)

logger = logging.getLogger(__name__)

DEFAULT_ARRANGE_GAP = 20.0
DEFAULT_ARRANGE_PADDING = 20.0


class CanvasObject(BaseModel):
    id: str
    type: str = "image"
    x: float = 0.0
    y: float = 0.0
    width: float
    height: float


class ArrangeUpdate(BaseModel):
    id: str
    x: float
    y: float
    width: float
    height: float


class AutoArrangeRequest(BaseModel):
    canvas_width: float = Field(gt=0)
    canvas_height: float = Field(gt=0)
    bleed_px: float = Field(default=0.0, ge=0)
    # Tight mode packs edge to edge and ignores the bleed
    tight: bool = False
    objects: List[CanvasObject] = Field(default_factory=list)


class PhotobookArrangeRequest(BaseModel):
    spread_width: float = Field(gt=0)
    spread_height: float = Field(gt=0)
    bleed_px: float = Field(default=0.0, ge=0)
    tight: bool = False
    page_target: PageTarget = PageTarget.BOTH
    objects: List[CanvasObject] = Field(default_factory=list)


class ArrangeResult(BaseModel):
    updates: List[ArrangeUpdate] = Field(default_factory=list)
    image_count: int = 0
    can_arrange: bool = False
    layout: MasonryLayoutResult = Field(default_factory=MasonryLayoutResult)


def image_objects(objects: List[CanvasObject]) -> List[CanvasObject]:
    """Image objects with a usable size; text, stickers and empty frames are left alone."""
    return [obj for obj in objects if obj.type == "image" and obj.width > 0 and obj.height > 0]


def _spacing(tight: bool, gap: float, padding: float, bleed_px: float):
    if tight:
        return 0.0, 0.0, 0.0
    return gap, padding, bleed_px


def _arrange(
    targets: List[CanvasObject],
    area_width: float,
    area_height: float,
    offset_x: float,
    offset_y: float,
    gap: float,
    padding: float,
) -> ArrangeResult:
    if not targets:
        return ArrangeResult()

    layout = solve(MasonryLayoutRequest(
        canvas_width=area_width,
        canvas_height=area_height,
        images=[MasonryImage(id=obj.id, aspect_ratio=obj.width / obj.height) for obj in targets],
        gap=gap,
        padding=padding,
    ))
    updates = [
        ArrangeUpdate(
            id=p.id,
            x=p.x + offset_x,
            y=p.y + offset_y,
            width=p.width,
            height=p.height,
        )
        for p in layout.placements
    ]
    return ArrangeResult(updates=updates, image_count=len(targets), can_arrange=True, layout=layout)


def arrange_canvas(
    request: AutoArrangeRequest,
    gap: float = DEFAULT_ARRANGE_GAP,
    padding: float = DEFAULT_ARRANGE_PADDING,
) -> ArrangeResult:
    """Arrange every image object on a single canvas."""
    gap, padding, bleed = _spacing(request.tight, gap, padding, request.bleed_px)
    targets = image_objects(request.objects)
    logger.debug(f"Arranging {len(targets)} images on {request.canvas_width}x{request.canvas_height} canvas (tight={request.tight})")
    return _arrange(
        targets,
        request.canvas_width - bleed * 2,
        request.canvas_height - bleed * 2,
        bleed,
        bleed,
        gap,
        padding,
    )


def arrange_photobook(
    request: PhotobookArrangeRequest,
    gap: float = DEFAULT_ARRANGE_GAP,
    padding: float = DEFAULT_ARRANGE_PADDING,
) -> ArrangeResult:
    """Arrange the images of one page of a spread, or of the whole spread.

    For a single page only images whose center currently sits on that page are
    moved, and they are laid out inside that page.
    """
    gap, padding, bleed = _spacing(request.tight, gap, padding, request.bleed_px)
    targets = image_objects(request.objects)
    if request.page_target != PageTarget.BOTH:
        targets = [
            obj for obj in targets
            if is_in_page_bounds(obj.x, obj.width, request.spread_width, request.page_target)
        ]

    bounds = get_page_bounds(request.spread_width, request.spread_height, request.page_target)
    logger.debug(f"Arranging {len(targets)} images on {request.page_target.value} page(s) (tight={request.tight})")
    return _arrange(
        targets,
        bounds.width - bleed * 2,
        bounds.height - bleed * 2,
        bounds.x + bleed,
        bounds.y + bleed,
        gap,
        padding,
    )
