"""
Collage rendering
Composes source images into the rectangles produced by the masonry engine.
"""

import io
import logging
import math
import re
from enum import Enum
from typing import Dict, List, Optional, Tuple

from PIL import Image, ImageDraw, ImageOps
from pydantic import BaseModel, Field, field_validator

from masonry import MasonryLayoutResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_CANVAS_PIXELS = 100_000_000
PLACEHOLDER_COLOR = (224, 224, 224)
WIREFRAME_OUTLINE = (60, 60, 60)
WIREFRAME_FILL = (235, 240, 250)

_HEX_COLOR = re.compile(r'^#[0-9A-Fa-f]{6}([0-9A-Fa-f]{2})?$')


class OutputFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"


class RenderConfig(BaseModel):
    width_px: int = Field(default=1920, ge=64, le=20000)
    height_px: int = Field(default=1080, ge=64, le=20000)
    dpi: int = Field(default=150, ge=72, le=600)
    background_color: str = Field(default="#FFFFFF")
    output_format: OutputFormat = OutputFormat.JPEG

    @field_validator('background_color')
    @classmethod
    def validate_color(cls, v):
        """Validate hex color format - supports #RRGGBB and #RRGGBBAA (with alpha)"""
        if not _HEX_COLOR.match(v):
            raise ValueError('Invalid hex color format - must be #RRGGBB or #RRGGBBAA (with alpha)')
        return v


class ImageBlock:
    """Represents a single image block in the collage"""
    def __init__(self, x: int, y: int, width: int, height: int, image_path: Optional[str] = None):
        self.x = x
        self.y = y
        self.width = width
        self.height = height
        self.image_path = image_path


def blocks_from_layout(layout: MasonryLayoutResult, paths_by_id: Dict[str, str]) -> List[ImageBlock]:
    """Snap placements to whole pixels and attach the source file for each."""
    blocks = []
    for p in layout.placements:
        blocks.append(ImageBlock(
            x=int(round(p.x)),
            y=int(round(p.y)),
            width=max(1, int(round(p.width))),
            height=max(1, int(round(p.height))),
            image_path=paths_by_id.get(p.id),
        ))
    return blocks


def parse_color_rgba(color_str: str) -> Tuple[int, int, int, int]:
    """Parse #RRGGBB or #RRGGBBAA to RGBA tuple."""
    if isinstance(color_str, str) and color_str.startswith('#'):
        hex_str = color_str[1:]
        if len(hex_str) == 8:
            return tuple(int(hex_str[i:i + 2], 16) for i in (0, 2, 4, 6))
        elif len(hex_str) == 6:
            r, g, b = (int(hex_str[i:i + 2], 16) for i in (0, 2, 4))
            return (r, g, b, 255)
    return (255, 255, 255, 255)


class CollageRenderer:
    """Generates the final collage image"""

    def __init__(self, config: RenderConfig, max_canvas_pixels: int = DEFAULT_MAX_CANVAS_PIXELS):
        self.config = config
        self.canvas_width = int(config.width_px)
        self.canvas_height = int(config.height_px)
        if self.canvas_width * self.canvas_height > max_canvas_pixels:
            raise ValueError(
                f"Canvas too large: {self.canvas_width*self.canvas_height} pixels exceeds limit {max_canvas_pixels}"
            )

    def _new_canvas(self) -> Image.Image:
        r, g, b, a = parse_color_rgba(self.config.background_color)
        if a < 255:
            return Image.new('RGBA', (self.canvas_width, self.canvas_height), (r, g, b, a))
        return Image.new('RGB', (self.canvas_width, self.canvas_height), (r, g, b))

    def compose(self, image_blocks: List[ImageBlock]) -> Image.Image:
        canvas = self._new_canvas()
        for block in image_blocks:
            tile = self._load_tile(block)
            canvas.paste(tile, (block.x, block.y))
        return canvas

    def generate(self, image_blocks: List[ImageBlock], output_path: str) -> str:
        """Render blocks and write the collage to output_path"""
        canvas = self.compose(image_blocks)
        self._save(canvas, output_path)
        return output_path

    def _load_tile(self, block: ImageBlock) -> Image.Image:
        if block.image_path:
            try:
                with Image.open(block.image_path) as img:
                    img = ImageOps.exif_transpose(img)
                    if img.mode != 'RGB':
                        img = img.convert('RGB')
                    return self._cover_resize(img, block.width, block.height)
            except (OSError, ValueError) as e:
                logger.warning(f"Could not render {block.image_path}, using placeholder: {e}")
        return Image.new('RGB', (block.width, block.height), PLACEHOLDER_COLOR)

    @staticmethod
    def _cover_resize(img: Image.Image, target_width: int, target_height: int) -> Image.Image:
        """Resize without distortion using scale-to-cover and center crop."""
        src_w, src_h = img.width, img.height
        scale = max(target_width / src_w, target_height / src_h)
        new_w = max(1, int(round(src_w * scale)))
        new_h = max(1, int(round(src_h * scale)))
        img = img.resize((new_w, new_h), Image.Resampling.LANCZOS)

        left = max(0, (new_w - target_width) // 2)
        top = max(0, (new_h - target_height) // 2)
        return img.crop((left, top, left + target_width, top + target_height))

    def _save(self, canvas: Image.Image, output_path) -> None:
        dpi = (self.config.dpi, self.config.dpi)
        if self.config.output_format == OutputFormat.JPEG:
            # JPEG does not support alpha
            if canvas.mode == 'RGBA':
                canvas = canvas.convert('RGB')
            canvas.save(output_path, 'JPEG', quality=95, dpi=dpi)
        elif self.config.output_format == OutputFormat.PNG:
            canvas.save(output_path, 'PNG', dpi=dpi)
        elif self.config.output_format == OutputFormat.WEBP:
            canvas.save(output_path, 'WEBP', quality=95)


def raster_size(canvas_width: float, canvas_height: float) -> Tuple[int, int]:
    """Pixel dimensions a canvas is drawn at; never smaller than 1x1."""
    if not (math.isfinite(canvas_width) and math.isfinite(canvas_height)):
        raise ValueError(f"Canvas size {canvas_width} x {canvas_height} is not finite")
    return max(1, int(round(canvas_width))), max(1, int(round(canvas_height)))


def render_wireframe(
    layout: MasonryLayoutResult,
    canvas_width: float,
    canvas_height: float,
    background_color: str = "#FFFFFF",
    max_canvas_pixels: int = DEFAULT_MAX_CANVAS_PIXELS,
) -> bytes:
    """PNG of the canvas with one labeled box per placement."""
    width, height = raster_size(canvas_width, canvas_height)
    if width * height > max_canvas_pixels:
        raise ValueError(f"Canvas too large: {width}x{height} pixels exceeds limit {max_canvas_pixels}")
    r, g, b, _ = parse_color_rgba(background_color)
    canvas = Image.new('RGB', (width, height), (r, g, b))
    draw = ImageDraw.Draw(canvas)
    for p in layout.placements:
        x0, y0 = int(round(p.x)), int(round(p.y))
        x1 = max(x0, int(round(p.x + p.width)) - 1)
        y1 = max(y0, int(round(p.y + p.height)) - 1)
        draw.rectangle([x0, y0, x1, y1], fill=WIREFRAME_FILL, outline=WIREFRAME_OUTLINE)
        draw.text((x0 + 4, y0 + 4), p.id, fill=WIREFRAME_OUTLINE)

    buf = io.BytesIO()
    canvas.save(buf, format='PNG')
    return buf.getvalue()
