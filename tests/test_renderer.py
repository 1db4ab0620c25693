from io import BytesIO

import pytest
from PIL import Image

from masonry import MasonryLayoutResult, MasonryPlacement
from renderer import (
    PLACEHOLDER_COLOR,
    CollageRenderer,
    OutputFormat,
    RenderConfig,
    blocks_from_layout,
    parse_color_rgba,
    raster_size,
    render_wireframe,
)


def _layout():
    return MasonryLayoutResult(
        placements=[
            MasonryPlacement(id="0", x=5.4, y=5.0, width=94.6, height=60.2),
            MasonryPlacement(id="1", x=105.0, y=5.0, width=94.6, height=120.0),
        ],
        actual_column_count=2,
        total_height=130.0,
        fill_rate=0.5,
    )


def test_parse_color_rgba():
    assert parse_color_rgba("#FF8000") == (255, 128, 0, 255)
    assert parse_color_rgba("#00000080") == (0, 0, 0, 128)
    assert parse_color_rgba("not-a-color") == (255, 255, 255, 255)


def test_render_config_rejects_bad_color():
    with pytest.raises(ValueError):
        RenderConfig(background_color="red")


def test_blocks_snap_to_pixels():
    blocks = blocks_from_layout(_layout(), {"0": "a.jpg"})
    assert [(b.x, b.y, b.width, b.height) for b in blocks] == [(5, 5, 95, 60), (105, 5, 95, 120)]
    assert blocks[0].image_path == "a.jpg"
    assert blocks[1].image_path is None


def test_generate_paints_images_into_blocks(tmp_path):
    red = tmp_path / "red.png"
    Image.new('RGB', (300, 200), (255, 0, 0)).save(red)

    config = RenderConfig(width_px=210, height_px=140, background_color="#FFFFFF", output_format=OutputFormat.PNG)
    renderer = CollageRenderer(config)
    out = tmp_path / "collage.png"
    renderer.generate(blocks_from_layout(_layout(), {"0": str(red)}), str(out))

    with Image.open(out) as img:
        assert img.size == (210, 140)
        assert img.getpixel((50, 30)) == (255, 0, 0)
        # Second block has no source file
        assert img.getpixel((150, 60)) == PLACEHOLDER_COLOR
        # Outside every block
        assert img.getpixel((2, 2)) == (255, 255, 255)


def test_unreadable_source_gets_placeholder(tmp_path):
    broken = tmp_path / "broken.jpg"
    broken.write_bytes(b"not an image")

    renderer = CollageRenderer(RenderConfig(width_px=210, height_px=140, output_format=OutputFormat.PNG))
    canvas = renderer.compose(blocks_from_layout(_layout(), {"0": str(broken)}))
    assert canvas.getpixel((50, 30)) == PLACEHOLDER_COLOR


@pytest.mark.parametrize("fmt,pil_format", [
    (OutputFormat.JPEG, "JPEG"),
    (OutputFormat.PNG, "PNG"),
    (OutputFormat.WEBP, "WEBP"),
])
def test_output_formats(tmp_path, fmt, pil_format):
    config = RenderConfig(width_px=100, height_px=80, background_color="#33669980", output_format=fmt)
    out = tmp_path / f"collage.{fmt.value}"
    CollageRenderer(config).generate([], str(out))
    with Image.open(out) as img:
        assert img.format == pil_format


def test_canvas_pixel_limit():
    with pytest.raises(ValueError):
        CollageRenderer(RenderConfig(width_px=2000, height_px=2000), max_canvas_pixels=1_000_000)


def test_wireframe_is_png_of_canvas_size():
    png = render_wireframe(_layout(), 210, 140)
    assert png.startswith(b"\x89PNG")
    with Image.open(BytesIO(png)) as img:
        assert img.size == (210, 140)
        assert img.getpixel((2, 2)) == (255, 255, 255)


def test_raster_size_rounds_up_to_one_pixel():
    assert raster_size(20000, 0.04) == (20000, 1)
    assert raster_size(210.4, 139.6) == (210, 140)
    with pytest.raises(ValueError):
        raster_size(float('inf'), 10)


def test_wireframe_pixel_limit_uses_rounded_size():
    with pytest.raises(ValueError):
        render_wireframe(MasonryLayoutResult(), 20000, 0.04, max_canvas_pixels=1000)
