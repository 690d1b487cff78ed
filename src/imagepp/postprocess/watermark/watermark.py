from PIL import Image, ImageDraw, ImageFont
from PIL.Image import Image as PILImage

from ...job.payload import Watermark

MARGIN = 20
WHITE = (255, 255, 255)


def parse_color(hex_color: str | None) -> tuple[int, int, int]:
    """Parse `RRGGBB` (optionally `#RRGGBB`); anything else is white."""
    if not hex_color:
        return WHITE
    if hex_color.startswith("#"):
        hex_color = hex_color[1:]
    if len(hex_color) != 6:
        return WHITE
    try:
        return (
            int(hex_color[0:2], 16),
            int(hex_color[2:4], 16),
            int(hex_color[4:6], 16),
        )
    except ValueError:
        return WHITE


def opacity_alpha(opacity: float) -> int:
    return int(max(0.0, min(255.0, opacity * 255)))


def watermark_anchor(
    width: float,
    height: float,
    text_width: float,
    text_height: float,
    position: str,
) -> tuple[float, float]:
    # (x, y) is the left edge and the vertical middle of the text
    if position == "top-left":
        return MARGIN, MARGIN + text_height
    if position == "top-right":
        return width - text_width - MARGIN, MARGIN + text_height
    if position == "bottom-left":
        return MARGIN, height - MARGIN
    if position == "center":
        return (width - text_width) / 2, (height + text_height) / 2
    # bottom-right, and the fallback for unknown positions
    return width - text_width - MARGIN, height - MARGIN


def load_font(size: int, font_path: str | None = None):
    # Loaded per call: FreeType faces are not shared between worker threads
    if font_path:
        return ImageFont.truetype(font_path, size)
    return ImageFont.load_default(size=size)


def apply_watermark(
    image: PILImage, params: Watermark, font_path: str | None = None
) -> PILImage:
    if not params.text:
        return image

    base = image.convert("RGBA")
    w, h = base.size

    overlay = Image.new(mode="RGBA", size=(w, h), color=(0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    font = load_font(max(int(round(params.font_size)), 1), font_path)

    left, top, right, bottom = draw.textbbox((0, 0), params.text, font=font)
    text_width, text_height = right - left, bottom - top
    x, y = watermark_anchor(w, h, text_width, text_height, params.position)

    # The color string never carries alpha, opacity always decides it
    fill = (*parse_color(params.color), opacity_alpha(params.opacity))
    origin = (x - left, y - (top + bottom) / 2)
    draw.text(origin, params.text, fill=fill, font=font)

    return Image.alpha_composite(base, overlay)
