from .watermark import (
    apply_watermark,
    watermark_anchor,
    parse_color,
    opacity_alpha,
    load_font,
)

__all__ = [
    "apply_watermark",
    "watermark_anchor",
    "parse_color",
    "opacity_alpha",
    "load_font",
]
