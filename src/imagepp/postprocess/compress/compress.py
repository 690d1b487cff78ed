from dataclasses import dataclass
from io import BytesIO

from PIL.Image import Image as PILImage, Resampling

from ...job.payload import Compress

DEFAULT_QUALITY = 85
DEFAULT_FORMAT = "jpeg"

FORMAT_ALIASES = {"jpg": "jpeg"}
PIL_FORMATS = {"jpeg": "JPEG", "png": "PNG", "webp": "WEBP"}
EXTENSIONS = {"jpeg": "jpg", "png": "png", "webp": "webp"}


@dataclass(frozen=True)
class EncodeSettings:
    format: str = DEFAULT_FORMAT
    quality: int | None = DEFAULT_QUALITY
    max_width: int = 0
    max_height: int = 0

    @property
    def extension(self) -> str:
        return EXTENSIONS[self.format]


def resolve_encoding(compress: Compress | None) -> EncodeSettings:
    """Turn the effective compress parameters into concrete encoder settings."""
    if compress is None:
        return EncodeSettings()

    fmt = (compress.format or DEFAULT_FORMAT).lower()
    fmt = FORMAT_ALIASES.get(fmt, fmt)
    max_width = max(compress.max_width, 0)
    max_height = max(compress.max_height, 0)

    if fmt not in PIL_FORMATS:
        return EncodeSettings(
            format=DEFAULT_FORMAT,
            quality=DEFAULT_QUALITY,
            max_width=max_width,
            max_height=max_height,
        )

    if fmt == "png":
        quality = None
    else:
        quality = compress.quality
        if quality is None or quality < 1 or quality > 100:
            quality = DEFAULT_QUALITY

    return EncodeSettings(
        format=fmt,
        quality=quality,
        max_width=max_width,
        max_height=max_height,
    )


def fit(image: PILImage, max_width: int, max_height: int) -> PILImage:
    """Shrink into the bounding box keeping aspect ratio; 0 leaves a side free."""
    if max_width <= 0 and max_height <= 0:
        return image

    w, h = image.size
    box = (max_width if max_width > 0 else w, max_height if max_height > 0 else h)
    if w <= box[0] and h <= box[1]:
        return image

    fitted = image.copy()
    fitted.thumbnail(box, Resampling.LANCZOS)
    return fitted


def encode_image(image: PILImage, settings: EncodeSettings) -> bytes:
    save_options = {"format": PIL_FORMATS[settings.format]}
    if settings.quality is not None:
        save_options["quality"] = settings.quality

    # Convert to RGB if JPEG
    if settings.format == "jpeg" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    elif settings.format == "webp" and image.mode not in ("RGB", "RGBA"):
        image = image.convert("RGBA")

    bytes_io = BytesIO()
    image.save(bytes_io, **save_options)
    return bytes_io.getvalue()
