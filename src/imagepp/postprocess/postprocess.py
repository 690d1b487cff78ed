from dataclasses import dataclass
from io import BytesIO
from time import perf_counter
from typing import List

from loguru import logger
from PIL import Image, UnidentifiedImageError
from PIL.Image import Image as PILImage

from ..errors import DecodeError, TransformError
from ..job.payload import Compress, Operation, Watermark
from .compress import EncodeSettings, encode_image, fit, resolve_encoding
from .watermark import apply_watermark

OUTPUT_PREFIX = "processed/"


@dataclass(frozen=True)
class PipelineResult:
    data: bytes
    format: str
    width: int
    height: int

    @property
    def extension(self) -> str:
        return EncodeSettings(format=self.format).extension


def output_key(image_id: int, fmt: str) -> str:
    return f"{OUTPUT_PREFIX}{image_id}.{EncodeSettings(format=fmt).extension}"


def decode_image(data: bytes) -> PILImage:
    try:
        image = Image.open(BytesIO(data))
        image.load()
    except (
        UnidentifiedImageError,
        Image.DecompressionBombError,
        OSError,
        ValueError,
    ) as e:
        raise DecodeError(f"failed to decode image: {e}") from e

    # change to RGB if CMYK
    if image.mode == "CMYK":
        image = image.convert("RGB")

    return image


def effective_compress(operations: List[Operation]) -> Compress | None:
    """
    The compress parameters that apply at encode time.

    Compress entries are not applied in sequence: the last one in the list
    wins and is applied once, when the final image is encoded.
    """
    found = None
    for op in operations:
        if isinstance(op, Compress):
            found = op
    return found


def transform(
    image: PILImage, operations: List[Operation], font_path: str | None = None
) -> PILImage:
    for op in operations:
        if not isinstance(op, Watermark):
            # compress is deferred to encode, unknown types are skipped
            continue

        logger.debug(f"Processing [{op.type}] at {op.position}")
        time_start = perf_counter()
        try:
            image = apply_watermark(image, op, font_path)
        except (OSError, ValueError) as e:
            raise TransformError(f"failed to apply watermark: {e}") from e
        logger.debug(f"Done in {perf_counter() - time_start:.3f}s")

    return image


def run_pipeline(
    data: bytes, operations: List[Operation], font_path: str | None = None
) -> PipelineResult:
    image = decode_image(data)
    image = transform(image, operations, font_path)

    settings = resolve_encoding(effective_compress(operations))
    try:
        image = fit(image, settings.max_width, settings.max_height)
        encoded = encode_image(image, settings)
    except (OSError, ValueError) as e:
        raise TransformError(f"failed to encode image: {e}") from e

    return PipelineResult(
        data=encoded,
        format=settings.format,
        width=image.width,
        height=image.height,
    )
