import math
from dataclasses import dataclass, field
from typing import Any, ClassVar, List

from loguru import logger

from ..defines import OperationType


@dataclass(frozen=True)
class Compress:
    quality: int | None = None
    format: str | None = None
    max_width: int = 0
    max_height: int = 0

    type: ClassVar[OperationType] = "compress"

    def params(self) -> dict:
        params: dict[str, Any] = {}
        if self.quality is not None:
            params["quality"] = self.quality
        if self.format is not None:
            params["format"] = self.format
        if self.max_width:
            params["max_width"] = self.max_width
        if self.max_height:
            params["max_height"] = self.max_height
        return params


@dataclass(frozen=True)
class Watermark:
    text: str = "Watermark"
    position: str = "bottom-right"
    opacity: float = 0.5
    font_size: float = 24
    color: str = "#FFFFFF"

    type: ClassVar[OperationType] = "watermark"

    def params(self) -> dict:
        return {
            "text": self.text,
            "position": self.position,
            "opacity": self.opacity,
            "font_size": self.font_size,
            "color": self.color,
        }


@dataclass(frozen=True)
class UnknownOperation:
    """Operation type this worker does not know. Traversed as a no-op."""

    type: str
    raw_params: dict = field(default_factory=dict)

    def params(self) -> dict:
        return dict(self.raw_params)


Operation = Compress | Watermark | UnknownOperation


def _as_int(value: Any) -> int | None:
    # bool is an int subclass but never a meaningful size or quality
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        # JSON numbers arrive as floats from some producers, truncate like int()
        return int(value)
    return None


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    return None


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def parse_compress(params: dict) -> Compress:
    return Compress(
        quality=_as_int(params.get("quality")),
        format=_as_str(params.get("format")),
        max_width=max(_as_int(params.get("max_width")) or 0, 0),
        max_height=max(_as_int(params.get("max_height")) or 0, 0),
    )


def parse_watermark(params: dict) -> Watermark:
    default = Watermark()
    font_size = _as_float(params.get("font_size"))
    if font_size is None or font_size <= 0:
        font_size = default.font_size

    text = _as_str(params.get("text"))
    position = _as_str(params.get("position"))
    opacity = _as_float(params.get("opacity"))
    color = _as_str(params.get("color"))
    return Watermark(
        text=default.text if text is None else text,
        position=default.position if position is None else position,
        opacity=default.opacity if opacity is None else opacity,
        font_size=font_size,
        color=default.color if color is None else color,
    )


def operation_from_dict(op: dict) -> Operation:
    """
    Decode one wire operation `{"type": ..., "params": {...}}`.

    Values of the wrong type fall back to defaults; an unknown type is kept
    as an UnknownOperation so the pipeline can skip it.
    """
    op_type = op.get("type")
    params = op.get("params")
    if not isinstance(params, dict):
        params = {}

    if op_type == "compress":
        return parse_compress(params)
    if op_type == "watermark":
        return parse_watermark(params)

    logger.warning(f"Unknown operation type: {op_type!r}")
    return UnknownOperation(type=str(op_type), raw_params=params)


def operations_from_list(ops: List[dict]) -> List[Operation]:
    return [operation_from_dict(op) for op in ops if isinstance(op, dict)]


def operation_to_dict(op: Operation) -> dict:
    return {"type": op.type, "params": op.params()}
