from .postprocess import (
    PipelineResult,
    decode_image,
    effective_compress,
    output_key,
    run_pipeline,
    transform,
)

__all__ = [
    "PipelineResult",
    "decode_image",
    "effective_compress",
    "output_key",
    "run_pipeline",
    "transform",
]
