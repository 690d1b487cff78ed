from .job import ImageJob, enqueue_image_job
from .payload import (
    Compress,
    Watermark,
    UnknownOperation,
    Operation,
    operation_from_dict,
    operation_to_dict,
    operations_from_list,
)

__all__ = [
    "ImageJob",
    "enqueue_image_job",
    "Compress",
    "Watermark",
    "UnknownOperation",
    "Operation",
    "operation_from_dict",
    "operation_to_dict",
    "operations_from_list",
]
