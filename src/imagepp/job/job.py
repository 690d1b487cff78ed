import json
from dataclasses import dataclass, field
from typing import List

from loguru import logger

from ..defines import (
    IMAGE_TASK_MAX_RETRY,
    IMAGE_TASK_QUEUE,
    IMAGE_TASK_TIMEOUT,
    TYPE_IMAGE_PROCESS,
)
from ..errors import TaskPayloadError
from .payload import Operation, operation_to_dict, operations_from_list


@dataclass(frozen=True)
class ImageJob:
    """Task envelope for one image transform, as handed to the broker."""

    image_id: int
    user_id: int
    bucket_name: str
    image_key: str
    operations: List[Operation] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "image_id": self.image_id,
            "user_id": self.user_id,
            "bucket_name": self.bucket_name,
            "image_key": self.image_key,
            "operations": [operation_to_dict(op) for op in self.operations],
        }

    def to_payload(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_payload(cls, payload: bytes | str) -> "ImageJob":
        try:
            data = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise TaskPayloadError(f"failed to unmarshal job payload: {e}")
        if not isinstance(data, dict):
            raise TaskPayloadError("failed to unmarshal job payload: not an object")

        operations = data.get("operations") or []
        if not isinstance(operations, list):
            raise TaskPayloadError("failed to unmarshal job payload: operations")

        try:
            return cls(
                image_id=int(data.get("image_id") or 0),
                user_id=int(data.get("user_id") or 0),
                bucket_name=str(data.get("bucket_name") or ""),
                image_key=str(data.get("image_key") or ""),
                operations=operations_from_list(operations),
            )
        except (TypeError, ValueError) as e:
            raise TaskPayloadError(f"failed to unmarshal job payload: {e}")

    def validate(self):
        if self.image_id == 0 or not self.bucket_name or not self.image_key:
            raise TaskPayloadError("invalid job payload: missing required fields")


def enqueue_image_job(broker, job: ImageJob):
    """Hand the envelope to the broker on the critical queue."""
    task = broker.enqueue(
        TYPE_IMAGE_PROCESS,
        job.to_payload(),
        queue=IMAGE_TASK_QUEUE,
        max_retry=IMAGE_TASK_MAX_RETRY,
        timeout=IMAGE_TASK_TIMEOUT,
    )
    logger.info(f"Enqueued image job {job.image_id} as task {task.id}")
    return task
