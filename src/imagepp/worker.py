from time import perf_counter
from typing import Callable

import requests
from loguru import logger

from .broker import Task
from .db import Image, RedisDatabase
from .defines import Settings
from .errors import PersistenceError, StatusConflict, TaskPayloadError
from .job import ImageJob
from .postprocess import output_key, run_pipeline
from .r2 import R2Storage

# A redelivered task may claim a job that was left processing by a crashed
# worker, or marked failed by an earlier attempt that will now be retried
CLAIMABLE = ("pending", "processing", "failed")


def attempt_token(task: Task) -> str:
    """Identifies one delivery of a task: redeliveries bump `retried`."""
    return f"{task.id}:{task.retried}"


def handle_health_check(task: Task):
    logger.info(f"Worker is working [{task.type}] {task.id}")


def emit_webhook(image: Image):
    if not image.webhook:
        return
    logger.info(f"Emitting webhook: {image.webhook.url}")
    try:
        requests.post(
            image.webhook.url,
            headers={
                "authorization": f"Bearer {image.webhook.token}",
            }
            if image.webhook.token
            else {},
            json={
                "worker": Settings.WORKER_NAME,
                **image.to_dict(),
            },
            timeout=3,
        )
    except requests.RequestException as e:
        logger.warning(f"Webhook failed: {e}")


class ImageProcessHandler(object):
    def __init__(
        self,
        db: RedisDatabase,
        storage_factory: Callable[[str], R2Storage],
        font_path: str | None = Settings.WATERMARK_FONT_PATH,
    ):
        self.db = db
        self.storage_factory = storage_factory
        self.font_path = font_path

    def __call__(self, task: Task):
        job = ImageJob.from_payload(task.payload)
        job.validate()
        attempt = attempt_token(task)

        logger.info(f"Processing image {job.image_id}: {job.image_key}")
        try:
            self.db.update_image_status(
                job.image_id, "processing", expected=CLAIMABLE, attempt=attempt
            )
        except StatusConflict as e:
            # Duplicate delivery of a job another attempt already completed
            logger.warning(f"Skipping image {job.image_id}: already {e.current}")
            return

        try:
            result_key = self.process(job)
        except Exception:
            self.mark_failed(job.image_id, attempt)
            raise

        try:
            # `failed` is accepted while this attempt still owns the job: it
            # was abandoned on timeout but finished before anyone reclaimed it
            image = self.db.update_image_status(
                job.image_id,
                "completed",
                expected=("processing", "failed"),
                attempt=attempt,
            )
        except StatusConflict as e:
            logger.warning(
                f"Image {job.image_id} was taken over while processing, "
                f"keeping its status: {e}"
            )
            return

        logger.info(f"Done image {job.image_id} -> {result_key}")
        self.db.log_job(image)
        emit_webhook(image)

    def process(self, job: ImageJob) -> str:
        storage = self.storage_factory(job.bucket_name)

        time_start = perf_counter()
        data = storage.download(job.image_key)
        logger.debug(f"Downloaded {len(data)} bytes in {perf_counter() - time_start:.3f}s")

        result = run_pipeline(data, job.operations, self.font_path)

        key = output_key(job.image_id, result.format)
        storage.upload(key, result.data)
        return key

    def on_failure(self, task: Task):
        """
        Called by the dispatcher for attempts it gave up on without the
        handler returning: timeouts and expired leases.
        """
        try:
            job = ImageJob.from_payload(task.payload)
        except TaskPayloadError:
            return
        self.mark_failed(job.image_id, attempt_token(task))

    def mark_failed(self, image_id: int, attempt: str | None = None):
        """Best effort: the error that caused the failure is what propagates."""
        try:
            image = self.db.update_image_status(
                image_id, "failed", expected=("processing",), attempt=attempt
            )
        except PersistenceError as e:
            logger.error(f"Failed to update image {image_id} status to failed: {e}")
            return

        self.db.log_job(image)
        emit_webhook(image)
