from dataclasses import dataclass
from time import perf_counter

import pydantic
from loguru import logger

from .broker import RedisBroker, Task
from .db import Image, RedisDatabase, User
from .defines import Webhook
from .errors import EnqueueError, PersistenceError, UniqueViolation, ValidationError
from .job import (
    ImageJob,
    enqueue_image_job,
    operation_from_dict,
    operation_to_dict,
    operations_from_list,
)
from .schemas import ProcessImageRequest

USER_RESOLVE_ATTEMPTS = 3


@dataclass
class SubmissionResult:
    user: User
    image: Image
    task: Task


def parse_request(data: dict) -> ProcessImageRequest:
    try:
        return ProcessImageRequest.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(str(e)) from e


class SubmissionService(object):
    def __init__(self, db: RedisDatabase, broker: RedisBroker):
        self.db = db
        self.broker = broker

    def resolve_user(self, email: str) -> User:
        """Look the user up by email, creating it on a miss."""
        for _ in range(USER_RESOLVE_ATTEMPTS):
            user = self.db.get_user_by_email(email)
            if user is not None:
                return user
            try:
                return self.db.create_user(email)
            except UniqueViolation:
                # Someone else created it between our lookup and insert
                logger.info(f"User {email} created concurrently, looking up again")
        raise PersistenceError(f"failed to resolve user {email}")

    def submit(self, request: ProcessImageRequest) -> SubmissionResult:
        user = self.resolve_user(request.email)

        operations = [operation_from_dict(op.model_dump()) for op in request.operations]
        webhook = None
        if request.webhook is not None:
            webhook = Webhook(url=str(request.webhook.url), token=request.webhook.token)

        # The job row must exist before its task can be picked up
        image = self.db.create_image(
            user_id=user.id,
            bucket_name=request.bucket_name,
            image_key=request.image_key,
            operations=[operation_to_dict(op) for op in operations],
            webhook=webhook,
        )
        logger.info(
            f"Image record created: {image.id} (user {user.id}, key {image.image_key})"
        )

        job = ImageJob(
            image_id=image.id,
            user_id=user.id,
            bucket_name=request.bucket_name,
            image_key=request.image_key,
            operations=operations,
        )
        task = enqueue_image_job(self.broker, job)
        return SubmissionResult(user=user, image=image, task=task)


class OrphanSweeper(object):
    """
    Re-enqueues jobs left `pending` for longer than `older_than` seconds,
    e.g. when enqueue failed right after the job row was created.

    A job that was merely waiting in a long queue may run twice; the status
    guard in the worker makes the second run a no-op.
    """

    def __init__(
        self,
        db: RedisDatabase,
        broker: RedisBroker,
        older_than: float,
        interval: float = 60,
    ):
        self.db = db
        self.broker = broker
        self.older_than = older_than
        self.interval = interval
        self.__last_run: float | None = None

    def sweep(self) -> int:
        requeued = 0
        for image in self.db.stale_pending(self.older_than):
            job = ImageJob(
                image_id=image.id,
                user_id=image.user_id,
                bucket_name=image.bucket_name,
                image_key=image.image_key,
                operations=operations_from_list(image.operations),
            )
            try:
                enqueue_image_job(self.broker, job)
            except EnqueueError as e:
                logger.error(f"Failed to requeue orphaned image {image.id}: {e}")
                break
            self.db.refresh_pending(image.id)
            requeued += 1

        if requeued:
            logger.warning(f"Requeued {requeued} orphaned pending images")
        return requeued

    def __call__(self):
        now = perf_counter()
        if self.__last_run is not None and now - self.__last_run < self.interval:
            return
        self.__last_run = now
        self.sweep()
