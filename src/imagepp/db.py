import json
import time
import traceback
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List

import redis
from loguru import logger

from .defines import JobStatus, Settings, Webhook
from .elastic import job_index_name
from .errors import NotFound, StatusConflict, UniqueViolation
from .utils import persistence, redis_client


@dataclass
class User:
    id: int
    email: str
    created_at: datetime


@dataclass
class Image:
    id: int
    user_id: int
    bucket_name: str
    image_key: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    operations: List[dict] = field(default_factory=list)
    webhook: Webhook | None = None

    def to_dict(self) -> dict:
        return {
            "image_id": self.id,
            "user_id": self.user_id,
            "bucket_name": self.bucket_name,
            "image_key": self.image_key,
            "status": self.status,
            "operations": self.operations,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class RedisDatabase(object):
    """
    Job store on Redis hashes.

    - `user:{id}` / `image:{id}` hold the records, ids come from INCR counters.
    - `user:email:{email}` is the unique email index.
    - `image:pending` is a sorted set of jobs still waiting for a worker,
      scored by the time they were (re)scheduled.
    """

    def __init__(
        self,
        client: redis.Redis | None = None,
        prefix: str = Settings.REDIS_PREFIX,
        elastic=None,
    ):
        if client is None:
            client = redis_client()
        self.__db = client
        self.__prefix = prefix
        self.__elastic = elastic

    def __key(self, *parts) -> str:
        return ":".join([self.__prefix, *[str(p) for p in parts]])

    def ping(self) -> bool:
        with persistence("ping job store"):
            return bool(self.__db.ping())

    # Users

    def get_user(self, user_id: int) -> User | None:
        with persistence("get user"):
            user_dict = self.__db.hgetall(self.__key("user", user_id))
        if not user_dict:
            return None
        return User(
            id=int(user_dict["id"]),
            email=user_dict["email"],
            created_at=datetime.fromisoformat(user_dict["created_at"]),
        )

    def get_user_by_email(self, email: str) -> User | None:
        with persistence("get user by email"):
            user_id = self.__db.get(self.__key("user", "email", email))
        if user_id is None:
            return None
        return self.get_user(int(user_id))

    def create_user(self, email: str) -> User:
        now = datetime.now(timezone.utc)
        with persistence("create user"):
            user_id = self.__db.incr(self.__key("user", "next_id"))
            user_key = self.__key("user", user_id)
            self.__db.hset(
                user_key,
                mapping={
                    "id": user_id,
                    "email": email,
                    "created_at": now.isoformat(),
                },
            )

            # Claim the email last so a winner never points at a missing record
            claimed = self.__db.set(
                self.__key("user", "email", email), user_id, nx=True
            )
            if not claimed:
                self.__db.delete(user_key)
                raise UniqueViolation(f"user with email {email} already exists")

        logger.info(f"New user created: {user_id} ({email})")
        return User(id=user_id, email=email, created_at=now)

    # Images

    def create_image(
        self,
        user_id: int,
        bucket_name: str,
        image_key: str,
        operations: List[dict],
        webhook: Webhook | None = None,
    ) -> Image:
        now = datetime.now(timezone.utc)
        with persistence("create image record"):
            image_id = self.__db.incr(self.__key("image", "next_id"))
            mapping = {
                "id": image_id,
                "user_id": user_id,
                "bucket_name": bucket_name,
                "image_key": image_key,
                "status": "pending",
                "operations": json.dumps(operations),
                "created_at": now.isoformat(),
                "updated_at": now.isoformat(),
            }
            if webhook is not None:
                mapping["webhook"] = json.dumps(asdict(webhook))

            pipe = self.__db.pipeline()
            pipe.hset(self.__key("image", image_id), mapping=mapping)
            pipe.zadd(self.__key("user", user_id, "images"), {image_id: now.timestamp()})
            pipe.zadd(self.__key("image", "pending"), {image_id: time.time()})
            pipe.execute()

        return Image(
            id=image_id,
            user_id=user_id,
            bucket_name=bucket_name,
            image_key=image_key,
            status="pending",
            created_at=now,
            updated_at=now,
            operations=operations,
            webhook=webhook,
        )

    def get_image(self, image_id: int) -> Image | None:
        with persistence("get image"):
            image_dict = self.__db.hgetall(self.__key("image", image_id))
        if not image_dict:
            return None

        # Convert webhook from dict
        webhook = None
        if image_dict.get("webhook"):
            webhook = Webhook(**json.loads(image_dict["webhook"]))

        return Image(
            id=int(image_dict["id"]),
            user_id=int(image_dict["user_id"]),
            bucket_name=image_dict["bucket_name"],
            image_key=image_dict["image_key"],
            status=image_dict["status"],
            created_at=datetime.fromisoformat(image_dict["created_at"]),
            updated_at=datetime.fromisoformat(image_dict["updated_at"]),
            operations=json.loads(image_dict.get("operations") or "[]"),
            webhook=webhook,
        )

    def list_user_images(self, user_id: int) -> List[Image]:
        with persistence("list user images"):
            image_ids = self.__db.zrange(self.__key("user", user_id, "images"), 0, -1)
        images = [self.get_image(int(image_id)) for image_id in image_ids]
        return [image for image in images if image is not None]

    def update_image_status(
        self,
        image_id: int,
        status: JobStatus,
        expected: Iterable[JobStatus] | None = None,
        attempt: str | None = None,
    ) -> Image:
        """
        Set the status of an image job.

        With `expected`, the write only happens if the stored status is one
        of them; otherwise StatusConflict is raised and nothing is written.

        `attempt` identifies one delivery of the job's task. Moving to
        `processing` records it as the owner of the job; any other status
        is only written while that same attempt still owns it, so a stale
        attempt cannot overwrite the outcome of a newer one.
        """
        image_key = self.__key("image", image_id)
        pending_key = self.__key("image", "pending")
        allowed = None if expected is None else set(expected)

        def apply(pipe):
            current = pipe.hget(image_key, "status")
            if current is None:
                raise NotFound(f"image {image_id} not found")
            if allowed is not None and current not in allowed:
                raise StatusConflict(image_id, current, status)

            mapping = {
                "status": status,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }
            if attempt is not None:
                if status == "processing":
                    mapping["attempt"] = attempt
                else:
                    owner = pipe.hget(image_key, "attempt")
                    if owner != attempt:
                        raise StatusConflict(image_id, current, status, owner=owner)

            pipe.multi()
            pipe.hset(image_key, mapping=mapping)
            if status != "pending":
                pipe.zrem(pending_key, image_id)

        with persistence("update image status"):
            self.__db.transaction(apply, image_key)

        logger.debug(f"Image {image_id} status -> {status}")
        return self.get_image(image_id)

    def stale_pending(self, older_than: float) -> List[Image]:
        """Jobs still `pending` that were last scheduled `older_than` seconds ago."""
        with persistence("find stale pending images"):
            image_ids = self.__db.zrangebyscore(
                self.__key("image", "pending"), "-inf", time.time() - older_than
            )
        images = [self.get_image(int(image_id)) for image_id in image_ids]
        return [image for image in images if image is not None and image.status == "pending"]

    def refresh_pending(self, image_id: int):
        with persistence("refresh pending image"):
            self.__db.zadd(
                self.__key("image", "pending"), {image_id: time.time()}, xx=True
            )

    def log_job(self, image: Image):
        if self.__elastic is None:
            return

        now = datetime.now(timezone.utc)
        try:
            self.__elastic.index(
                index=job_index_name(now),
                document={
                    "@timestamp": now,
                    "worker": Settings.WORKER_NAME,
                    "image_id": image.id,
                    "user_id": image.user_id,
                    "bucket_name": image.bucket_name,
                    "image_key": image.image_key,
                    "status": image.status,
                    "operations": [op.get("type") for op in image.operations],
                    "process_time": (now - image.created_at).total_seconds(),
                },
            )
        except Exception:
            logger.error(f"Failed to log to elastic: {image.id}")
            logger.error(traceback.format_exc())
