import random
import time
from dataclasses import dataclass
from typing import Callable, Dict, List

import redis
from cuid2 import cuid_wrapper
from loguru import logger

from .defines import DEFAULT_TASK_TIMEOUT, QUEUE_WEIGHTS, Settings
from .errors import EnqueueError
from .utils import persistence, redis_client

cuid_generator: Callable[[], str] = cuid_wrapper()

# Extra time before a lease counts as expired, so a worker enforcing the
# timeout itself always gets to report the failure first
LEASE_GRACE = 30


@dataclass
class Task:
    id: str
    type: str
    payload: bytes
    queue: str
    max_retry: int
    retried: int = 0
    timeout: int = DEFAULT_TASK_TIMEOUT
    error: str | None = None


def weighted_queue_order(
    weights: Dict[str, int], rng: random.Random | None = None
) -> List[str]:
    """
    Order queue names for one dequeue attempt.

    Each position is drawn at random in proportion to the remaining weights,
    so heavier queues are polled first more often without starving the rest.
    """
    rng = rng or random
    remaining = {name: weight for name, weight in weights.items() if weight > 0}
    order = []
    while remaining:
        names = list(remaining)
        name = rng.choices(names, weights=[remaining[n] for n in names])[0]
        order.append(name)
        del remaining[name]
    return order


class RedisBroker(object):
    """
    At-least-once task queue on Redis lists.

    - `queue:{name}` pending task ids, consumed from the left.
    - `active:{name}` ids handed to a worker; `lease` scores them by deadline.
    - `scheduled` retries scored by the time they become due.
    - `dead` dead-lettered task ids.
    - `task:{id}` the task message itself.
    """

    def __init__(
        self,
        client: redis.Redis | None = None,
        prefix: str = Settings.REDIS_PREFIX,
    ):
        self.__db = client if client is not None else redis_client()
        self.__prefix = prefix

    def __key(self, *parts) -> str:
        return ":".join([self.__prefix, *[str(p) for p in parts]])

    def ping(self) -> bool:
        try:
            return bool(self.__db.ping())
        except redis.RedisError as e:
            raise EnqueueError(f"broker unreachable: {e}") from e

    def enqueue(
        self,
        task_type: str,
        payload: bytes | None = None,
        queue: str = "default",
        max_retry: int = 25,
        timeout: int = DEFAULT_TASK_TIMEOUT,
    ) -> Task:
        task = Task(
            id=cuid_generator(),
            type=task_type,
            payload=payload or b"",
            queue=queue,
            max_retry=max_retry,
            timeout=timeout,
        )
        try:
            pipe = self.__db.pipeline()
            pipe.hset(
                self.__key("task", task.id),
                mapping={
                    "type": task.type,
                    "payload": task.payload.decode("utf-8"),
                    "queue": task.queue,
                    "max_retry": task.max_retry,
                    "retried": 0,
                    "timeout": task.timeout,
                },
            )
            pipe.rpush(self.__key("queue", queue), task.id)
            pipe.execute()
        except redis.RedisError as e:
            raise EnqueueError(f"failed to enqueue {task_type}: {e}") from e

        logger.debug(f"Enqueued [{task_type}] {task.id} on {queue}")
        return task


    def __read_task(self, conn, task_id: str) -> Task | None:
        task_dict = conn.hgetall(self.__key("task", task_id))
        if not task_dict:
            return None
        return Task(
            id=task_id,
            type=task_dict["type"],
            payload=task_dict.get("payload", "").encode("utf-8"),
            queue=task_dict["queue"],
            max_retry=int(task_dict["max_retry"]),
            retried=int(task_dict.get("retried", 0)),
            timeout=int(task_dict.get("timeout", DEFAULT_TASK_TIMEOUT)),
            error=task_dict.get("error"),
        )

    def get_task(self, task_id: str) -> Task | None:
        with persistence("get task"):
            return self.__read_task(self.__db, task_id)

    def dequeue(self, queues: List[str] | None = None) -> Task | None:
        """Move the next task of the first non-empty queue to its active list."""
        if queues is None:
            queues = weighted_queue_order(QUEUE_WEIGHTS)

        with persistence("dequeue"):
            for queue in queues:
                task = self.__claim(queue)
                if task is not None:
                    return task
        return None

    def __claim(self, queue: str) -> Task | None:
        queue_key = self.__key("queue", queue)

        # The move to the active list and the lease are written together, so
        # a claimed task is always visible to recover_expired
        def claim(pipe) -> Task | None:
            task_id = pipe.lindex(queue_key, 0)
            if task_id is None:
                return None

            task = self.__read_task(pipe, task_id)
            pipe.multi()
            if task is None:
                logger.error(f"Task message missing: {task_id}")
                pipe.lpop(queue_key)
                return None

            pipe.lmove(queue_key, self.__key("active", queue), "LEFT", "RIGHT")
            pipe.zadd(
                self.__key("lease"),
                {task_id: time.time() + task.timeout + LEASE_GRACE},
            )
            return task

        return self.__db.transaction(claim, queue_key, value_from_callable=True)

    def __release(self, pipe, task: Task):
        pipe.lrem(self.__key("active", task.queue), 0, task.id)
        pipe.zrem(self.__key("lease"), task.id)

    def __write_retry(self, pipe, task: Task, delay: float, error: str):
        self.__release(pipe, task)
        pipe.hset(
            self.__key("task", task.id),
            mapping={"retried": task.retried + 1, "error": error},
        )
        pipe.zadd(self.__key("scheduled"), {task.id: time.time() + delay})

    def __write_archive(self, pipe, task: Task, error: str):
        self.__release(pipe, task)
        pipe.hset(self.__key("task", task.id), "error", error)
        pipe.zadd(self.__key("dead"), {task.id: time.time()})

    def ack(self, task: Task):
        with persistence("ack task"):
            pipe = self.__db.pipeline()
            self.__release(pipe, task)
            pipe.delete(self.__key("task", task.id))
            pipe.execute()

    def retry(self, task: Task, delay: float, error: str):
        with persistence("retry task"):
            pipe = self.__db.pipeline()
            self.__write_retry(pipe, task, delay, error)
            pipe.execute()

        task.retried += 1
        task.error = error
        logger.info(
            f"Task {task.id} retry {task.retried}/{task.max_retry} in {delay:.0f}s"
        )

    def archive(self, task: Task, error: str):
        with persistence("archive task"):
            pipe = self.__db.pipeline()
            self.__write_archive(pipe, task, error)
            pipe.execute()

        task.error = error
        logger.warning(f"Task {task.id} [{task.type}] dead-lettered: {error}")

    def forward_scheduled(self, now: float | None = None) -> int:
        """Move retries that are due back onto their queue."""
        now = time.time() if now is None else now
        forwarded = 0
        with persistence("forward scheduled tasks"):
            for task_id in self.__db.zrangebyscore(self.__key("scheduled"), "-inf", now):
                if self.__forward(task_id, now):
                    forwarded += 1
        return forwarded

    def __forward(self, task_id: str, now: float) -> bool:
        scheduled_key = self.__key("scheduled")
        queue = self.__db.hget(self.__key("task", task_id), "queue")

        # Whoever removes the entry owns the forward, and removal and push
        # happen in one transaction
        def forward(pipe) -> bool:
            due = pipe.zscore(scheduled_key, task_id)
            if due is None or due > now:
                return False
            pipe.multi()
            pipe.zrem(scheduled_key, task_id)
            if queue is None:
                logger.error(f"Task message missing: {task_id}")
                return False
            pipe.rpush(self.__key("queue", queue), task_id)
            return True

        return self.__db.transaction(forward, scheduled_key, value_from_callable=True)

    def recover_expired(
        self,
        retry_delay_func: Callable[..., float],
        on_expired: Callable[[Task], None] | None = None,
        now: float | None = None,
    ) -> int:
        """
        Treat tasks whose lease ran out (crashed or stuck worker) as failed.

        `on_expired` gets each recovered task as it was delivered, after it
        has been rescheduled or dead-lettered.
        """
        now = time.time() if now is None else now
        lease_key = self.__key("lease")
        recovered = 0
        with persistence("recover expired tasks"):
            for task_id in self.__db.zrangebyscore(lease_key, "-inf", now):
                task = self.__read_task(self.__db, task_id)
                if task is None:
                    self.__db.zrem(lease_key, task_id)
                    continue
                if not self.__expire(task, retry_delay_func, now):
                    continue

                recovered += 1
                if on_expired is not None:
                    on_expired(task)
        return recovered

    def __expire(
        self, task: Task, retry_delay_func: Callable[..., float], now: float
    ) -> bool:
        lease_key = self.__key("lease")
        error = "lease expired"

        def expire(pipe) -> bool:
            deadline = pipe.zscore(lease_key, task.id)
            if deadline is None or deadline > now:
                return False
            pipe.multi()
            if task.retried >= task.max_retry:
                self.__write_archive(pipe, task, error)
            else:
                delay = retry_delay_func(task.retried, None, task)
                self.__write_retry(pipe, task, delay, error)
            return True

        expired = self.__db.transaction(expire, lease_key, value_from_callable=True)
        if expired:
            logger.warning(f"Task {task.id} [{task.type}] lease expired")
        return expired

    def dead_letters(self) -> List[Task]:
        with persistence("list dead letters"):
            task_ids = self.__db.zrange(self.__key("dead"), 0, -1)
            tasks = [self.__read_task(self.__db, task_id) for task_id in task_ids]
        return [task for task in tasks if task is not None]

    def queue_size(self, queue: str) -> int:
        with persistence("get queue size"):
            return self.__db.llen(self.__key("queue", queue))

    def scheduled_count(self) -> int:
        with persistence("count scheduled tasks"):
            return self.__db.zcard(self.__key("scheduled"))
