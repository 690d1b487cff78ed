import traceback
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from time import perf_counter, sleep
from typing import Callable, Dict, List

from loguru import logger

from .broker import RedisBroker, Task, weighted_queue_order
from .defines import QUEUE_WEIGHTS, Settings
from .errors import NonRetryableError, TaskTimeoutError
from .utils import retry_delay

Handler = Callable[[Task], None]


class Dispatcher(object):
    """
    Pulls tasks from the broker and runs them on a fixed-size thread pool.

    Failed tasks are retried with `retry_delay_func(retried, error, task)`
    until `max_retry` is used up, then dead-lettered.
    """

    def __init__(
        self,
        broker: RedisBroker,
        handlers: Dict[str, Handler],
        concurrency: int = Settings.WORKER_CONCURRENCY,
        queues: Dict[str, int] = QUEUE_WEIGHTS,
        retry_delay_func: Callable[..., float] = retry_delay,
        shutdown_timeout: float = Settings.SHUTDOWN_TIMEOUT,
        poll_interval: float = Settings.POLL_INTERVAL,
        housekeepers: List[Callable[[], None]] | None = None,
    ):
        self.broker = broker
        self.handlers = handlers
        self.concurrency = concurrency
        self.queues = queues
        self.retry_delay_func = retry_delay_func
        self.shutdown_timeout = shutdown_timeout
        self.poll_interval = poll_interval
        self.housekeepers = housekeepers or []
        self.__last_housekeeping = 0.0

    def call_with_timeout(self, handler: Handler, task: Task):
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="task")
        future = executor.submit(handler, task)
        try:
            return future.result(timeout=task.timeout)
        except FutureTimeoutError:
            raise TaskTimeoutError(f"task {task.id} exceeded {task.timeout}s")
        finally:
            executor.shutdown(wait=False)

    def execute(self, task: Task) -> bool:
        handler = self.handlers.get(task.type)
        if handler is None:
            self.broker.archive(task, f"no handler for task type {task.type}")
            return False

        logger.info(f"Task started [{task.type}] {task.id}")
        time_start = perf_counter()
        try:
            self.call_with_timeout(handler, task)
        except NonRetryableError as e:
            logger.error(f"Task failed [{task.type}] {task.id}: {e}")
            self.broker.archive(task, str(e))
            return False
        except Exception as e:
            logger.error(
                f"Task failed [{task.type}] {task.id} "
                f"in {perf_counter() - time_start:.3f}s: {e}"
            )
            logger.debug(traceback.format_exc())
            if isinstance(e, TaskTimeoutError):
                # The handler thread is abandoned and never reports back
                self.fail_attempt(task)
            if task.retried >= task.max_retry:
                self.broker.archive(task, str(e))
            else:
                delay = self.retry_delay_func(task.retried, e, task)
                self.broker.retry(task, delay, str(e))
            return False

        self.broker.ack(task)
        logger.info(
            f"Task completed [{task.type}] {task.id} "
            f"in {perf_counter() - time_start:.3f}s"
        )
        return True

    def fail_attempt(self, task: Task):
        """Let the handler record an attempt that ended without it returning."""
        on_failure = getattr(self.handlers.get(task.type), "on_failure", None)
        if on_failure is None:
            return
        try:
            on_failure(task)
        except Exception:
            logger.error(f"Failure hook crashed [{task.type}] {task.id}")
            logger.error(traceback.format_exc())

    def report(self, future: Future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Task execution crashed: {error}")
            logger.error("".join(traceback.format_exception(error)))

    def housekeeping(self, force: bool = False):
        if not force and perf_counter() - self.__last_housekeeping < self.poll_interval:
            return
        self.__last_housekeeping = perf_counter()

        forwarded = self.broker.forward_scheduled()
        if forwarded:
            logger.debug(f"Forwarded {forwarded} scheduled tasks")
        recovered = self.broker.recover_expired(
            self.retry_delay_func, on_expired=self.fail_attempt
        )
        if recovered:
            logger.warning(f"Recovered {recovered} tasks with expired leases")
        for housekeeper in self.housekeepers:
            housekeeper()

    def process_one(self) -> bool:
        """Dequeue one task and run it in the calling thread."""
        task = self.broker.dequeue(weighted_queue_order(self.queues))
        if task is None:
            return False
        self.execute(task)
        return True

    def run(self, killer) -> bool:
        """
        Run until `killer.is_exit`, then give in-flight tasks
        `shutdown_timeout` seconds. Returns False if some had to be abandoned.
        """
        pool = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="imagepp-worker"
        )
        inflight = set()
        logger.info(f"<< Standby >> concurrency={self.concurrency}")

        while not killer.is_exit:
            inflight = {future for future in inflight if not future.done()}

            try:
                self.housekeeping()
            except Exception:
                logger.error(traceback.format_exc())

            if len(inflight) >= self.concurrency:
                wait(inflight, timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                continue

            try:
                task = self.broker.dequeue(weighted_queue_order(self.queues))
            except Exception as e:
                logger.error(f"Failed to dequeue: {e}")
                sleep(self.poll_interval)
                continue

            if task is None:
                sleep(self.poll_interval)
                continue

            future = pool.submit(self.execute, task)
            future.add_done_callback(self.report)
            inflight.add(future)

        logger.info("Shutting down worker...")
        _, not_done = wait(inflight, timeout=self.shutdown_timeout)
        pool.shutdown(wait=False, cancel_futures=True)

        if not_done:
            logger.error(
                f"Shutdown timed out, abandoning {len(not_done)} in-flight tasks"
            )
            return False

        logger.info("Worker stopped cleanly")
        return True
