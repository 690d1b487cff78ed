from __future__ import annotations

import threading
import time
from concurrent.futures import Future

import pytest
from loguru import logger

from imagepp import worker as worker_module
from imagepp.broker import RedisBroker
from imagepp.db import RedisDatabase
from imagepp.defines import TYPE_HEALTH_CHECK, TYPE_IMAGE_PROCESS
from imagepp.dispatcher import Dispatcher
from imagepp.errors import PersistenceError, TransferError
from imagepp.job import Compress, ImageJob, UnknownOperation, Watermark, enqueue_image_job
from imagepp.killer import GracefulKiller
from imagepp.submit import OrphanSweeper, SubmissionService, parse_request
from imagepp.utils import retry_delay
from imagepp.worker import ImageProcessHandler, attempt_token, handle_health_check
from tests._helpers import MemoryStorage, make_image_bytes, open_image


def _dispatcher(broker: RedisBroker, db: RedisDatabase, storage: MemoryStorage, **kwargs) -> Dispatcher:
    return Dispatcher(
        broker,
        handlers={
            TYPE_IMAGE_PROCESS: ImageProcessHandler(db, lambda bucket: storage),
            TYPE_HEALTH_CHECK: handle_health_check,
        },
        retry_delay_func=lambda n, e, t: 0,
        **kwargs,
    )


def _submit(db: RedisDatabase, broker: RedisBroker, operations: list[dict], **extra) -> int:
    request = parse_request(
        {
            "email": "a@x.com",
            "bucket_name": "b",
            "image_key": "k.jpg",
            "operations": operations,
            **extra,
        }
    )
    return SubmissionService(db, broker).submit(request).image.id


def _create_and_enqueue(db: RedisDatabase, broker: RedisBroker, operations: list) -> int:
    image = db.create_image(1, "b", "k.jpg", [])
    job = ImageJob(
        image_id=image.id,
        user_id=1,
        bucket_name="b",
        image_key="k.jpg",
        operations=operations,
    )
    enqueue_image_job(broker, job)
    return image.id


def test_watermark_job_completes(db, broker, storage) -> None:
    image_id = _submit(
        db,
        broker,
        [
            {
                "type": "watermark",
                "params": {"text": "Test", "position": "center", "opacity": 0.5},
            }
        ],
    )
    assert db.get_image(image_id).status == "pending"

    dispatcher = _dispatcher(broker, db, storage)
    assert dispatcher.process_one() is True

    assert db.get_image(image_id).status == "completed"
    assert storage.uploads == [f"processed/{image_id}.jpg"]
    output = open_image(storage.objects[f"processed/{image_id}.jpg"])
    assert output.format == "JPEG"
    assert output.size == (200, 200)


def test_processing_is_written_before_download(db, broker) -> None:
    seen = []

    class RecordingStorage(MemoryStorage):
        def download(self, key: str) -> bytes:
            seen.append(db.get_image(image_id).status)
            return super().download(key)

    storage = RecordingStorage({"k.jpg": make_image_bytes("JPEG")})
    image_id = _submit(db, broker, [{"type": "compress", "params": {"format": "png"}}])
    _dispatcher(broker, db, storage).process_one()

    assert seen == ["processing"]
    assert storage.uploads == [f"processed/{image_id}.png"]


def test_download_fails_twice_then_succeeds(db, broker) -> None:
    storage = MemoryStorage({"k.jpg": make_image_bytes("JPEG")}, fail_downloads=2)
    image_id = _submit(db, broker, [{"type": "compress", "params": {"quality": 60}}])
    dispatcher = _dispatcher(broker, db, storage)

    dispatcher.process_one()
    # eagerly marked failed on the first failing attempt
    assert db.get_image(image_id).status == "failed"

    for _ in range(2):
        assert broker.forward_scheduled() == 1
        dispatcher.process_one()

    assert storage.download_calls == 3
    assert db.get_image(image_id).status == "completed"
    assert broker.dead_letters() == []
    assert broker.scheduled_count() == 0


def test_retries_exhausted_dead_letters(db, broker) -> None:
    storage = MemoryStorage({"k.jpg": make_image_bytes("JPEG")}, fail_downloads=100)
    image_id = _submit(db, broker, [{"type": "compress", "params": {}}])
    dispatcher = _dispatcher(broker, db, storage)

    dispatcher.process_one()
    while broker.forward_scheduled():
        dispatcher.process_one()

    # first attempt plus max_retry=3 retries
    assert storage.download_calls == 4
    (dead,) = broker.dead_letters()
    assert dead.retried == 3
    assert db.get_image(image_id).status == "failed"


def test_unknown_operation_type_still_completes(db, broker, storage) -> None:
    image_id = _create_and_enqueue(
        db,
        broker,
        [
            UnknownOperation(type="sepia", raw_params={"strength": 1}),
            Watermark(text="Test", position="top-left", opacity=0.7),
        ],
    )
    _dispatcher(broker, db, storage).process_one()
    assert db.get_image(image_id).status == "completed"


def test_unknown_position_and_format_fall_back(db, broker, storage) -> None:
    image_id = _create_and_enqueue(
        db,
        broker,
        [
            Watermark(text="Test", position="somewhere"),
            Compress(quality=50, format="gif"),
        ],
    )
    _dispatcher(broker, db, storage).process_one()

    assert db.get_image(image_id).status == "completed"
    assert open_image(storage.objects[f"processed/{image_id}.jpg"]).format == "JPEG"


def test_decode_error_marks_failed_and_retries(db, broker) -> None:
    storage = MemoryStorage({"k.jpg": b"not an image"})
    image_id = _submit(db, broker, [{"type": "compress", "params": {}}])
    _dispatcher(broker, db, storage).process_one()

    assert db.get_image(image_id).status == "failed"
    assert broker.scheduled_count() == 1
    assert storage.uploads == []


def test_malformed_payload_is_dead_lettered_without_retry(db, broker, storage) -> None:
    broker.enqueue(TYPE_IMAGE_PROCESS, b"{oops", queue="critical", max_retry=3)
    broker.enqueue(
        TYPE_IMAGE_PROCESS,
        b'{"image_id": 0, "bucket_name": "b", "image_key": "k"}',
        queue="critical",
        max_retry=3,
    )
    dispatcher = _dispatcher(broker, db, storage)
    dispatcher.process_one()
    dispatcher.process_one()

    assert len(broker.dead_letters()) == 2
    assert broker.scheduled_count() == 0
    assert storage.download_calls == 0


def test_duplicate_delivery_of_completed_job_is_skipped(db, broker, storage) -> None:
    image_id = _submit(db, broker, [{"type": "compress", "params": {}}])
    dispatcher = _dispatcher(broker, db, storage)
    dispatcher.process_one()
    assert db.get_image(image_id).status == "completed"

    # redelivery of the same envelope, e.g. after a crash before ack
    job = ImageJob(image_id=image_id, user_id=1, bucket_name="b", image_key="k.jpg")
    enqueue_image_job(broker, job)
    assert dispatcher.process_one() is True

    assert storage.download_calls == 1
    assert db.get_image(image_id).status == "completed"
    assert broker.dead_letters() == []
    assert broker.scheduled_count() == 0


def test_webhook_is_notified_on_completion(db, broker, storage, monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []
    monkeypatch.setattr(
        worker_module.requests, "post", lambda url, **kwargs: calls.append((url, kwargs))
    )
    image_id = _submit(
        db,
        broker,
        [{"type": "compress", "params": {}}],
        webhook={"url": "https://example.com/hook", "token": "secret"},
    )
    _dispatcher(broker, db, storage).process_one()

    ((url, kwargs),) = calls
    assert url == "https://example.com/hook"
    assert kwargs["headers"] == {"authorization": "Bearer secret"}
    assert kwargs["json"]["image_id"] == image_id
    assert kwargs["json"]["status"] == "completed"


def test_task_timeout_is_a_retryable_failure(broker: RedisBroker) -> None:
    release = threading.Event()

    def slow(task):
        release.wait(5)

    dispatcher = Dispatcher(
        broker, handlers={"slow": slow}, retry_delay_func=lambda n, e, t: 0
    )
    broker.enqueue("slow", queue="default", max_retry=1, timeout=1)
    try:
        dispatcher.process_one()
    finally:
        release.set()

    assert broker.scheduled_count() == 1
    broker.forward_scheduled()
    task = broker.dequeue(["default"])
    assert "exceeded" in task.error


def test_unknown_task_type_is_dead_lettered(broker: RedisBroker) -> None:
    broker.enqueue("nobody:handles", queue="low")
    Dispatcher(broker, handlers={}).process_one()
    assert len(broker.dead_letters()) == 1


def test_default_backoff_is_exponential() -> None:
    assert [retry_delay(n) for n in range(4)] == [1, 2, 4, 8]


def test_run_drains_and_stops(db, broker, storage) -> None:
    done = threading.Event()

    def health(task):
        handle_health_check(task)
        done.set()

    dispatcher = Dispatcher(broker, handlers={TYPE_HEALTH_CHECK: health}, poll_interval=0.01)
    killer = GracefulKiller(install=False)
    result = {}
    thread = threading.Thread(target=lambda: result.update(clean=dispatcher.run(killer)))
    thread.start()

    broker.enqueue(TYPE_HEALTH_CHECK, queue="default")
    assert done.wait(5)
    killer.exit()
    thread.join(5)

    assert not thread.is_alive()
    assert result["clean"] is True


def test_orphan_sweeper_requeues_stale_pending(db, broker, storage) -> None:
    # a job row whose enqueue never happened
    image = db.create_image(1, "b", "k.jpg", [{"type": "compress", "params": {"format": "png"}}])
    sweeper = OrphanSweeper(db, broker, older_than=0)

    assert sweeper.sweep() == 1
    assert broker.queue_size("critical") == 1

    _dispatcher(broker, db, storage).process_one()
    assert db.get_image(image.id).status == "completed"
    assert storage.uploads == [f"processed/{image.id}.png"]
    assert sweeper.sweep() == 0


def _enqueue_raw(broker: RedisBroker, image_id: int, **options):
    job = ImageJob(image_id=image_id, user_id=1, bucket_name="b", image_key="k.jpg")
    return broker.enqueue(TYPE_IMAGE_PROCESS, job.to_payload(), queue="critical", **options)


def test_timed_out_last_attempt_leaves_job_failed(db, broker) -> None:
    release = threading.Event()

    class HangingStorage(MemoryStorage):
        def download(self, key: str) -> bytes:
            release.wait(5)
            raise TransferError(f"failed to download {key}: read timeout")

    image = db.create_image(1, "b", "k.jpg", [])
    _enqueue_raw(broker, image.id, max_retry=0, timeout=1)
    try:
        _dispatcher(broker, db, HangingStorage()).process_one()
        assert len(broker.dead_letters()) == 1
        assert db.get_image(image.id).status == "failed"
    finally:
        release.set()


def test_expired_lease_marks_job_failed_and_retry_completes(db, broker, storage) -> None:
    image_id = _submit(db, broker, [{"type": "compress", "params": {}}])
    dispatcher = _dispatcher(broker, db, storage)

    # a worker claims the job and dies without reporting back
    task = broker.dequeue(["critical"])
    db.update_image_status(image_id, "processing", attempt=attempt_token(task))

    later = time.time() + 3600
    assert broker.recover_expired(
        lambda n, e, t: 0, on_expired=dispatcher.fail_attempt, now=later
    ) == 1
    assert db.get_image(image_id).status == "failed"

    assert broker.forward_scheduled(now=later) == 1
    dispatcher.process_one()
    assert db.get_image(image_id).status == "completed"


def test_stale_attempt_cannot_fail_a_newer_attempt(db, broker) -> None:
    image_id = _submit(db, broker, [{"type": "compress", "params": {}}])
    # an earlier delivery that timed out but is still running somewhere
    db.update_image_status(image_id, "processing", attempt="earlier:0")
    handler = ImageProcessHandler(db, lambda bucket: storage)

    class StaleFailureStorage(MemoryStorage):
        def download(self, key: str) -> bytes:
            # the earlier attempt gives up while this one is running
            handler.mark_failed(image_id, "earlier:0")
            return super().download(key)

    storage = StaleFailureStorage({"k.jpg": make_image_bytes("JPEG")})
    Dispatcher(
        broker,
        handlers={TYPE_IMAGE_PROCESS: handler},
        retry_delay_func=lambda n, e, t: 0,
    ).process_one()

    assert storage.uploads == [f"processed/{image_id}.jpg"]
    assert db.get_image(image_id).status == "completed"


def test_failed_status_write_error_keeps_original_error(broker, redis_client) -> None:
    class FlakyDatabase(RedisDatabase):
        def update_image_status(self, image_id, status, *args, **kwargs):
            if status == "failed":
                raise PersistenceError("failed to update image status: connection reset")
            return super().update_image_status(image_id, status, *args, **kwargs)

    db = FlakyDatabase(redis_client, prefix="test")
    storage = MemoryStorage({"k.jpg": make_image_bytes("JPEG")}, fail_downloads=1)
    image_id = _submit(db, broker, [{"type": "compress", "params": {}}])

    _dispatcher(broker, db, storage).process_one()

    assert db.get_image(image_id).status == "processing"
    assert broker.forward_scheduled() == 1
    task = broker.dequeue(["critical"])
    assert task.retried == 1
    assert "failed to download k.jpg" in task.error


def test_crashed_execution_is_logged(broker) -> None:
    messages = []
    sink = logger.add(lambda message: messages.append(str(message)), level="ERROR")
    try:
        future = Future()
        future.set_exception(PersistenceError("failed to ack task: connection reset"))
        Dispatcher(broker, handlers={}).report(future)
    finally:
        logger.remove(sink)

    assert any("failed to ack task" in message for message in messages)
