import os
import sys

from loguru import logger

from .broker import RedisBroker
from .db import RedisDatabase
from .defines import TYPE_HEALTH_CHECK, TYPE_IMAGE_PROCESS, Settings
from .dispatcher import Dispatcher
from .elastic import make_elastic_client
from .errors import EnqueueError
from .killer import GracefulKiller
from .r2 import R2StorageFactory
from .submit import OrphanSweeper
from .utils import redis_client, setup_logger
from .worker import ImageProcessHandler, handle_health_check


def build_dispatcher(client=None, storage_factory=None) -> Dispatcher:
    client = client if client is not None else redis_client()
    db = RedisDatabase(client, elastic=make_elastic_client())
    broker = RedisBroker(client)

    housekeepers = []
    if Settings.STALE_PENDING_SECONDS > 0:
        housekeepers.append(
            OrphanSweeper(db, broker, older_than=Settings.STALE_PENDING_SECONDS)
        )

    return Dispatcher(
        broker,
        handlers={
            TYPE_IMAGE_PROCESS: ImageProcessHandler(
                db,
                storage_factory if storage_factory is not None else R2StorageFactory(),
            ),
            TYPE_HEALTH_CHECK: handle_health_check,
        },
        housekeepers=housekeepers,
    )


def main():
    setup_logger()
    killer = GracefulKiller()

    dispatcher = build_dispatcher()
    try:
        dispatcher.broker.ping()
    except EnqueueError as e:
        logger.error(f"Redis is not reachable: {e}")
        sys.exit(1)

    logger.info(f"Worker starting: {Settings.WORKER_NAME} v:{Settings.WORKER_VERSION}")
    is_clean = dispatcher.run(killer)

    if not is_clean:
        # Abandoned tasks keep their threads alive, do not wait on them
        logger.error("Forcing exit")
        os._exit(1)

    logger.info("Exiting...")


if __name__ == "__main__":
    main()
