import signal
from loguru import logger


class GracefulKiller:
    """Flips `is_exit` on SIGINT/SIGTERM so the dispatch loop can drain."""

    def __init__(self, install: bool = True):
        self.is_exit = False
        if install:
            signal.signal(signal.SIGINT, self.__exit_gracefully)
            signal.signal(signal.SIGTERM, self.__exit_gracefully)

    def exit(self):
        self.is_exit = True

    def __exit_gracefully(self, signum, frame):
        logger.info(
            f"Received {signal.Signals(signum).name}, "
            "waiting for in-flight tasks to finish..."
        )
        self.exit()
