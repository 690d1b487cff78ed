import os
import platform
from dataclasses import dataclass
from typing import Literal
from dotenv import load_dotenv

load_dotenv()

JobStatus = Literal["pending", "processing", "completed", "failed"]

QueueName = Literal["critical", "default", "low"]

OperationType = Literal["compress", "watermark"]

ImageFormat = Literal["jpeg", "png", "webp"]

WatermarkPosition = Literal[
    "top-left", "top-right", "bottom-left", "bottom-right", "center"
]

# Task types
TYPE_IMAGE_PROCESS = "process:image"
TYPE_HEALTH_CHECK = "system:health_check"

# Weighted fair scheduling across queue classes
QUEUE_WEIGHTS: dict[str, int] = {
    "critical": 6,
    "default": 3,
    "low": 1,
}

IMAGE_TASK_QUEUE: QueueName = "critical"
IMAGE_TASK_MAX_RETRY = 3
IMAGE_TASK_TIMEOUT = 10 * 60  # 10 minutes

HEALTH_TASK_QUEUE: QueueName = "default"
HEALTH_TASK_MAX_RETRY = 3

DEFAULT_TASK_TIMEOUT = 30 * 60


def _env_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    if value is None or value.strip() == "":
        return default
    return int(value)


@dataclass
class Settings:
    REDIS_URL = os.environ.get("REDIS_URL", None)
    REDIS_HOST = os.environ.get("REDIS_HOST", "localhost")
    REDIS_PORT = _env_int("REDIS_PORT", 6379)
    REDIS_PREFIX = os.environ.get("REDIS_PREFIX", "imagepp")
    WORKER_NAME = os.environ.get("WORKER_NAME", platform.node())
    WORKER_VERSION = os.environ.get("VERSION", "unknown")
    WORKER_CONCURRENCY = _env_int("WORKER_CONCURRENCY", 10)
    SHUTDOWN_TIMEOUT = _env_int("SHUTDOWN_TIMEOUT", 30)
    POLL_INTERVAL = float(os.environ.get("POLL_INTERVAL", 1))
    STALE_PENDING_SECONDS = _env_int("STALE_PENDING_SECONDS", 15 * 60)
    APP_PORT = _env_int("APP_PORT", 8080)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    R2_ENDPOINT_URL = os.environ.get("R2_ENDPOINT_URL", None)
    R2_REGION = os.environ.get("R2_REGION", "auto")
    AWS_ACCESS_KEY_ID = os.environ.get("AWS_ACCESS_KEY_ID", None)
    AWS_SECRET_ACCESS_KEY = os.environ.get("AWS_SECRET_ACCESS_KEY", None)
    WATERMARK_FONT_PATH = os.environ.get("WATERMARK_FONT_PATH", None)
    ELASTIC_HOST = os.environ.get("ELASTIC_HOST", None)
    ELASTIC_AUTH_HEADER = os.environ.get("ELASTIC_AUTH_HEADER", None)
    ELASTIC_CLOUD_ID = os.environ.get("ELASTIC_CLOUD_ID", None)
    ELASTIC_API_KEY = os.environ.get("ELASTIC_API_KEY", None)
    DEV = os.environ.get("DEV", "false").lower() == "true"


@dataclass
class Webhook:
    url: str
    token: str | None = None
