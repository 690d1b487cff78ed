import uuid
from datetime import datetime, timezone
from time import perf_counter
from typing import List

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from .broker import RedisBroker
from .db import RedisDatabase
from .defines import (
    HEALTH_TASK_MAX_RETRY,
    HEALTH_TASK_QUEUE,
    TYPE_HEALTH_CHECK,
    Settings,
)
from .errors import EnqueueError, PersistenceError
from .schemas import (
    ErrorResponse,
    ImageStatusResponse,
    ProcessImageRequest,
    ProcessImageResponse,
)
from .submit import SubmissionService
from .utils import setup_logger


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(
    db: RedisDatabase | None = None, broker: RedisBroker | None = None
) -> FastAPI:
    db = db if db is not None else RedisDatabase()
    broker = broker if broker is not None else RedisBroker()
    service = SubmissionService(db, broker)

    app = FastAPI(title="imagepp")

    @app.middleware("http")
    async def request_logger(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        time_start = perf_counter()
        response = await call_next(request)
        logger.info(
            f"{request.method} {request.url.path} {response.status_code} "
            f"{(perf_counter() - time_start) * 1000:.1f}ms [{request_id}]"
        )
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_failed(request: Request, exc: RequestValidationError):
        logger.error(f"Validation failed: {exc.errors()}")
        return error_response(400, f"Validation failed: {exc.errors()}")

    @app.post(
        "/api/image",
        status_code=202,
        response_model=ProcessImageResponse,
        responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    )
    def process_image(request: ProcessImageRequest):
        try:
            result = service.submit(request)
        except PersistenceError as e:
            logger.error(f"Failed to create image record: {e}")
            return error_response(500, "Failed to create image record")
        except EnqueueError as e:
            logger.error(f"Failed to enqueue image job: {e}")
            return error_response(500, "Failed to queue job")

        return ProcessImageResponse(
            image_id=result.image.id,
            user_id=result.user.id,
            bucket_name=result.image.bucket_name,
            image_key=result.image.image_key,
        )

    @app.get(
        "/api/image/{image_id}",
        response_model=ImageStatusResponse,
        responses={404: {"model": ErrorResponse}},
    )
    def get_image_status(image_id: int):
        try:
            image = db.get_image(image_id)
        except PersistenceError as e:
            logger.error(f"Failed to get image {image_id}: {e}")
            return error_response(500, "Database error")
        if image is None:
            return error_response(404, "Image not found")
        return image.to_dict()

    @app.get("/api/user/{email}/images", response_model=List[ImageStatusResponse])
    def get_user_images(email: str):
        try:
            user = db.get_user_by_email(email)
            if user is None:
                return error_response(404, "User not found")
            images = db.list_user_images(user.id)
        except PersistenceError as e:
            logger.error(f"Failed to list images of {email}: {e}")
            return error_response(500, "Database error")
        return [image.to_dict() for image in images]

    @app.get("/health")
    def health():
        status = {"database": "up", "broker": "up", "worker": "enqueued"}
        overall = 200

        try:
            db.ping()
        except PersistenceError as e:
            logger.error(f"Database health check failed: {e}")
            status["database"] = "down"
            overall = 503

        try:
            broker.ping()
        except EnqueueError as e:
            logger.error(f"Broker health check failed: {e}")
            status["broker"] = "down"
            overall = 503

        # Liveness check of the worker path
        try:
            broker.enqueue(
                TYPE_HEALTH_CHECK,
                queue=HEALTH_TASK_QUEUE,
                max_retry=HEALTH_TASK_MAX_RETRY,
            )
            logger.info("Health check task enqueued")
        except EnqueueError as e:
            logger.error(f"Failed to enqueue health check task: {e}")
            status["worker"] = "failed"
            overall = 503

        return JSONResponse(
            status_code=overall,
            content={
                "status": status,
                "checked": datetime.now(timezone.utc).isoformat(),
            },
        )

    return app


def serve():
    setup_logger()
    uvicorn.run(create_app(), host="0.0.0.0", port=Settings.APP_PORT)
