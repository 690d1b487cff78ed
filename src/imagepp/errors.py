class ImageppError(Exception):
    """Base class for every error raised by imagepp."""


class NonRetryableError(ImageppError):
    """The broker dead-letters the task instead of scheduling a retry."""


class ValidationError(ImageppError):
    pass


class PersistenceError(ImageppError):
    pass


class UniqueViolation(PersistenceError):
    pass


class NotFound(PersistenceError):
    pass


class StatusConflict(PersistenceError):
    def __init__(
        self,
        image_id: int,
        current: str | None,
        wanted: str,
        owner: str | None = None,
    ):
        self.image_id = image_id
        self.current = current
        self.wanted = wanted
        # set when the status matched but another attempt owns the job
        self.owner = owner
        message = f"image {image_id}: cannot move from {current!r} to {wanted!r}"
        if owner is not None:
            message += f", owned by attempt {owner}"
        super().__init__(message)


class EnqueueError(ImageppError):
    pass


class TransferError(ImageppError):
    pass


class DecodeError(ImageppError):
    pass


class TransformError(ImageppError):
    pass


class TaskTimeoutError(ImageppError):
    pass


class TaskPayloadError(NonRetryableError):
    pass
