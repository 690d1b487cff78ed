from typing import Annotated, List, Literal, Union

from pydantic import BaseModel, EmailStr, Field, HttpUrl

from .defines import ImageFormat, JobStatus, WatermarkPosition


class CompressParams(BaseModel):
    quality: int = Field(85, ge=1, le=100)
    format: ImageFormat = "jpeg"
    max_width: int = Field(0, ge=0)
    max_height: int = Field(0, ge=0)


class WatermarkParams(BaseModel):
    text: str = Field(min_length=1)
    position: WatermarkPosition = "bottom-right"
    opacity: float = Field(0.5, ge=0, le=1)
    font_size: float = Field(24, gt=0)
    color: str = Field("#FFFFFF", pattern=r"^#?[0-9a-fA-F]{6}$")


class CompressOperation(BaseModel):
    type: Literal["compress"]
    params: CompressParams = Field(default_factory=CompressParams)


class WatermarkOperation(BaseModel):
    type: Literal["watermark"]
    params: WatermarkParams


OperationRequest = Annotated[
    Union[CompressOperation, WatermarkOperation], Field(discriminator="type")
]


class WebhookRequest(BaseModel):
    url: HttpUrl
    token: str | None = None


class ProcessImageRequest(BaseModel):
    email: EmailStr
    bucket_name: str = Field(min_length=1)
    image_key: str = Field(min_length=1)
    operations: List[OperationRequest] = Field(min_length=1)
    webhook: WebhookRequest | None = None


class ProcessImageResponse(BaseModel):
    image_id: int
    user_id: int
    bucket_name: str
    image_key: str
    status: str = "processing"


class ImageStatusResponse(BaseModel):
    image_id: int
    user_id: int
    bucket_name: str
    image_key: str
    status: JobStatus
    operations: List[dict]
    created_at: str
    updated_at: str


class ErrorResponse(BaseModel):
    error: str
