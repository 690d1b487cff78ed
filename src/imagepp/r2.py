from io import BytesIO

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from .defines import Settings
from .errors import TransferError

CONTENT_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}


def make_r2_client():
    return boto3.client(
        service_name="s3",
        endpoint_url=Settings.R2_ENDPOINT_URL,
        region_name=Settings.R2_REGION,
        aws_access_key_id=Settings.AWS_ACCESS_KEY_ID,
        aws_secret_access_key=Settings.AWS_SECRET_ACCESS_KEY,
    )


def content_type_for(key: str) -> str:
    ext = key.rsplit(".", 1)[-1].lower() if "." in key else ""
    return CONTENT_TYPES.get(ext, "application/octet-stream")


class R2Storage(object):
    """Object store bound to one bucket."""

    def __init__(self, bucket: str, client=None):
        self.bucket = bucket
        self.client = client if client is not None else make_r2_client()

    def download(self, key: str) -> bytes:
        logger.debug(f"Downloading from R2: {self.bucket}/{key}")
        bytes_io = BytesIO()
        try:
            self.client.download_fileobj(self.bucket, key, bytes_io)
        except (BotoCoreError, ClientError) as e:
            raise TransferError(f"failed to download {key}: {e}") from e
        return bytes_io.getvalue()

    def upload(self, key: str, data: bytes, content_type: str | None = None):
        bytes_io = BytesIO(data)
        logger.debug(
            f"Uploading resource to R2: {self.bucket}/{key} ({len(data) / 1024 / 1024:.2f}MB)"
        )
        try:
            self.client.upload_fileobj(
                bytes_io,
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type or content_type_for(key)},
            )
        except (BotoCoreError, ClientError, S3UploadFailedError) as e:
            raise TransferError(f"failed to upload {key}: {e}") from e


class R2StorageFactory(object):
    """Builds bucket-bound storages sharing one boto3 client."""

    def __init__(self, client=None):
        self.client = client if client is not None else make_r2_client()

    def __call__(self, bucket: str) -> R2Storage:
        return R2Storage(bucket, self.client)
