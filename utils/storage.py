"""
Storage port: object download, upload and removal.

A Bucket is bound to two fixed namespaces for its whole lifetime: every
download and remove targets the source bucket, every upload the destination
bucket. Providers implement the raw calls for one storage technology;
Bucket adds local file handling and delete confirmation on top.

Usage:
    bucket = new_bucket(settings.storage_config())
    await bucket.check()
    path = await bucket.download("2024/01/a.txt", Path("/tmp/compactor/42/a.txt"))
"""

import asyncio
import logging
from pathlib import Path
from typing import BinaryIO, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_attempt, wait_fixed

from utils.errors import (
    BackendConnectionError,
    ConfigurationError,
    ConfirmationTimeout,
    CreateError,
    DeleteError,
    FetchError,
    StorageError,
    UploadError,
)
from utils.schemas import S3Config, StorageBackendConfig

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


class StorageProvider(Protocol):
    """Blocking calls implemented by each storage backend."""

    def check(self) -> None:
        """Verify both buckets are reachable."""
        ...

    def download(self, key: str, fileobj: BinaryIO) -> None:
        """Stream a source-bucket object into fileobj."""
        ...

    def upload(self, stream: BinaryIO, key: str) -> None:
        """Stream fileobj into the destination bucket under key."""
        ...

    def delete(self, key: str) -> None:
        """Delete an object from the source bucket."""
        ...

    def exists(self, key: str) -> bool:
        """Check whether an object is present in the source bucket."""
        ...


class S3Provider:
    """S3 backend using boto3's managed transfers."""

    def __init__(self, config: S3Config) -> None:
        self.bucket_download = config.bucket_download
        self.bucket_upload = config.bucket_upload

        session = boto3.session.Session(
            region_name=config.region,
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
        )
        self.s3 = session.client(
            "s3",
            endpoint_url=config.endpoint_url,
            config=BotoConfig(
                connect_timeout=config.connect_timeout,
                read_timeout=config.read_timeout,
            ),
        )

    def check(self) -> None:
        for name in (self.bucket_download, self.bucket_upload):
            try:
                self.s3.head_bucket(Bucket=name)
            except (ClientError, BotoCoreError) as e:
                raise BackendConnectionError(f"bucket {name} is not reachable: {e}") from e

    def download(self, key: str, fileobj: BinaryIO) -> None:
        logger.debug("Downloading s3://%s/%s", self.bucket_download, key)
        try:
            self.s3.download_fileobj(self.bucket_download, key, fileobj)
        except (ClientError, BotoCoreError) as e:
            raise FetchError(f"error downloading s3://{self.bucket_download}/{key}: {e}") from e

    def upload(self, stream: BinaryIO, key: str) -> None:
        logger.debug("Uploading s3://%s/%s", self.bucket_upload, key)
        try:
            self.s3.upload_fileobj(stream, self.bucket_upload, key)
        except (ClientError, BotoCoreError) as e:
            raise UploadError(f"error uploading s3://{self.bucket_upload}/{key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.s3.delete_object(Bucket=self.bucket_download, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise DeleteError(f"error deleting s3://{self.bucket_download}/{key}: {e}") from e

    def exists(self, key: str) -> bool:
        try:
            self.s3.head_object(Bucket=self.bucket_download, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return False
            raise StorageError(f"error checking s3://{self.bucket_download}/{key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"error checking s3://{self.bucket_download}/{key}: {e}") from e


class Bucket:
    """Async facade over a storage provider."""

    def __init__(self, provider: StorageProvider, delete_poll_delay: float = 5.0, delete_max_attempts: int = 20) -> None:
        self.provider = provider
        self.delete_poll_delay = delete_poll_delay
        self.delete_max_attempts = delete_max_attempts

    async def check(self) -> None:
        """Verify the backend answers for both buckets.

        Raises:
            BackendConnectionError: If a bucket is unreachable
        """
        await asyncio.to_thread(self.provider.check)

    async def download(self, source_key: str, local_dest: Path) -> Path:
        """Stream a source-bucket object into a local file, overwriting it.

        Args:
            source_key: Object key in the source bucket
            local_dest: Local file path, parent directories are created

        Returns:
            Path of the written (closed) file

        Raises:
            CreateError: If the local file cannot be opened
            FetchError: If the object cannot be fetched
        """
        local_dest = Path(local_dest)
        try:
            local_dest.parent.mkdir(parents=True, exist_ok=True)
            handle = open(local_dest, "wb")
        except OSError as e:
            raise CreateError(f"failed to create destination file {local_dest}: {e}") from e

        with handle:
            await asyncio.to_thread(self.provider.download, source_key, handle)

        return local_dest

    async def upload(self, stream: BinaryIO, destination_key: str) -> None:
        """Stream bytes into the destination bucket.

        Raises:
            UploadError: If the upload fails
        """
        await asyncio.to_thread(self.provider.upload, stream, destination_key)

    async def remove(self, key: str) -> None:
        """Delete a source-bucket object and wait until it is reported gone.

        Polls the provider's existence check every delete_poll_delay seconds,
        at most delete_max_attempts times.

        Raises:
            DeleteError: If the delete call fails
            ConfirmationTimeout: If the object is still present after the last poll
        """
        await asyncio.to_thread(self.provider.delete, key)

        retrying = AsyncRetrying(
            retry=retry_if_result(bool),
            stop=stop_after_attempt(self.delete_max_attempts),
            wait=wait_fixed(self.delete_poll_delay),
        )
        try:
            await retrying(asyncio.to_thread, self.provider.exists, key)
        except RetryError as e:
            raise ConfirmationTimeout(
                f"object {key} still present after {self.delete_max_attempts} checks"
            ) from e

        logger.info("Removed source object", extra={"key": key})


def new_bucket(config: StorageBackendConfig) -> Bucket:
    """Build a Bucket for the configured storage backend.

    Raises:
        ConfigurationError: If the kind has no provider
    """
    if config.kind == "s3":
        provider = S3Provider(config)
    else:
        raise ConfigurationError(f"Storage type not implemented: {config.kind}")

    return Bucket(
        provider,
        delete_poll_delay=config.delete_poll_delay,
        delete_max_attempts=config.delete_max_attempts,
    )
