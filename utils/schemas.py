"""
Pydantic Schemas - Data Validation Models

Defines the schemas shared across the compactor:
- Job: the queue wire message announcing a file in the source bucket
- Backend configurations for the queue and storage ports

Usage:
    from utils.schemas import Job

    job = Job.from_bytes(message.body)
    print(job.source_key, job.scratch_name)
"""

from typing import Annotated, Any, Literal, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from utils.errors import MessageDecodeError


class Job(BaseModel):
    """Queue message describing a file to fetch, compress and re-store.

    Wire format:
    {
        "filename": "a.txt",
        "path": "2024/01",
        "id": 42
    }

    Types are strict: "id" must be a JSON integer. Unknown keys are ignored.
    """

    model_config = ConfigDict(frozen=True, strict=True)

    filename: str = Field(..., min_length=1, description="Object file name")
    path: str = Field(..., description="Object prefix in the source bucket")
    id: int = Field(..., description="Upstream file ID")

    @field_validator("filename")
    @classmethod
    def validate_filename(cls, v: str) -> str:
        """Reject names that would escape the scratch directory."""
        if v.startswith("/"):
            raise ValueError("filename must be relative")
        if ".." in v.split("/"):
            raise ValueError("filename must not contain '..' segments")
        return v

    @property
    def source_key(self) -> str:
        """Object key in the source bucket, reused as the destination key."""
        return f"{self.path}/{self.filename}"

    @property
    def scratch_name(self) -> str:
        """Scratch file location relative to the scratch directory."""
        return f"{self.id}/{self.filename}"

    def to_bytes(self) -> bytes:
        """Encode job to its JSON wire representation."""
        return orjson.dumps(self.model_dump())

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Job":
        """Decode a job from a raw message body.

        Args:
            raw: Message body bytes

        Returns:
            Validated Job

        Raises:
            MessageDecodeError: If the body is not JSON or not a valid job
        """
        try:
            payload: Any = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise MessageDecodeError(f"invalid JSON body: {e}") from e

        if not isinstance(payload, dict):
            raise MessageDecodeError(f"expected JSON object, got {type(payload).__name__}")

        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise MessageDecodeError(f"invalid job: {e.errors()[0]['msg']}") from e


# Queue backends


class RabbitMQConfig(BaseModel):
    """AMQP broker connection settings."""

    kind: Literal["rabbitmq"] = "rabbitmq"
    url: str
    queue_name: str
    timeout: float = 30.0
    connect_retries: int = 3


class RedisQueueConfig(BaseModel):
    """Redis list-backed queue settings."""

    kind: Literal["redis"] = "redis"
    url: str
    queue_name: str
    timeout: float = 30.0
    connect_retries: int = 3
    max_connections: int = 10


QueueBackendConfig = Annotated[
    Union[RabbitMQConfig, RedisQueueConfig],
    Field(discriminator="kind"),
]


# Storage backends


class S3Config(BaseModel):
    """S3 session and bucket settings."""

    kind: Literal["s3"] = "s3"
    region: str
    access_key: str
    secret_key: str
    endpoint_url: Optional[str] = None
    bucket_download: str
    bucket_upload: str
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    delete_poll_delay: float = 5.0
    delete_max_attempts: int = 20


# Single member today; becomes a discriminated union like QueueBackendConfig
# once a second storage provider exists.
StorageBackendConfig = S3Config
