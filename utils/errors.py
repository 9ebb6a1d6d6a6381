"""
Pipeline Exceptions

Error taxonomy shared by the queue port, the storage port, the transform stage
and the compactor worker. Everything derives from PipelineError so the worker
loop can contain per-job failures with a single except clause.
"""


class PipelineError(Exception):
    """Base exception for all pipeline errors."""
    pass


class ConfigurationError(PipelineError):
    """Raised when a backend configuration is invalid or unsupported."""
    pass


# Queue port


class QueueError(PipelineError):
    """Base exception for queue backend failures."""
    pass


class BackendConnectionError(QueueError):
    """Raised when a queue or storage backend cannot be reached."""
    pass


class PublishTimeout(QueueError):
    """Raised when a publish is not confirmed within the send timeout."""
    pass


class MessageDecodeError(QueueError):
    """Raised when a message body is not a valid job."""
    pass


# Storage port


class StorageError(PipelineError):
    """Base exception for storage backend failures."""
    pass


class DownloadError(StorageError):
    """Raised when a source object cannot be staged locally."""
    pass


class CreateError(DownloadError):
    """Raised when the local destination file cannot be opened."""
    pass


class FetchError(DownloadError):
    """Raised when the source object cannot be fetched."""
    pass


class UploadError(StorageError):
    """Raised when an object cannot be written to the destination bucket."""
    pass


class DeleteError(StorageError):
    """Raised when an object cannot be deleted from the source bucket."""
    pass


class ConfirmationTimeout(StorageError):
    """Raised when a deleted object is still reported as present."""
    pass


# Worker stages


class TransformError(PipelineError):
    """Raised when the compression stage fails."""
    pass


class CleanupError(PipelineError):
    """Raised when the local scratch file cannot be removed."""
    pass
