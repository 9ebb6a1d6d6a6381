"""
Compactor Worker - Queue-Driven File Recompression

Consumes job messages announcing files in the source bucket, downloads each
file to a scratch directory, recompresses it, uploads the result to the
destination bucket under the same key and deletes the scratch copy.

Features:
- RabbitMQ or Redis queue backend, S3 storage backend
- Single-slot handoff between message receipt and processing
- Per-job failure containment (logged, never fatal)
- Graceful shutdown handling

Usage:
    # Worker mode (default)
    python -m apps.compactor

    # Process one job and exit
    RUN_ONCE=true python -m apps.compactor
"""

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from utils.config import Settings, get_settings
from utils.errors import BackendConnectionError, CleanupError, DownloadError, PipelineError
from utils.logging import setup_logging
from utils.mq import Handoff, QueueConnection, new_queue
from utils.schemas import Job
from utils.storage import Bucket, new_bucket
from utils.transform import Transformer

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """Progress of a job through the pipeline."""

    RECEIVED = "received"
    DOWNLOADED = "downloaded"
    TRANSFORMED = "transformed"
    UPLOADED = "uploaded"
    CLEANED_UP = "cleaned_up"
    DONE = "done"
    FAILED = "failed"


@dataclass
class JobContext:
    """Working state of one job, owned by the worker loop until it terminates."""

    job: Job
    source_key: str
    scratch_path: Path
    content: bytes = b""
    stage: Stage = Stage.RECEIVED
    step: str = "download"

    def log_extra(self) -> dict:
        return {
            "job_id": self.job.id,
            "job_filename": self.job.filename,
            "source_key": self.source_key,
            "scratch_path": str(self.scratch_path),
            "stage": self.stage.value,
            "step": self.step,
        }


class CompactorWorker:
    """
    Worker processing compaction jobs one at a time.

    Handles:
    - Queue receive task and processing loop wiring
    - Download, transform, upload and cleanup of each job
    - Signal handling for graceful shutdown
    """

    def __init__(
        self,
        queue: QueueConnection,
        bucket: Bucket,
        transformer: Transformer,
        scratch_dir: Path,
        delete_source: bool = False,
        run_once: bool = False,
    ) -> None:
        """
        Initialize compactor worker.

        Args:
            queue: Queue backend delivering jobs
            bucket: Storage bound to the source and destination buckets
            transformer: Compression stage
            scratch_dir: Root directory for scratch files
            delete_source: Remove the source object after a successful upload
            run_once: If True, process one job and exit (for testing)
        """
        self.queue = queue
        self.bucket = bucket
        self.transformer = transformer
        self.scratch_dir = Path(scratch_dir)
        self.delete_source = delete_source
        self.run_once = run_once
        self.shutdown_event = asyncio.Event()
        self._processed_count = 0
        self._failed_count = 0

        logger.info(
            "CompactorWorker initialized",
            extra={
                "run_once": run_once,
                "scratch_dir": str(self.scratch_dir),
                "compression_mode": transformer.mode,
                "delete_source": delete_source,
            },
        )

    @classmethod
    def from_settings(cls, settings: Settings, run_once: bool = False) -> "CompactorWorker":
        """Build a worker and its backends from application settings."""
        if settings.COMPRESSION_MODE != "roundtrip":
            logger.warning(
                "Compression mode %s: destination objects will differ from source bytes",
                settings.COMPRESSION_MODE,
            )

        return cls(
            queue=new_queue(settings.queue_config()),
            bucket=new_bucket(settings.storage_config()),
            transformer=Transformer(settings.COMPRESSION_MODE, settings.COMPRESSION_LEVEL),
            scratch_dir=Path(settings.SCRATCH_DIR),
            delete_source=settings.DELETE_SOURCE_AFTER_UPLOAD,
            run_once=run_once,
        )

    @property
    def processed_count(self) -> int:
        return self._processed_count

    @property
    def failed_count(self) -> int:
        return self._failed_count

    def new_context(self, job: Job) -> JobContext:
        return JobContext(
            job=job,
            source_key=job.source_key,
            scratch_path=self.scratch_dir / job.scratch_name,
        )

    async def handle_job(self, job: Job) -> bool:
        """
        Run one job through every stage.

        Failures are logged with the job and the failing step, then the job
        is abandoned. Scratch files of failed jobs are left in place.

        Args:
            job: Decoded job message

        Returns:
            True if the job reached DONE
        """
        ctx = self.new_context(job)
        logger.info("Processing job", extra=ctx.log_extra())

        try:
            await self._run_stages(ctx)
        except PipelineError as e:
            self._fail(ctx, e)
            return False
        except Exception as e:
            self._fail(ctx, e, unexpected=True)
            return False

        self._processed_count += 1
        logger.info("Job complete", extra=ctx.log_extra())
        return True

    async def _run_stages(self, ctx: JobContext) -> None:
        ctx.step = "download"
        await self.bucket.download(ctx.source_key, ctx.scratch_path)

        ctx.step = "read"
        try:
            ctx.content = ctx.scratch_path.read_bytes()
        except OSError as e:
            raise DownloadError(f"failed to read scratch file {ctx.scratch_path}: {e}") from e
        ctx.stage = Stage.DOWNLOADED

        ctx.step = "transform"
        stream = self.transformer.transform(ctx.content)
        ctx.stage = Stage.TRANSFORMED

        ctx.step = "upload"
        with stream:
            await self.bucket.upload(stream, ctx.source_key)
        ctx.stage = Stage.UPLOADED

        ctx.step = "cleanup"
        self._remove_scratch(ctx.scratch_path)
        ctx.content = b""
        ctx.stage = Stage.CLEANED_UP

        if self.delete_source:
            ctx.step = "remove_source"
            await self.bucket.remove(ctx.source_key)

        ctx.stage = Stage.DONE

    def _remove_scratch(self, path: Path) -> None:
        """Delete a scratch file and any directories it leaves empty."""
        try:
            path.unlink()
            parent = path.parent
            while parent != self.scratch_dir and self.scratch_dir in parent.parents and not any(parent.iterdir()):
                parent.rmdir()
                parent = parent.parent
        except OSError as e:
            raise CleanupError(f"failed to remove scratch file {path}: {e}") from e

    def _fail(self, ctx: JobContext, error: Exception, unexpected: bool = False) -> None:
        self._failed_count += 1
        failed_at = ctx.step
        ctx.stage = Stage.FAILED
        extra = ctx.log_extra()
        extra.update({"step": failed_at, "error": str(error), "error_type": type(error).__name__})
        logger.error("Job failed at %s", failed_at, extra=extra, exc_info=unexpected)

    async def process_loop(self, handoff: Handoff[Job]) -> None:
        """Take jobs from the handoff and process them strictly one at a time."""
        while True:
            job = await handoff.get()
            await self.handle_job(job)

            if self.run_once:
                logger.info("RUN_ONCE mode: signaling shutdown after processing job")
                self.shutdown_event.set()
                return

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""

        def signal_handler(signum: int, frame: object) -> None:
            logger.info(f"Received signal {signum}, initiating graceful shutdown")
            self.shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def start(self) -> None:
        """
        Connect backends and process jobs until shutdown.

        Raises:
            BackendConnectionError: If a backend is unreachable at startup or
                the queue consumer stops unexpectedly
        """
        self.setup_signal_handlers()

        logger.info("Starting compactor worker")

        try:
            await self.queue.connect()
            await self.bucket.check()
            logger.info("Backends connected, waiting for jobs...")

            handoff: Handoff[Job] = Handoff()
            receive_task = asyncio.create_task(self.queue.receive(handoff))
            process_task = asyncio.create_task(self.process_loop(handoff))
            shutdown_task = asyncio.create_task(self.shutdown_event.wait())

            done, pending = await asyncio.wait(
                [receive_task, process_task, shutdown_task],
                return_when=asyncio.FIRST_COMPLETED,
            )

            # Cancel pending tasks
            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            if receive_task in done and not self.shutdown_event.is_set():
                error: Optional[BaseException] = receive_task.exception()
                if error is not None:
                    raise error
                raise BackendConnectionError("queue consumer stopped")

            if process_task in done and process_task.exception() is not None:
                raise process_task.exception()

            logger.info(
                "Worker shutdown complete",
                extra={"processed_jobs": self._processed_count, "failed_jobs": self._failed_count},
            )

        finally:
            await self.queue.close()
            logger.info("Queue connection closed")


async def main() -> None:
    """Main entry point for compactor worker."""
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    run_once = os.getenv("RUN_ONCE", "false").lower() in ("true", "1", "yes")

    try:
        worker = CompactorWorker.from_settings(settings, run_once=run_once)
        await worker.start()
    except Exception as e:
        logger.error("Worker failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
