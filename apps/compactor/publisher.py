"""
Job Publisher for Compactor Queue

Publishes job messages announcing a file in the source bucket. Used by
upstream services and operational tooling to feed the compactor worker.

Usage:
    from apps.compactor.publisher import publish_job
    from utils.schemas import Job

    await publish_job(Job(filename="a.txt", path="2024/01", id=42))
"""

import logging
from typing import Optional

from utils.config import settings
from utils.errors import QueueError
from utils.mq import QueueConnection, new_queue
from utils.schemas import Job

logger = logging.getLogger(__name__)


async def publish_job(job: Job, queue: Optional[QueueConnection] = None) -> None:
    """
    Publish a job to the compactor queue.

    Args:
        job: Job to publish
        queue: Connected queue backend; a temporary one is built from
            settings and closed afterwards when omitted

    Raises:
        PublishTimeout: If the broker does not accept the message in time
        BackendConnectionError: If the broker is unreachable
    """
    owned = queue is None
    if queue is None:
        queue = new_queue(settings.queue_config())

    try:
        await queue.publish(job.to_bytes())

        logger.info(
            "Published job",
            extra={"job_id": job.id, "source_key": job.source_key},
        )

    except QueueError as e:
        logger.error(
            "Failed to publish job",
            extra={"job_id": job.id, "source_key": job.source_key, "error": str(e)},
        )
        raise

    finally:
        if owned:
            await queue.close()
