"""
Queue port: job publishing and consumption over a message broker.

Two backends share the QueueConnection interface:
- RabbitMQQueue: AMQP broker via aio-pika (default)
- RedisQueue: Redis list via redis.asyncio

Both acknowledge a message as soon as it is delivered, before the job is
processed. A crash between delivery and upload loses that job.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Generic, Optional, Protocol, TypeVar

import aio_pika
import redis.asyncio as redis
from aio_pika.abc import AbstractConnection
from aio_pika.exceptions import AMQPException
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from utils.errors import BackendConnectionError, ConfigurationError, MessageDecodeError, PublishTimeout
from utils.schemas import Job, QueueBackendConfig, RabbitMQConfig, RedisQueueConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Handoff(Generic[T]):
    """Single-slot rendezvous between a producer and a consumer task.

    put() returns only once get() has taken the item, so a producer can
    never run more than one item ahead of the consumer.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)

    async def put(self, item: T) -> None:
        await self._queue.put(item)
        await self._queue.join()

    async def get(self) -> T:
        item = await self._queue.get()
        self._queue.task_done()
        return item

    @property
    def waiting(self) -> bool:
        """True while an item sits in the slot untaken."""
        return not self._queue.empty()


class QueueConnection(Protocol):
    """Interface implemented by every queue backend."""

    async def connect(self) -> None:
        ...

    async def publish(self, body: bytes) -> None:
        ...

    async def receive(self, sink: Handoff[Job]) -> None:
        ...

    async def close(self) -> None:
        ...


def _retrying(attempts: int, exc_types: tuple) -> AsyncRetrying:
    return AsyncRetrying(
        retry=retry_if_exception_type(exc_types),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=1, min=1, max=5),
    )


class RabbitMQQueue:
    """AMQP backend: persistent publishes on the default exchange, auto-ack consumption."""

    def __init__(self, config: RabbitMQConfig) -> None:
        self.config = config
        self.connection: Optional[AbstractConnection] = None

    async def connect(self) -> None:
        """Open the broker connection, retrying with exponential backoff.

        Raises:
            BackendConnectionError: If the broker is unreachable after all attempts
        """
        if self.connection is not None:
            return

        try:
            async for attempt in _retrying(self.config.connect_retries, (AMQPException, OSError)):
                with attempt:
                    self.connection = await aio_pika.connect(self.config.url)
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise BackendConnectionError(f"failed to connect to RabbitMQ: {cause}") from cause

        logger.info("Connected to RabbitMQ", extra={"queue": self.config.queue_name})

    async def publish(self, body: bytes) -> None:
        """Publish a message body to the configured queue.

        Raises:
            PublishTimeout: If the broker does not accept the message in time
            BackendConnectionError: If the channel or connection fails
        """
        if self.connection is None:
            await self.connect()

        message = aio_pika.Message(
            body=body,
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            content_type="text/plain",
            timestamp=datetime.now(timezone.utc),
        )

        try:
            channel = await self.connection.channel()
        except AMQPException as e:
            raise BackendConnectionError(f"failed to create channel: {e}") from e

        try:
            await asyncio.wait_for(
                channel.default_exchange.publish(message, routing_key=self.config.queue_name),
                timeout=self.config.timeout,
            )
        except asyncio.TimeoutError as e:
            raise PublishTimeout(
                f"publish to {self.config.queue_name} timed out after {self.config.timeout}s"
            ) from e
        except AMQPException as e:
            raise BackendConnectionError(f"failed to publish message: {e}") from e
        finally:
            await channel.close()

    async def receive(self, sink: Handoff[Job]) -> None:
        """Consume the queue forever, handing each decoded job to sink.

        Malformed bodies are logged and dropped. Returns when the consumer is
        closed.

        Raises:
            BackendConnectionError: If the channel or connection fails
        """
        if self.connection is None:
            await self.connect()

        try:
            channel = await self.connection.channel()
            queue = await channel.declare_queue(
                self.config.queue_name,
                durable=False,
                auto_delete=False,
                exclusive=False,
            )
        except AMQPException as e:
            raise BackendConnectionError(f"failed to declare queue: {e}") from e

        try:
            # no_ack: the broker forgets the message as soon as it is delivered
            async with queue.iterator(no_ack=True) as messages:
                async for message in messages:
                    try:
                        job = Job.from_bytes(message.body)
                    except MessageDecodeError as e:
                        logger.warning(
                            "Failed to decode message, skipping",
                            extra={"error": str(e), "raw_data": message.body[:256]},
                        )
                        continue

                    await sink.put(job)
        except AMQPException as e:
            raise BackendConnectionError(f"consumer failed: {e}") from e
        finally:
            if not channel.is_closed:
                await channel.close()

    async def close(self) -> None:
        """Close the broker connection."""
        if self.connection:
            await self.connection.close()
            self.connection = None


class RedisQueue:
    """Redis backend: RPUSH to publish, BLPOP to consume (the pop is the ack)."""

    def __init__(self, config: RedisQueueConfig) -> None:
        self.config = config
        self.client: Optional[redis.Redis] = None
        self._stop_event = asyncio.Event()

    async def connect(self) -> None:
        """Create the connection pool and verify the server answers.

        Raises:
            BackendConnectionError: If Redis is unreachable after all attempts
        """
        if self.client is None:
            self.client = redis.from_url(
                self.config.url,
                max_connections=self.config.max_connections,
                decode_responses=False,  # Handle bytes for orjson
            )

        try:
            async for attempt in _retrying(self.config.connect_retries, (redis.ConnectionError, redis.TimeoutError)):
                with attempt:
                    await self.client.ping()
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise BackendConnectionError(f"failed to connect to Redis: {cause}") from cause

        logger.info("Connected to Redis", extra={"queue": self.config.queue_name})

    async def publish(self, body: bytes) -> None:
        """Append a message body to the queue list.

        Raises:
            PublishTimeout: If Redis does not answer in time
            BackendConnectionError: If the command fails
        """
        if self.client is None:
            await self.connect()

        try:
            await asyncio.wait_for(
                self.client.rpush(self.config.queue_name, body),
                timeout=self.config.timeout,
            )
        except asyncio.TimeoutError as e:
            raise PublishTimeout(
                f"publish to {self.config.queue_name} timed out after {self.config.timeout}s"
            ) from e
        except redis.RedisError as e:
            raise BackendConnectionError(f"failed to publish message: {e}") from e

    async def receive(self, sink: Handoff[Job]) -> None:
        """Pop messages until stopped, handing each decoded job to sink.

        Raises:
            BackendConnectionError: If a Redis command fails
        """
        if self.client is None:
            await self.connect()

        while not self._stop_event.is_set():
            try:
                # Poll with timeout so stop() is honoured
                item = await self.client.blpop([self.config.queue_name], timeout=1)
            except redis.RedisError as e:
                raise BackendConnectionError(f"consumer failed: {e}") from e

            if item is None:
                continue

            _, body = item
            try:
                job = Job.from_bytes(body)
            except MessageDecodeError as e:
                logger.warning(
                    "Failed to decode message, skipping",
                    extra={"error": str(e), "raw_data": body[:256]},
                )
                continue

            await sink.put(job)

    def stop(self) -> None:
        """Signal the receive loop to stop."""
        self._stop_event.set()

    async def close(self) -> None:
        """Close Redis connection and cleanup resources."""
        self.stop()
        if self.client:
            await self.client.aclose()
            self.client = None


def new_queue(config: QueueBackendConfig) -> QueueConnection:
    """Build the queue backend matching the configuration kind.

    Raises:
        ConfigurationError: If the kind has no backend
    """
    if config.kind == "rabbitmq":
        return RabbitMQQueue(config)
    if config.kind == "redis":
        return RedisQueue(config)
    raise ConfigurationError(f"Queue type not implemented: {config.kind}")
