# backend/wardaqi/queue_client.py
import asyncio
import aio_pika
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from .config import Settings
from .models import RefreshSegmentMessage

logger = logging.getLogger(__name__)

CONNECTION_TIMEOUT = 10  # Seconds to wait for a pooled connection
CHANNEL_TIMEOUT = 5  # Seconds to wait for creating a channel
CONNECT_ATTEMPT_TIMEOUT = 15


def rabbitmq_url(settings: Settings) -> str:
    return f"amqp://{settings.rabbitmq_user}:{settings.rabbitmq_pass}@{settings.rabbitmq_host}:{settings.rabbitmq_port}/"


class AioPikaConnectionPool:
    def __init__(self, url: str, max_size: int = 2):
        self._url = url
        self._max_size = max_size
        # LIFO: recently used connections are likely still warm
        self._pool: asyncio.Queue = asyncio.LifoQueue(maxsize=max_size)
        self._lock = asyncio.Lock()

    async def _create_connection(self) -> Optional[aio_pika.abc.AbstractRobustConnection]:
        try:
            connection = await asyncio.wait_for(aio_pika.connect_robust(self._url), timeout=CONNECT_ATTEMPT_TIMEOUT)
            logger.info(f"Created a new aio-pika connection (pool size before put: {self._pool.qsize()})")
            return connection
        except asyncio.TimeoutError:
            logger.error(f"Timeout creating aio-pika connection after {CONNECT_ATTEMPT_TIMEOUT}s.")
            return None
        except Exception as e:
            logger.error(f"Failed to create aio-pika connection: {e}", exc_info=True)
            return None

    async def initialize(self):
        """Fills the pool up to max_size."""
        async with self._lock:
            to_create = self._max_size - self._pool.qsize()
            if to_create <= 0:
                return
            logger.info(f"Initializing connection pool - creating up to {to_create} connections...")
            results = await asyncio.gather(*(self._create_connection() for _ in range(to_create)))
            created = 0
            for conn in results:
                if conn:
                    self._pool.put_nowait(conn)
                    created += 1
            logger.info(f"Connection pool initialized with {created}/{to_create} connections.")
            if created == 0:
                logger.error("Failed to create any connections for the RabbitMQ pool.")

    @asynccontextmanager
    async def acquire(self) -> AsyncGenerator[aio_pika.abc.AbstractRobustConnection, None]:
        """Acquires a pooled connection, creating one if the pool ran dry."""
        conn = None
        try:
            if self._pool.empty():
                await self.initialize()
            try:
                conn = await asyncio.wait_for(self._pool.get(), timeout=CONNECTION_TIMEOUT)
            except asyncio.TimeoutError:
                raise ConnectionError(f"Timeout acquiring connection from pool (size: {self._pool.qsize()})")
            if conn.is_closed:
                logger.warning("Acquired a closed connection from pool. Discarding.")
                conn = None
                raise ConnectionError("Acquired a closed connection from the pool.")
            yield conn
        finally:
            if conn and not conn.is_closed:
                try:
                    self._pool.put_nowait(conn)
                except asyncio.QueueFull:
                    logger.warning("Pool full, closing returned connection.")
                    await self.close_connection(conn)

    async def close_connection(self, conn):
        if conn and not conn.is_closed:
            try:
                await conn.close()
            except Exception as e:
                logger.error(f"Error closing single connection: {e}", exc_info=True)

    async def close(self):
        connections = []
        while not self._pool.empty():
            connections.append(self._pool.get_nowait())
        await asyncio.gather(*(self.close_connection(c) for c in connections), return_exceptions=True)
        logger.info(f"Connection pool closed. {len(connections)} connections terminated.")


class RefreshQueue:
    """Publishes bulk refresh segments to the durable refresh queue."""

    def __init__(self, settings: Settings, pool_size: int = 2, retries: int = 3):
        self._queue_name = settings.rabbitmq_queue_refresh
        self._pool = AioPikaConnectionPool(rabbitmq_url(settings), max_size=pool_size)
        self._retries = retries

    async def start(self):
        logger.info("Initializing RabbitMQ connection pool...")
        await self._pool.initialize()

    async def close(self):
        logger.info("Closing RabbitMQ connection pool...")
        await self._pool.close()

    async def publish(self, message: RefreshSegmentMessage) -> bool:
        body = message.model_dump_json().encode("utf-8")
        last_exception: Optional[Exception] = None

        for attempt in range(self._retries):
            try:
                async with self._pool.acquire() as connection:
                    channel = await asyncio.wait_for(connection.channel(), timeout=CHANNEL_TIMEOUT)
                    try:
                        await channel.declare_queue(self._queue_name, durable=True)
                        await channel.default_exchange.publish(
                            aio_pika.Message(body=body, delivery_mode=aio_pika.DeliveryMode.PERSISTENT),
                            routing_key=self._queue_name,
                        )
                    finally:
                        if not channel.is_closed:
                            await channel.close()
                    logger.info(f"Published refresh segment start={message.start} count={message.count} to '{self._queue_name}'")
                    return True
            except (ConnectionError, asyncio.TimeoutError) as e:
                logger.error(f"Attempt {attempt + 1}/{self._retries}: Failed to acquire connection or channel: {e}")
                last_exception = e
            except Exception as e:
                logger.error(f"Attempt {attempt + 1}/{self._retries}: Unexpected error during publish: {e}", exc_info=True)
                last_exception = e

            if attempt < self._retries - 1:
                wait_time = 0.5 * (attempt + 1)
                logger.info(f"Publish failed, retrying in {wait_time:.1f}s...")
                await asyncio.sleep(wait_time)

        logger.error(f"Failed to publish refresh segment after {self._retries} attempts. Last error: {last_exception}")
        return False
