# backend/wardaqi/worker.py
import asyncio
import aio_pika
import json
import logging
import signal  # For graceful shutdown
from pydantic import ValidationError

# Configure logging early
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

from .config import get_settings
from .models import RefreshSegmentMessage
from .queue_client import rabbitmq_url
from .refresh import BulkRefreshJob
from .services import open_services

# Each message is one batched generation call; keep concurrency low
PREFETCH_COUNT = 1


class RefreshConsumer:
    def __init__(self, job: BulkRefreshJob):
        self._job = job

    async def process_message(self, message: aio_pika.abc.AbstractIncomingMessage):
        # requeue=False: a message that raises is dropped, not redelivered forever
        async with message.process(requeue=False, ignore_processed=True):
            logger.info(f"WORKER: Received message. Routing key: {message.routing_key}, Delivery tag: {message.delivery_tag}")
            try:
                data = json.loads(message.body.decode('utf-8'))
                segment = RefreshSegmentMessage.model_validate(data)
            except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
                logger.error(f"WORKER: Invalid refresh message {message.body[:100]!r}: {e}. Discarding (NACKing).")
                await message.nack(requeue=False)
                return

            logger.info(f"WORKER: Refreshing segment start={segment.start} count={segment.count}...")
            refreshed = await self._job.refresh_segment(segment.start, segment.count)
            # A failed batch is not retried here; those wards are picked up next cycle
            logger.info(f"WORKER: Segment start={segment.start} done, {len(refreshed)} narrative(s) written. Message will be ACKed.")


async def start_consuming(consumer: RefreshConsumer, url: str, queue_name: str):
    """Connects to RabbitMQ and consumes refresh messages, reconnecting on errors."""
    connection = None
    while True:
        try:
            logger.info("WORKER: Attempting async connection to RabbitMQ...")
            connection = await aio_pika.connect_robust(url, timeout=15)
            logger.info("WORKER: Async connection established.")

            channel = await connection.channel()
            await channel.set_qos(prefetch_count=PREFETCH_COUNT)
            logger.info(f"WORKER: QoS set to {PREFETCH_COUNT}")

            queue = await channel.declare_queue(queue_name, durable=True)
            logger.info(f"WORKER: Queue '{queue_name}' declared. Waiting for messages...")
            await queue.consume(consumer.process_message)

            # Consume until cancelled by the shutdown handler
            await asyncio.Future()

        except (aio_pika.exceptions.AMQPConnectionError, ConnectionError, OSError) as e:
            logger.error(f"WORKER: Connection/AMQP error: {e}. Retrying in 5 seconds...")
            await _close_quietly(connection)
            connection = None
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            logger.info("WORKER: Consumer task cancelled, likely during shutdown.")
            raise
        except Exception as e:
            logger.error(f"WORKER: An unexpected error occurred in consumer loop: {e}", exc_info=True)
            await _close_quietly(connection)
            connection = None
            logger.info("WORKER: Restarting consumer loop after 10 seconds...")
            await asyncio.sleep(10)
        finally:
            if connection and not connection.is_closed:
                logger.info("WORKER: Closing connection in finally block.")
                await _close_quietly(connection)


async def _close_quietly(connection):
    if connection and not connection.is_closed:
        try:
            await connection.close()
        except Exception as e:
            logger.warning(f"WORKER: Error closing connection: {e}")


async def main():
    settings = get_settings()
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)

    async with open_services(settings, with_queue=False) as services:
        consumer = RefreshConsumer(services.refresh_job)
        consumer_task = asyncio.create_task(
            start_consuming(consumer, rabbitmq_url(settings), settings.rabbitmq_queue_refresh)
        )
        stop_wait_task = asyncio.create_task(stop_event.wait())
        logger.info("WORKER: Consumer started. Press CTRL+C to exit.")

        done, _ = await asyncio.wait([consumer_task, stop_wait_task], return_when=asyncio.FIRST_COMPLETED)

        if stop_wait_task in done:
            logger.info("WORKER: Shutdown signal received, cancelling consumer task...")
            consumer_task.cancel()
            await asyncio.gather(consumer_task, return_exceptions=True)
        else:
            stop_wait_task.cancel()
            await asyncio.gather(stop_wait_task, return_exceptions=True)


if __name__ == "__main__":
    logger.info("Starting Ward Narrative Refresh Worker...")
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("WORKER: KeyboardInterrupt received in main.")
    finally:
        logger.info("WORKER: Ward Narrative Refresh Worker finished.")
