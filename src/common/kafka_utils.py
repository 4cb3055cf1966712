"""
Shared Kafka utilities for job publishing and consumption.

Producers are created in the event loop that uses them; each loop gets its
own producer instance to avoid loop conflicts.
"""

import json
import asyncio
from typing import Optional, Callable, Any, Dict, Awaitable
from aiokafka import AIOKafkaProducer, AIOKafkaConsumer
from aiokafka.errors import KafkaError

from .settings import settings
from .structured_logging import get_logger

logger = get_logger(__name__)


class KafkaEventProducer:
    """Lazily started Kafka producer for publishing jobs."""

    def __init__(self):
        self._producer: Optional[AIOKafkaProducer] = None
        self._lock = asyncio.Lock()

    async def _get_producer(self) -> AIOKafkaProducer:
        """Get or create the Kafka producer."""
        if self._producer is None:
            async with self._lock:
                if self._producer is None:
                    producer = AIOKafkaProducer(
                        bootstrap_servers=settings.kafka_bootstrap,
                        value_serializer=lambda v: json.dumps(v, default=str).encode(
                            "utf-8"
                        ),
                        key_serializer=lambda k: str(k).encode("utf-8"),
                        retry_backoff_ms=1000,
                        request_timeout_ms=int(settings.queue_timeout * 1000),
                    )
                    await producer.start()
                    self._producer = producer
                    logger.info("Kafka producer started")
        return self._producer

    async def publish_event(self, topic: str, event: dict, key: Any = None) -> bool:
        """Publish an event to a Kafka topic. Returns False instead of raising."""
        try:
            producer = await self._get_producer()
            await producer.send_and_wait(topic, event, key=key)
            logger.debug(f"Published event to {topic}", extra={"payload": event})
            return True
        except KafkaError:
            logger.error(
                f"Failed to publish event to {topic}",
                exc_info=True,
                extra={"payload": event},
            )
            return False
        except Exception:
            logger.error(
                f"Unexpected error publishing event to {topic}",
                exc_info=True,
                extra={"payload": event},
            )
            return False

    async def close(self):
        """Close the Kafka producer."""
        if self._producer:
            await self._producer.stop()
            self._producer = None
            logger.info("Kafka producer stopped")


class KafkaEventConsumer:
    """Kafka consumer committing each offset only after its handler returns.

    A crash between handling and commit redelivers the message, so handlers
    must be idempotent.
    """

    def __init__(self, topic: str, group_id: str):
        self.topic = topic
        self.group_id = group_id
        self._consumer: Optional[AIOKafkaConsumer] = None
        self._running = False

    async def start(self, message_handler: Callable[[dict], Awaitable[Any]]):
        """Start consuming messages from the topic."""
        if self._running:
            return

        self._consumer = AIOKafkaConsumer(
            self.topic,
            bootstrap_servers=settings.kafka_bootstrap,
            group_id=self.group_id,
            value_deserializer=lambda m: json.loads(m.decode("utf-8")),
            auto_offset_reset="earliest",
            enable_auto_commit=False,
        )

        await self._consumer.start()
        self._running = True
        logger.info(f"Started Kafka consumer for topic {self.topic}")

        try:
            async for message in self._consumer:
                try:
                    await message_handler(message.value)
                except Exception:
                    logger.error(
                        f"Error processing message from {self.topic}",
                        exc_info=True,
                        extra={"offset": message.offset, "partition": message.partition},
                    )
                await self._consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error(f"Kafka consumer error for topic {self.topic}", exc_info=True)
        finally:
            await self.stop()

    async def stop(self):
        """Stop the Kafka consumer."""
        if self._consumer and self._running:
            self._running = False
            await self._consumer.stop()
            logger.info(f"Stopped Kafka consumer for topic {self.topic}")


# Per-loop producer storage to avoid loop conflicts
_producers: Dict[int, KafkaEventProducer] = {}


async def get_event_producer() -> KafkaEventProducer:
    """Get or create a producer for the current event loop."""
    loop_id = id(asyncio.get_running_loop())

    if loop_id not in _producers:
        logger.debug(
            "Creating new Kafka producer for event loop",
            extra={"loop_id": loop_id},
        )
        _producers[loop_id] = KafkaEventProducer()

    return _producers[loop_id]


async def publish_event(topic: str, event: dict, key: Any = None) -> bool:
    """Convenience function for publishing events.

    This is the main interface that services should use. It handles
    the producer lifecycle automatically.
    """
    producer = await get_event_producer()
    return await producer.publish_event(topic, event, key=key)


async def close_producers():
    """Stop every producer created by this process."""
    for producer in list(_producers.values()):
        await producer.close()
    _producers.clear()
