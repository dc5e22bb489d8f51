import asyncio
import logging
from typing import Optional

import aio_pika

from circulation.events import ChangeEvent
from rowstore.gateway import RowStoreGateway

logger = logging.getLogger(__name__)


class ChangeFeedPublisher:
    """Forward the gateway's change feed to a RabbitMQ fanout exchange.

    Gateway listeners run on whichever thread committed the write, so
    events are handed to the event loop through an outbox queue and
    published from a single pump task, preserving commit order.
    """

    def __init__(self, exchange_name: str = "row_changes"):
        self.exchange_name = exchange_name
        self.connection = None
        self.channel = None
        self.exchange = None
        self._outbox: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pump: Optional[asyncio.Task] = None
        self._unsubscribe = None

    async def connect(self, connection_string: str):
        logger.info("Initializing RabbitMQ connection")
        try:
            self.connection = await aio_pika.connect_robust(connection_string)
            self.channel = await self.connection.channel()
            self.exchange = await self.channel.declare_exchange(
                self.exchange_name, aio_pika.ExchangeType.FANOUT, durable=True
            )
            logger.info("RabbitMQ connection established successfully")
        except Exception as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            raise

    def attach(self, gateway: RowStoreGateway):
        self._loop = asyncio.get_running_loop()
        self._unsubscribe = gateway.subscribe(self.enqueue)
        self._pump = asyncio.create_task(self._run())

    def enqueue(self, event: ChangeEvent):
        self._loop.call_soon_threadsafe(self._outbox.put_nowait, event)

    async def publish(self, event: ChangeEvent):
        await self.exchange.publish(
            aio_pika.Message(
                body=event.model_dump_json().encode(),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            ),
            routing_key="",
        )
        logger.info(f"Published {event.operation.value} on {event.table.value} {event.record_id}")

    async def _run(self):
        while True:
            event = await self._outbox.get()
            try:
                await self.publish(event)
            except aio_pika.exceptions.AMQPError as e:
                logger.error(f"Failed to publish change for {event.table.value} {event.record_id}: {e}")
            finally:
                self._outbox.task_done()

    async def close(self):
        if self._unsubscribe:
            self._unsubscribe()
        if self._pump:
            await self._outbox.join()
            self._pump.cancel()
        if self.connection:
            await self.connection.close()
            logger.info("RabbitMQ connection closed")
