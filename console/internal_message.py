import logging

import aio_pika
from fastapi import FastAPI
from pydantic import ValidationError as PydanticValidationError

from circulation.events import ChangeEvent, EventIngestor

logger = logging.getLogger(__name__)


class MessageHandler:
    @staticmethod
    async def handle_change(message: aio_pika.IncomingMessage, ingestor: EventIngestor):
        async with message.process():
            try:
                event = ChangeEvent.model_validate_json(message.body)
            except PydanticValidationError as e:
                logger.error(f"Discarding malformed change event: {e.errors()}")
                return
            await ingestor.submit(event)
            logger.info(
                f"Queued {event.operation.value} on {event.table.value} {event.record_id}"
            )


class ChangeFeedConsumer:
    """Bind an exclusive queue to the change feed exchange and feed the ingestor."""

    def __init__(self, app: FastAPI, exchange_name: str = "row_changes"):
        self.app = app
        self.exchange_name = exchange_name

    async def setup(self, connection_string: str, ingestor: EventIngestor):
        logger.info("Initializing RabbitMQ connection")
        try:
            self.app.state.rabbitmq_connection = await aio_pika.connect_robust(
                connection_string
            )
            self.app.state.rabbitmq_channel = (
                await self.app.state.rabbitmq_connection.channel()
            )
            await self.app.state.rabbitmq_channel.set_qos(prefetch_count=1)
            logger.info("RabbitMQ connection established successfully")

            exchange = await self.app.state.rabbitmq_channel.declare_exchange(
                self.exchange_name, aio_pika.ExchangeType.FANOUT, durable=True
            )
            queue = await self.app.state.rabbitmq_channel.declare_queue("", exclusive=True)
            await queue.bind(exchange)
            await queue.consume(
                lambda message: MessageHandler.handle_change(message, ingestor)
            )
            logger.info(f"Started consuming changes from {self.exchange_name}")
        except Exception as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            raise

    async def cleanup(self):
        logger.info("Closing RabbitMQ connection")
        await self.app.state.rabbitmq_connection.close()


async def setup_messaging(app: FastAPI, connection_string: str, exchange_name: str):
    consumer = ChangeFeedConsumer(app, exchange_name)
    await consumer.setup(connection_string, app.state.library.ingestor)
    app.state.change_feed_consumer = consumer


async def cleanup_messaging(app: FastAPI):
    await app.state.change_feed_consumer.cleanup()
