import enum
import json
import logging
from datetime import datetime
from typing import Any, Dict
from uuid import uuid4

import aio_pika

from marketplace import config

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    ORDER_CREATED = "OrderCreated"
    ORDER_CANCELLED = "OrderCancelled"
    STOCK_LOW = "StockLow"


ROUTING_KEYS = {
    EventType.ORDER_CREATED: "order.created",
    EventType.ORDER_CANCELLED: "order.cancelled",
    EventType.STOCK_LOW: "stock.low",
}


class Notifier:
    """
    Publishes marketplace events to a topic exchange. Publishing is best
    effort: failures are logged and never propagate to the caller.
    """

    def __init__(self, url: str = config.RABBITMQ_URL, exchange_name: str = config.NOTIFICATION_EXCHANGE):
        self.url = url
        self.exchange_name = exchange_name
        self._connection = None
        self._exchange = None

    async def setup(self):
        try:
            self._connection = await aio_pika.connect_robust(self.url)
            channel = await self._connection.channel()
            self._exchange = await channel.declare_exchange(self.exchange_name, aio_pika.ExchangeType.TOPIC, durable=True)
            logger.info("RabbitMQ setup complete.")
        except Exception as e:
            logger.error(f"Error setting up RabbitMQ: {e}")

    async def notify(self, event_type: EventType, payload: Dict[str, Any]):
        if self._exchange is None:
            logger.warning(f"RabbitMQ exchange not available. Dropping {event_type.value} event.")
            return

        message_data = {
            "event_id": str(uuid4()),
            "event_type": event_type.value,
            "timestamp": datetime.utcnow().isoformat(),
            **payload,
        }
        message = aio_pika.Message(
            json.dumps(message_data, default=str).encode('utf-8'),
            content_type='application/json',
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT
        )

        try:
            await self._exchange.publish(message, routing_key=ROUTING_KEYS[event_type])
            logger.info(f"Published event to {ROUTING_KEYS[event_type]}: {event_type.value}")
        except Exception as e:
            logger.error(f"Error publishing {event_type.value} event: {e}")

    async def close(self):
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._exchange = None
